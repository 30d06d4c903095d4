from __future__ import annotations

import copy
from typing import Any, Mapping

from fastapi import HTTPException

from tenantadmin.services.permissions import USER_ROLES
from tenantadmin.services.reports import EXPORT_FORMATS
from tenantadmin.services.user_filters import SAVED_VIEWS


DEFAULT_USER_MANAGEMENT_SETTINGS: dict[str, Any] = {
    "defaultRole": "CLIENT",
    "requireApproval": False,
    "allowSelfRegistration": False,
    "sessionTimeoutMinutes": 60,
    "passwordPolicy": {
        "minLength": 12,
        "requireUppercase": True,
        "requireNumber": True,
        "requireSymbol": False,
    },
    "exports": {"defaultFormat": "csv", "defaultTime": "09:00"},
    "workstation": {"defaultView": "all", "pageSize": 50},
}

_INT_RANGES: dict[tuple[str, ...], tuple[int, int]] = {
    ("sessionTimeoutMinutes",): (5, 1440),
    ("passwordPolicy", "minLength"): (8, 128),
    ("workstation", "pageSize"): (10, 500),
}
_CHOICES: dict[tuple[str, ...], tuple[str, ...]] = {
    ("defaultRole",): USER_ROLES,
    ("exports", "defaultFormat"): EXPORT_FORMATS,
    ("workstation", "defaultView"): tuple(view.name for view in SAVED_VIEWS),
}


def merge_settings(base: Mapping[str, Any], overrides: Mapping[str, Any] | None) -> dict[str, Any]:
    # Nested mappings merge key by key; every other value replaces the base value.
    merged = copy.deepcopy(dict(base))
    for key, value in (overrides or {}).items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_settings(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def effective_settings(stored: Mapping[str, Any] | None) -> dict[str, Any]:
    return merge_settings(DEFAULT_USER_MANAGEMENT_SETTINGS, stored)


def _invalid(path: tuple[str, ...], message: str) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"code": "VALIDATION_ERROR", "message": f"{'.'.join(path)}: {message}"},
    )


def _validate(patch: Mapping[str, Any], template: Mapping[str, Any], path: tuple[str, ...]) -> None:
    for key, value in patch.items():
        key_path = path + (key,)
        if key not in template:
            raise _invalid(key_path, "unknown setting")
        expected = template[key]
        if isinstance(expected, Mapping):
            if not isinstance(value, Mapping):
                raise _invalid(key_path, "expected an object")
            _validate(value, expected, key_path)
            continue
        # bool is an int subclass, so check it first.
        if isinstance(expected, bool):
            if not isinstance(value, bool):
                raise _invalid(key_path, "expected a boolean")
        elif isinstance(expected, int):
            if isinstance(value, bool) or not isinstance(value, int):
                raise _invalid(key_path, "expected an integer")
            low, high = _INT_RANGES.get(key_path, (0, 2**31 - 1))
            if not low <= value <= high:
                raise _invalid(key_path, f"must be between {low} and {high}")
        elif isinstance(expected, str):
            if not isinstance(value, str):
                raise _invalid(key_path, "expected a string")
            choices = _CHOICES.get(key_path)
            if choices and value not in choices:
                raise _invalid(key_path, f"must be one of {', '.join(choices)}")


def validate_settings_patch(patch: Mapping[str, Any]) -> None:
    _validate(patch, DEFAULT_USER_MANAGEMENT_SETTINGS, ())
