from __future__ import annotations

from typing import Any, Mapping, Sequence

from fastapi import HTTPException

from tenantadmin.domain.models import FilterPreset
from tenantadmin.services.reports.builder import LOGIC_AND, LOGIC_OR, apply_filters
from tenantadmin.services.user_filters import FilterResult, FilterStats, UserFilter, filter_users


def preset_not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Preset not found"})


def preset_forbidden() -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "AUTH_FORBIDDEN", "message": "Forbidden"})


def preset_name_conflict(message: str = "Another preset with this name already exists") -> HTTPException:
    return HTTPException(status_code=409, detail={"code": "CONFLICT", "message": message})


def can_view(preset: FilterPreset, user_id: str) -> bool:
    return preset.is_public or preset.created_by == user_id


def can_modify(preset: FilterPreset, user_id: str) -> bool:
    # Visibility never grants write access; only the creator may change a preset.
    return preset.created_by == user_id


def ensure_can_view(preset: FilterPreset | None, user_id: str) -> FilterPreset:
    if preset is None:
        raise preset_not_found()
    if not can_view(preset, user_id):
        raise preset_forbidden()
    return preset


def ensure_can_modify(preset: FilterPreset | None, user_id: str) -> FilterPreset:
    if preset is None:
        raise preset_not_found()
    if not can_modify(preset, user_id):
        raise preset_forbidden()
    return preset


def filter_logic_for(filter_config: Mapping[str, Any] | None) -> str:
    raw = str((filter_config or {}).get("logic") or LOGIC_AND).upper()
    return LOGIC_OR if raw == LOGIC_OR else LOGIC_AND


def enforce_preset_limit(existing_count: int, max_per_user: int) -> None:
    if existing_count >= max_per_user:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "BAD_REQUEST",
                "message": f"Maximum number of filter presets ({max_per_user}) reached",
                "max_presets": max_per_user,
            },
        )


def _text_option(value: Any) -> str | None:
    # Non-string workstation values in a stored preset are ignored.
    if isinstance(value, str) and value.strip():
        return value
    return None


def apply_preset(
    users: Sequence[Mapping[str, Any]], filter_config: Mapping[str, Any] | None
) -> FilterResult:
    """Run a saved preset over serialized users.

    ``search``/``role``/``status`` keys go through the workstation filter; an
    optional ``conditions`` list is then evaluated with the report operators
    using the preset's ``logic``.
    """
    config = dict(filter_config or {})
    spec = UserFilter(
        search=_text_option(config.get("search")),
        role=_text_option(config.get("role")),
        status=_text_option(config.get("status")),
    )
    result = filter_users(users, spec)
    conditions = config.get("conditions")
    if not conditions:
        return result
    items = apply_filters(
        [dict(user) for user in result.items],
        {"conditions": conditions, "logic": filter_logic_for(config)},
    )
    return FilterResult(
        items=items,
        stats=FilterStats(total=len(users), filtered=len(items), has_active_filters=True),
    )


def serialize_preset(preset: FilterPreset, creator_name: str | None = None) -> dict[str, Any]:
    return {
        "id": preset.id,
        "name": preset.name,
        "description": preset.description,
        "filterConfig": preset.filter_config or {},
        "filterLogic": preset.filter_logic,
        "isPublic": preset.is_public,
        "icon": preset.icon,
        "color": preset.color,
        "createdBy": preset.created_by,
        "creator": {"id": preset.created_by, "name": creator_name},
        "usageCount": preset.usage_count,
        "lastUsedAt": preset.last_used_at.isoformat() if preset.last_used_at else None,
        "createdAt": preset.created_at.isoformat() if preset.created_at else None,
        "updatedAt": preset.updated_at.isoformat() if preset.updated_at else None,
    }
