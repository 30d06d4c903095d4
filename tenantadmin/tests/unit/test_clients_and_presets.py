from __future__ import annotations

from fastapi import HTTPException
import pytest

from tenantadmin.domain.models import FilterPreset
from tenantadmin.services.clients import contains_pattern, normalize_choice, validate_client_form
from tenantadmin.services.filter_presets import (
    apply_preset,
    can_modify,
    can_view,
    ensure_can_modify,
    ensure_can_view,
    filter_logic_for,
)


def _client_error(**fields) -> str:
    with pytest.raises(HTTPException) as excinfo:
        validate_client_form(**fields)
    assert excinfo.value.status_code == 400
    return excinfo.value.detail["message"]


def test_client_form_checks_run_in_order() -> None:
    assert _client_error(name="  ", email="bad") == "Client name is required"
    assert _client_error(name="Acme", email="") == "Email is required"
    assert _client_error(name="Acme", email="acme.example.com") == "Invalid email format"
    assert _client_error(name="Acme", email="a@acme.io", tier="GOLD") == "Invalid tier: GOLD"
    assert _client_error(name="Acme", email="a@acme.io", status="GONE") == "Invalid status: GONE"
    validate_client_form(name="Acme", email=" a@acme.io ", tier="SMB", status="ACTIVE")
    validate_client_form(name="Acme", email="a@acme.io", tier=" smb", status="inactive")


def test_client_choices_and_search_patterns_are_normalized() -> None:
    assert normalize_choice(" enterprise ") == "ENTERPRISE"
    assert normalize_choice(None) is None
    assert contains_pattern("acme") == "%acme%"
    assert contains_pattern("50%_off\\") == "%50\\%\\_off\\\\%"


def _preset(*, owner: str, public: bool) -> FilterPreset:
    return FilterPreset(id="p1", tenant_id="t1", name="Mine", created_by=owner, is_public=public)


def test_preset_visibility_and_ownership() -> None:
    private = _preset(owner="u1", public=False)
    public = _preset(owner="u1", public=True)
    assert can_view(private, "u1")
    assert not can_view(private, "u2")
    assert can_view(public, "u2")
    # Public presets stay read-only for everyone but their creator.
    assert not can_modify(public, "u2")
    assert can_modify(public, "u1")


def test_preset_guards_raise_404_and_403() -> None:
    with pytest.raises(HTTPException) as missing:
        ensure_can_view(None, "u1")
    assert missing.value.status_code == 404

    with pytest.raises(HTTPException) as hidden:
        ensure_can_view(_preset(owner="u1", public=False), "u2")
    assert hidden.value.status_code == 403

    with pytest.raises(HTTPException) as foreign:
        ensure_can_modify(_preset(owner="u1", public=True), "u2")
    assert foreign.value.status_code == 403


def test_filter_logic_defaults_to_and() -> None:
    assert filter_logic_for(None) == "AND"
    assert filter_logic_for({"logic": "or"}) == "OR"
    assert filter_logic_for({"logic": "xor"}) == "AND"


def test_apply_preset_combines_workstation_filter_and_conditions() -> None:
    users = [
        {"name": "Ann", "role": "TEAM", "status": "ACTIVE", "department": "Sales"},
        {"name": "Bea", "role": "TEAM", "status": "ACTIVE", "department": "Support"},
        {"name": "Cal", "role": "CLIENT", "status": "ACTIVE", "department": "Sales"},
    ]
    result = apply_preset(
        users,
        {"role": "TEAM", "conditions": [{"field": "department", "operator": "equals", "value": "sales"}]},
    )
    assert [user["name"] for user in result.items] == ["Ann"]
    assert result.stats.total == 3
    assert result.stats.filtered == 1

    plain = apply_preset(users, {"status": "active"})
    assert plain.stats.filtered == 3
    assert plain.stats.has_active_filters is True

    empty = apply_preset(users, None)
    assert empty.stats.has_active_filters is False


def test_apply_preset_ignores_non_string_workstation_values() -> None:
    users = [
        {"name": "Ann", "role": "TEAM", "status": "ACTIVE"},
        {"name": "Cal", "role": "CLIENT", "status": "ACTIVE"},
    ]
    result = apply_preset(users, {"role": ["ADMIN", "TEAM"], "search": 42, "status": {"in": "ACTIVE"}})
    assert [user["name"] for user in result.items] == ["Ann", "Cal"]
    assert result.stats.has_active_filters is False

    blank = apply_preset(users, {"role": "   "})
    assert blank.stats.filtered == 2
