"""User list filtering, saved views and quick stats for the admin workstation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

from tenantadmin.services.permissions import ROLE_ADMIN, ROLE_CLIENT, ROLE_TEAM


SEARCH_FIELDS: tuple[str, ...] = ("name", "email", "phone", "department", "position")

VIEW_COUNT_CAP = 99


@dataclass(frozen=True)
class UserFilter:
    search: str | None = None
    role: str | None = None
    status: str | None = None

    @property
    def normalized_search(self) -> str:
        return (self.search or "").strip().casefold()

    @property
    def has_active_filters(self) -> bool:
        return bool(self.normalized_search or self.role or self.status)


@dataclass(frozen=True)
class FilterStats:
    total: int
    filtered: int
    has_active_filters: bool


@dataclass(frozen=True)
class FilterResult:
    items: list[Mapping[str, Any]]
    stats: FilterStats


def _text(value: Any) -> str:
    return "" if value is None else str(value).casefold()


def user_matches(user: Mapping[str, Any], spec: UserFilter) -> bool:
    needle = spec.normalized_search
    if needle and not any(needle in _text(user.get(name)) for name in SEARCH_FIELDS):
        return False
    if spec.role and _text(user.get("role")) != spec.role.casefold():
        return False
    if spec.status and _text(user.get("status")) != spec.status.casefold():
        return False
    return True


def filter_users(users: Sequence[Mapping[str, Any]], spec: UserFilter) -> FilterResult:
    items = [user for user in users if user_matches(user, spec)]
    return FilterResult(
        items=items,
        stats=FilterStats(
            total=len(users),
            filtered=len(items),
            has_active_filters=spec.has_active_filters,
        ),
    )


class UserFilterState:
    """Holds the current users and filter, recomputing only when either changes."""

    def __init__(self, users: Sequence[Mapping[str, Any]] | None = None, spec: UserFilter | None = None) -> None:
        self._users: list[Mapping[str, Any]] = list(users or [])
        self._spec = spec or UserFilter()
        self._result: FilterResult | None = None
        self.recomputations = 0

    @property
    def spec(self) -> UserFilter:
        return self._spec

    def set_users(self, users: Sequence[Mapping[str, Any]]) -> None:
        users = list(users)
        if users != self._users:
            self._users = users
            self._result = None

    def set_filter(self, spec: UserFilter) -> None:
        if spec != self._spec:
            self._spec = spec
            self._result = None

    def update(self, **changes: str | None) -> None:
        # Partial updates, e.g. update(search="ann") keeps role/status as they are.
        values = {
            "search": self._spec.search,
            "role": self._spec.role,
            "status": self._spec.status,
        }
        values.update(changes)
        self.set_filter(UserFilter(**values))

    def clear(self) -> None:
        self.set_filter(UserFilter())

    @property
    def result(self) -> FilterResult:
        if self._result is None:
            self._result = filter_users(self._users, self._spec)
            self.recomputations += 1
        return self._result


@dataclass(frozen=True)
class SavedView:
    name: str
    label: str
    role: str | None
    description: str


SAVED_VIEWS: tuple[SavedView, ...] = (
    SavedView("all", "All Users", None, "Show every user in the tenant"),
    SavedView("clients", "Clients", ROLE_CLIENT, "Show client accounts only"),
    SavedView("team", "Team", ROLE_TEAM, "Show team members only"),
    SavedView("admins", "Admins", ROLE_ADMIN, "Show administrators only"),
)
_VIEWS_BY_NAME = {view.name: view for view in SAVED_VIEWS}

DEFAULT_VIEW = "all"


def get_view(name: str) -> SavedView:
    view = _VIEWS_BY_NAME.get(name)
    if view is None:
        raise ValueError(f"Unknown view: {name}")
    return view


def select_view(name: str, on_change: Callable[[str, str | None], Any]) -> Any:
    # Views without a role mapping report None so callers clear the role filter.
    view = get_view(name)
    return on_change(view.name, view.role)


def view_counts(users: Iterable[Mapping[str, Any]]) -> dict[str, int]:
    counts = {view.name: 0 for view in SAVED_VIEWS}
    roles = {view.role: view.name for view in SAVED_VIEWS if view.role}
    for user in users:
        counts[DEFAULT_VIEW] += 1
        view_name = roles.get(str(user.get("role") or "").upper())
        if view_name:
            counts[view_name] += 1
    return counts


def format_view_count(count: int | None) -> str:
    if count is None:
        return "0"
    if count > VIEW_COUNT_CAP:
        return f"{VIEW_COUNT_CAP}+"
    return str(count)


def build_view_buttons(
    counts: Mapping[str, int | None] | None, active_view: str = DEFAULT_VIEW
) -> list[dict[str, Any]]:
    # Render-ready button descriptors; missing counts display as zero.
    counts = counts or {}
    buttons: list[dict[str, Any]] = []
    for view in SAVED_VIEWS:
        count = counts.get(view.name)
        display = format_view_count(count)
        buttons.append(
            {
                "name": view.name,
                "label": view.label,
                "role": view.role,
                "count": count or 0,
                "display_count": display,
                "active": view.name == active_view,
                "aria_pressed": "true" if view.name == active_view else "false",
                "aria_label": f"{view.label} ({display} users)",
                "title": view.description,
            }
        )
    return buttons


@dataclass
class QuickStats:
    total_users: int
    active_users: int
    pending_approvals: int
    refreshed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_payload(self, now: datetime | None = None) -> dict[str, Any]:
        return {
            "totalUsers": self.total_users,
            "activeUsers": self.active_users,
            "pendingApprovals": self.pending_approvals,
            "refreshedAt": self.refreshed_at.isoformat(),
            "refreshedAgo": format_refreshed_ago(self.refreshed_at, now),
        }


def build_quick_stats(users: Sequence[Mapping[str, Any]], now: datetime | None = None) -> QuickStats:
    return QuickStats(
        total_users=len(users),
        active_users=sum(1 for user in users if _text(user.get("status")) == "active"),
        pending_approvals=sum(1 for user in users if _text(user.get("status")) == "pending"),
        refreshed_at=now or datetime.now(timezone.utc),
    )


def format_refreshed_ago(refreshed_at: datetime, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    if refreshed_at.tzinfo is None:
        refreshed_at = refreshed_at.replace(tzinfo=timezone.utc)
    seconds = max(0, int((now - refreshed_at).total_seconds()))
    if seconds < 60:
        return "Just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"
