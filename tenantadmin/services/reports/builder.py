"""Row filtering and summary aggregation for generated reports.

Both helpers work on plain row dicts that were already loaded from the store
and never raise on malformed descriptors: a condition or calculation that
cannot be interpreted is skipped so a bad saved report still renders.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import logging
import math
from typing import Any, Callable, Iterable, Mapping


logger = logging.getLogger(__name__)

LOGIC_AND = "AND"
LOGIC_OR = "OR"

CALCULATION_TYPES = ("count", "sum", "avg", "min", "max", "distinct_count")


@dataclass(frozen=True)
class FilterCondition:
    field: str
    operator: str
    value: Any = None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _as_number(value: Any) -> float | None:
    # NaN and infinities count as non-numeric.
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        try:
            value = Decimal(value)
        except (InvalidOperation, ValueError):
            return None
    if not isinstance(value, (int, float, Decimal)):
        return None
    try:
        number = float(value)
    except (OverflowError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _ordering_key(value: Any) -> Any:
    # Compare numerically when both sides are numbers, else as case-folded text.
    number = _as_number(value)
    if number is not None:
        return (0, number)
    return (1, _as_text(value).casefold())


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return not value
    return False


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, str) or isinstance(right, str):
        return _as_text(left).casefold() == _as_text(right).casefold()
    return left == right


def _compare(left: Any, right: Any, predicate: Callable[[Any, Any], bool]) -> bool:
    if left is None or right is None:
        return False
    left_key, right_key = _ordering_key(left), _ordering_key(right)
    if left_key[0] != right_key[0]:
        return False
    return predicate(left_key, right_key)


def _in(left: Any, right: Any) -> bool:
    if not isinstance(right, (list, tuple, set)):
        return False
    return any(_equals(left, candidate) for candidate in right)


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": lambda left, right: not _equals(left, right),
    "contains": lambda left, right: _as_text(right).casefold() in _as_text(left).casefold(),
    "not_contains": lambda left, right: _as_text(right).casefold() not in _as_text(left).casefold(),
    "starts_with": lambda left, right: _as_text(left).casefold().startswith(_as_text(right).casefold()),
    "ends_with": lambda left, right: _as_text(left).casefold().endswith(_as_text(right).casefold()),
    "greater_than": lambda left, right: _compare(left, right, lambda a, b: a > b),
    "less_than": lambda left, right: _compare(left, right, lambda a, b: a < b),
    "in": _in,
    "not_in": lambda left, right: not _in(left, right),
    "is_empty": lambda left, _right: _is_empty(left),
    "is_not_empty": lambda left, _right: not _is_empty(left),
}

FILTER_OPERATORS = tuple(_OPERATORS)


def parse_conditions(filters: Any) -> tuple[list[FilterCondition], str]:
    """Normalize the accepted filter shapes into conditions plus a join logic.

    Accepted shapes: a list of ``{field, operator, value}`` dicts (AND), a dict
    with ``conditions`` and optional ``logic``, or a flat ``{field: value}``
    mapping meaning equality on every field.
    """
    logic = LOGIC_AND
    raw_conditions: Iterable[Any]
    if isinstance(filters, list):
        raw_conditions = filters
    elif isinstance(filters, Mapping):
        if "conditions" in filters:
            raw_logic = str(filters.get("logic") or LOGIC_AND).upper()
            logic = LOGIC_OR if raw_logic == LOGIC_OR else LOGIC_AND
            raw_conditions = filters.get("conditions") or []
            if not isinstance(raw_conditions, list):
                return [], logic
        else:
            raw_conditions = [
                {"field": key, "operator": "equals", "value": value}
                for key, value in filters.items()
                if key != "logic"
            ]
    else:
        return [], logic

    conditions: list[FilterCondition] = []
    for raw in raw_conditions:
        if not isinstance(raw, Mapping):
            continue
        field = raw.get("field")
        operator = str(raw.get("operator") or "equals")
        if not isinstance(field, str) or not field or operator not in _OPERATORS:
            logger.debug("report_filter_condition_skipped condition=%s", raw)
            continue
        conditions.append(FilterCondition(field=field, operator=operator, value=raw.get("value")))
    return conditions, logic


def matches(row: Mapping[str, Any], condition: FilterCondition) -> bool:
    return _OPERATORS[condition.operator](row.get(condition.field), condition.value)


def apply_filters(rows: list[dict[str, Any]], filters: Any) -> list[dict[str, Any]]:
    conditions, logic = parse_conditions(filters)
    if not conditions:
        return list(rows)
    combine = any if logic == LOGIC_OR else all
    return [row for row in rows if combine(matches(row, condition) for condition in conditions)]


def _calculation_key(calculation: Mapping[str, Any]) -> str:
    name = calculation.get("name")
    if isinstance(name, str) and name:
        return name
    field = calculation.get("field")
    return f"{calculation['type']}_{field}" if field else str(calculation["type"])


def _round(value: float) -> float | int:
    rounded = round(value, 2)
    return int(rounded) if rounded == int(rounded) else rounded


def calculate_summary_stats(
    rows: list[dict[str, Any]], calculations: Any
) -> dict[str, Any]:
    summary: dict[str, Any] = {}
    if not isinstance(calculations, list):
        return summary
    for calculation in calculations:
        if not isinstance(calculation, Mapping):
            continue
        calc_type = calculation.get("type")
        if calc_type not in CALCULATION_TYPES:
            continue
        field = calculation.get("field")
        key = _calculation_key(calculation)

        if calc_type == "count":
            if field:
                summary[key] = sum(1 for row in rows if not _is_empty(row.get(field)))
            else:
                summary[key] = len(rows)
            continue
        if not isinstance(field, str) or not field:
            continue
        if calc_type == "distinct_count":
            summary[key] = len(
                {_as_text(row.get(field)).casefold() for row in rows if not _is_empty(row.get(field))}
            )
            continue

        numbers = [n for n in (_as_number(row.get(field)) for row in rows) if n is not None]
        if not numbers:
            summary[key] = 0
        elif calc_type == "sum":
            summary[key] = _round(sum(numbers))
        elif calc_type == "avg":
            summary[key] = _round(sum(numbers) / len(numbers))
        elif calc_type == "min":
            summary[key] = _round(min(numbers))
        else:
            summary[key] = _round(max(numbers))
    return summary


def first_section(sections: Any) -> dict[str, Any]:
    if isinstance(sections, list) and sections and isinstance(sections[0], Mapping):
        return dict(sections[0])
    return {}


def section_columns(section: Mapping[str, Any]) -> list[dict[str, str]]:
    columns: list[dict[str, str]] = []
    raw_columns = section.get("columns")
    if not isinstance(raw_columns, list):
        return columns
    for column in raw_columns:
        if not isinstance(column, Mapping) or not column.get("name"):
            continue
        name = str(column["name"])
        columns.append({"name": name, "label": str(column.get("label") or name)})
    return columns


def build_report_data(
    *, sections: Any, rows: list[dict[str, Any]], filters: Any = None
) -> dict[str, Any]:
    # Shape the payload every renderer consumes: columns, rows, rowCount, summary.
    section = first_section(sections)
    data = apply_filters(rows, filters) if filters else list(rows)
    return {
        "columns": section_columns(section),
        "rows": data,
        "rowCount": len(data),
        "summary": calculate_summary_stats(data, section.get("calculations") or []),
    }
