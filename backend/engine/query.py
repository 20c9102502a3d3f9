"""Record query evaluation for schedule steps.

Pure functions: no I/O, no shared state, safe to call from many workers.
Evaluation never raises; a filter that cannot be evaluated is ``False``
and an unparseable legacy query over-matches rather than failing.
"""

import json
import math
import re
from typing import Any, Iterable, List, Mapping, Optional

import structlog

from core.constants import FilterOperator, QueryLogic
from engine.models import QueryLike, ScheduleFilter, ScheduleQuery, parse_query

logger = structlog.get_logger(__name__)

_LEGACY_EQUALS = re.compile(r"(\w+)\s+equals\s+['\"](.*?)['\"]", re.IGNORECASE)


def _as_text(value: Any) -> str:
    """String form matching how the UI stores and compares values."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def _as_number(value: Any) -> float:
    """Numeric coercion; NaN when the value is not a number."""
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def _lower_text(value: Any) -> str:
    return "" if value is None else _as_text(value).lower()


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def _equals(actual: Any, expected: Any) -> bool:
    return actual == expected or _as_text(actual) == _as_text(expected)


def evaluate_filter(record_data: Mapping[str, Any], flt: ScheduleFilter) -> bool:
    """Evaluate a single filter against one record's data."""
    actual = record_data.get(flt.field)
    expected = flt.value
    op = flt.operator

    try:
        if op == FilterOperator.EQUALS.value:
            return _equals(actual, expected)
        if op == FilterOperator.NOT_EQUALS.value:
            return not _equals(actual, expected)
        if op == FilterOperator.CONTAINS.value:
            return _lower_text(expected) in _lower_text(actual)
        if op == FilterOperator.NOT_CONTAINS.value:
            return _lower_text(expected) not in _lower_text(actual)
        if op == FilterOperator.IS_EMPTY.value:
            return _is_empty(actual)
        if op == FilterOperator.IS_NOT_EMPTY.value:
            return not _is_empty(actual)
        if op == FilterOperator.GREATER_THAN.value:
            return _as_number(actual) > _as_number(expected)
        if op == FilterOperator.LESS_THAN.value:
            return _as_number(actual) < _as_number(expected)
        if op == FilterOperator.GREATER_OR_EQUAL.value:
            return _as_number(actual) >= _as_number(expected)
        if op == FilterOperator.LESS_OR_EQUAL.value:
            return _as_number(actual) <= _as_number(expected)
        if op == FilterOperator.STARTS_WITH.value:
            return _lower_text(actual).startswith(_lower_text(expected))
        if op == FilterOperator.ENDS_WITH.value:
            return _lower_text(actual).endswith(_lower_text(expected))
        if op == FilterOperator.IN.value:
            return isinstance(expected, list) and actual in expected
        if op == FilterOperator.NOT_IN.value:
            return isinstance(expected, list) and actual not in expected
    except Exception as e:
        logger.warning("Filter evaluation failed", field=flt.field, operator=op, error=str(e))
        return False

    logger.warning("Unknown filter operator", operator=op, field=flt.field)
    return False


def evaluate_query(record_data: Mapping[str, Any], query: ScheduleQuery) -> bool:
    """Combine filter results with the query's logic. No filters matches all.

    Only ``AND`` requires every filter; any other logic value needs one match.
    """
    if not query.filters:
        return True
    results = (evaluate_filter(record_data, f) for f in query.filters)
    logic = str(query.logic).upper()
    if logic == QueryLogic.AND.value:
        return all(results)
    if logic != QueryLogic.OR.value:
        logger.warning("Unknown query logic, combining filters with OR", logic=query.logic)
    return any(results)


def parse_string_query(query: str) -> Optional[ScheduleQuery]:
    """Parse the legacy ``field equals 'value'`` form, or None."""
    match = _LEGACY_EQUALS.search(query)
    if not match:
        return None
    field_name, value = match.groups()
    return ScheduleQuery(
        filters=(ScheduleFilter(field=field_name, operator=FilterOperator.EQUALS.value, value=value),),
        logic=QueryLogic.AND.value,
    )


def _matches_legacy(record_data: Mapping[str, Any], query: str) -> bool:
    if not query.strip():
        return True

    structured = parse_string_query(query)
    if structured is not None:
        return evaluate_query(record_data, structured)

    try:
        haystack = json.dumps(
            dict(record_data), separators=(",", ":"), ensure_ascii=False, default=str
        ).lower()
    except (TypeError, ValueError):
        haystack = str(record_data).lower()

    needle = query.lower()
    if needle in haystack:
        return True
    return any(keyword in haystack for keyword in needle.split(" ") if keyword)


def matches(record_data: Mapping[str, Any], query: Any) -> bool:
    """Decide whether one record's data satisfies a schedule step query.

    ``query`` may be a ScheduleQuery, its dict form, a legacy string, or None.
    """
    parsed: QueryLike = parse_query(query)
    if parsed is None:
        return True
    if isinstance(parsed, str):
        return _matches_legacy(record_data or {}, parsed)
    return evaluate_query(record_data or {}, parsed)


def filter_records(records: Iterable, query: Any) -> List:
    """Records (anything with ``.data``) that match ``query``, in input order."""
    parsed = parse_query(query)
    return [r for r in records if matches(r.data, parsed)]


_DESCRIPTIONS = {
    FilterOperator.EQUALS.value: '{field} equals "{value}"',
    FilterOperator.NOT_EQUALS.value: '{field} does not equal "{value}"',
    FilterOperator.CONTAINS.value: '{field} contains "{value}"',
    FilterOperator.NOT_CONTAINS.value: '{field} does not contain "{value}"',
    FilterOperator.IS_EMPTY.value: "{field} is empty",
    FilterOperator.IS_NOT_EMPTY.value: "{field} is not empty",
    FilterOperator.GREATER_THAN.value: "{field} > {value}",
    FilterOperator.LESS_THAN.value: "{field} < {value}",
    FilterOperator.GREATER_OR_EQUAL.value: "{field} >= {value}",
    FilterOperator.LESS_OR_EQUAL.value: "{field} <= {value}",
    FilterOperator.STARTS_WITH.value: '{field} starts with "{value}"',
    FilterOperator.ENDS_WITH.value: '{field} ends with "{value}"',
}


def describe_query(query: ScheduleQuery) -> str:
    """Human-readable rendering, e.g. ``status equals "new" AND score > 5``."""
    parts = []
    for f in query.filters:
        if f.operator in (FilterOperator.IN.value, FilterOperator.NOT_IN.value):
            values = ", ".join(str(v) for v in (f.value or []))
            word = "in" if f.operator == FilterOperator.IN.value else "not in"
            parts.append(f"{f.field} {word} [{values}]")
            continue
        template = _DESCRIPTIONS.get(f.operator, "{field} {operator} {value}")
        parts.append(template.format(field=f.field, operator=f.operator, value=f.value))
    return f" {query.logic} ".join(parts)
