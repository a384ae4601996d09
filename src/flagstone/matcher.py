from __future__ import annotations
import re
import logging
import datetime
from collections.abc import Callable
from functools import lru_cache
from typing import TYPE_CHECKING, Any

from packaging.version import InvalidVersion, Version

from .errors import ConfigurationError
from .model import AttributeValue, Condition, Context, Rule, parse_semver_constraint, parse_timestamp

if TYPE_CHECKING:
    from .segments import SegmentResolver


logger = logging.getLogger(__name__)

_numeric_re = re.compile(r"^\s*-?\d+(?:\.\d+)?\s*$")
_sequence_types = (list, tuple, set, frozenset)


# Every helper below is total: an incompatible pair of values yields None (or
# False for the operators) and never raises.


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _as_number(v: Any) -> float | None:
    if _is_number(v):
        return v
    if isinstance(v, str) and _numeric_re.match(v):
        return float(v)
    return None


def _as_timestamp(v: Any) -> float | None:
    """
    Seconds since the unix epoch for datetimes, dates (midnight UTC), ISO 8601
    strings with a timezone and plain numbers.
    """
    if isinstance(v, datetime.datetime):
        if v.tzinfo is None:
            return None
        return v.timestamp()
    if isinstance(v, datetime.date):
        return datetime.datetime(v.year, v.month, v.day, tzinfo=datetime.timezone.utc).timestamp()
    if _is_number(v):
        try:
            return float(v)
        except OverflowError:
            return None
    if isinstance(v, str):
        try:
            return parse_timestamp(v).timestamp()
        except (ValueError, OverflowError):
            return None
    return None


def _compare(a: Any, b: Any) -> int | None:
    """
    Order a against b. Returns -1, 0 or 1, or None when the values are not
    comparable.
    """
    if isinstance(a, datetime.date) or isinstance(b, datetime.date):
        x, y = _as_timestamp(a), _as_timestamp(b)
    else:
        x, y = _as_number(a), _as_number(b)
        if (x is None or y is None) and isinstance(a, str) and isinstance(b, str):
            x, y = _as_timestamp(a), _as_timestamp(b)
    if x is None or y is None:
        return None
    if x == y:
        return 0
    if x < y:
        return -1
    if x > y:
        return 1
    return None  # nan


def _equals(a: Any, b: Any) -> bool | None:
    if isinstance(a, bool) or isinstance(b, bool):
        if isinstance(a, bool) and isinstance(b, bool):
            return a == b
        return None
    if isinstance(a, datetime.date) or isinstance(b, datetime.date) or _is_number(a) or _is_number(b):
        c = _compare(a, b)
        return None if c is None else c == 0
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    return None


def _values(v: Any) -> tuple:
    if not isinstance(v, (list, tuple)):
        raise ConfigurationError(f"expected a list of values, got {type(v).__name__}")
    return tuple(v)


def _op_equals(actual: AttributeValue, expected: Any) -> bool:
    return _equals(actual, expected) is True


def _op_not_equals(actual: AttributeValue, expected: Any) -> bool:
    return _equals(actual, expected) is False


def _op_in(actual: AttributeValue, expected: Any) -> bool:
    values = _values(expected)
    candidates = actual if isinstance(actual, _sequence_types) else (actual,)
    return any(_equals(a, v) is True for a in candidates for v in values)


def _op_not_in(actual: AttributeValue, expected: Any) -> bool:
    values = _values(expected)
    if not values:
        return True
    candidates = actual if isinstance(actual, _sequence_types) else (actual,)
    results = [_equals(a, v) for a in candidates for v in values]
    # At least one comparable pair is required, otherwise the attribute is of
    # an incompatible type.
    return any(r is not None for r in results) and not any(r is True for r in results)


def _op_contains(actual: AttributeValue, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, _sequence_types):
        return any(_equals(a, expected) is True for a in actual)
    return False


def _op_greater_than(actual: AttributeValue, expected: Any) -> bool:
    return _compare(actual, expected) == 1


def _op_less_than(actual: AttributeValue, expected: Any) -> bool:
    return _compare(actual, expected) == -1


@lru_cache(maxsize=1024)
def _compile_pattern(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ConfigurationError(f"invalid regex {pattern!r}: {e}") from e


def _op_regex_match(actual: AttributeValue, expected: Any) -> bool:
    if not isinstance(expected, str):
        raise ConfigurationError("regex-match requires a string pattern")
    pattern = _compile_pattern(expected)
    return isinstance(actual, str) and pattern.search(actual) is not None


def _op_semver_compare(actual: AttributeValue, expected: Any) -> bool:
    if not isinstance(expected, str):
        raise ConfigurationError("semver-compare requires a string constraint")
    op, version = parse_semver_constraint(expected)
    if not isinstance(actual, str):
        return False
    try:
        v = Version(actual)
    except InvalidVersion:
        logger.debug("ignoring unparseable version %r", actual)
        return False
    match op:
        case "EQ":
            return v == version
        case "NE":
            return v != version
        case "GT":
            return v > version
        case "GE":
            return v >= version
        case "LT":
            return v < version
        case "LE":
            return v <= version
        case _:  # pragma: no cover
            assert False, "unreachable"  # pragma: no cover


_operators: dict[str, Callable[[AttributeValue, Any], bool]] = {
    "equals": _op_equals,
    "not-equals": _op_not_equals,
    "in": _op_in,
    "not-in": _op_not_in,
    "contains": _op_contains,
    "greater-than": _op_greater_than,
    "less-than": _op_less_than,
    "regex-match": _op_regex_match,
    "semver-compare": _op_semver_compare,
}


def match_condition(
    condition: Condition,
    context: Context,
    resolver: SegmentResolver | None = None,
    visited: frozenset[str] = frozenset(),
) -> bool:
    """
    Evaluate one condition. A missing attribute or a type the operator cannot
    handle is a non-match. Only malformed configuration raises.
    """
    if condition.operator == "segment-match":
        if resolver is None:
            raise ConfigurationError("segment-match used without a segment resolver")
        return resolver.is_member(condition.value, context, visited)
    op = _operators.get(condition.operator)
    if op is None:
        raise ConfigurationError(f"unknown operator {condition.operator!r}")
    actual = context.get(condition.attribute)
    if actual is None:
        return False
    return op(actual, condition.value)


def matches(
    rule: Rule,
    context: Context,
    resolver: SegmentResolver | None = None,
    visited: frozenset[str] = frozenset(),
) -> bool:
    """
    A rule matches iff every one of its conditions matches. A rule without
    conditions matches every context.
    """
    return all(match_condition(c, context, resolver, visited) for c in rule.conditions)
