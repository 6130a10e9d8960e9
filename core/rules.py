from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from core import fields as registry
from core.criteria import Condition, CriteriaVisitor, Group, visit
from core.utils import parse_datetime


class _Unknown:
    def __repr__(self) -> str:
        return 'UNKNOWN'

    def __bool__(self) -> bool:
        return False


# A field whose source facet was unavailable for this item
UNKNOWN = _Unknown()


class EvaluationError(TypeError):
    pass


def resolve_field_value(item: Any, definition: registry.FieldDefinition) -> Any:
    facet = item.facet(definition.source)
    if facet is None:
        return UNKNOWN
    if definition.derive is not None:
        return definition.derive(facet)
    return facet.get(definition.attr)


def _num(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError('boolean is not a number')
    return float(value)


def _scaled(value: Any, definition: registry.FieldDefinition, unit: Optional[str]) -> float:
    # Size fields are stored in bytes; a condition may carry MB/GB/TB
    if definition.unit == 'size' and unit:
        mult = registry.unit_multiplier('size', unit)
        if mult is None:
            raise ValueError(f'unknown size unit {unit}')
        return _num(value) * mult
    return _num(value)


def _compare_numbers(actual: Any, op: str, expected: Any, definition, unit) -> bool:
    a = _num(actual)
    if op == 'between':
        lo, hi = (_scaled(v, definition, unit) for v in expected)
        return lo <= a <= hi
    if op in ('in', 'notIn'):
        found = any(a == _num(v) for v in expected)
        return found if op == 'in' else not found
    b = _scaled(expected, definition, unit)
    return {
        'equals': a == b,
        'notEquals': a != b,
        'greaterThan': a > b,
        'greaterThanOrEqual': a >= b,
        'lessThan': a < b,
        'lessThanOrEqual': a <= b,
    }.get(op, False)


def _compare_strings(actual: Any, op: str, expected: Any, definition, unit) -> bool:
    a = str(actual)
    if op == 'equals':
        return a == str(expected)
    if op == 'notEquals':
        return a != str(expected)
    if op == 'in':
        return a in [str(v) for v in expected]
    if op == 'notIn':
        return a not in [str(v) for v in expected]
    if op == 'regex':
        return re.search(str(expected), a, re.IGNORECASE) is not None
    low, needle = a.lower(), str(expected).lower()
    if op == 'contains':
        return needle in low
    if op == 'notContains':
        return needle not in low
    if op == 'startsWith':
        return low.startswith(needle)
    if op == 'endsWith':
        return low.endswith(needle)
    return False


def _relative_threshold(expected: Any, unit: Optional[str], now: datetime) -> datetime:
    seconds = registry.unit_multiplier('time', unit or 'days')
    if seconds is None:
        raise ValueError(f'unknown time unit {unit}')
    return now - timedelta(seconds=_num(expected) * seconds)


def _compare_dates(actual: Any, op: str, expected: Any, definition, unit, now: datetime) -> bool:
    a = parse_datetime(actual)
    if a is None:
        raise ValueError(f'not a date: {actual!r}')
    if op == 'olderThan':
        return a < _relative_threshold(expected, unit, now)
    if op == 'newerThan':
        return a > _relative_threshold(expected, unit, now)
    if op == 'between':
        start, end = (parse_datetime(v) for v in expected)
        if start is None or end is None:
            return False
        return start <= a <= end
    b = parse_datetime(expected)
    if b is None:
        return False
    if op == 'before':
        return a < b
    if op == 'after':
        return a > b
    return False


def _compare_booleans(actual: Any, op: str, expected: Any, definition, unit) -> bool:
    if not isinstance(actual, bool) or not isinstance(expected, bool):
        return False
    if op == 'equals':
        return actual is expected
    if op == 'notEquals':
        return actual is not expected
    return False


def _compare_arrays(actual: Any, op: str, expected: Any, definition, unit) -> bool:
    if not isinstance(actual, (list, tuple, set)):
        return False
    members = {str(v).lower() for v in actual}
    if op == 'isEmpty':
        return not members
    if op == 'isNotEmpty':
        return bool(members)
    if op == 'contains':
        return str(expected).lower() in members
    if op == 'notContains':
        return str(expected).lower() not in members
    wanted = [str(v).lower() for v in expected]
    if op == 'containsAny':
        return any(w in members for w in wanted)
    if op == 'containsAll':
        return all(w in members for w in wanted)
    return False


def _compare_enums(actual: Any, op: str, expected: Any, definition, unit) -> bool:
    a = registry.normalize_enum_value(actual)
    if op in ('in', 'notIn'):
        found = a in [registry.normalize_enum_value(v) for v in expected]
        return found if op == 'in' else not found
    b = registry.normalize_enum_value(expected)
    if op == 'equals':
        return a == b
    if op == 'notEquals':
        return a != b
    ra, rb = definition.enum_rank(a), definition.enum_rank(b)
    if ra is None or rb is None:
        return False
    return {
        'lessThan': ra < rb,
        'lessThanOrEqual': ra <= rb,
        'greaterThan': ra > rb,
        'greaterThanOrEqual': ra >= rb,
    }.get(op, False)


OPERATORS_BY_TYPE: Dict[str, Callable[..., bool]] = {
    'number': _compare_numbers,
    'string': _compare_strings,
    'boolean': _compare_booleans,
    'array': _compare_arrays,
    'enum': _compare_enums,
}


def _empty_value_result(definition: registry.FieldDefinition, op: str) -> bool:
    if op == 'null':
        return True
    if definition.null_as_oldest and op in ('olderThan', 'before'):
        return True
    return False


def evaluate_condition(item: Any, condition: Condition, now: Optional[datetime] = None) -> bool:
    definition = registry.get_field_definition(condition.field)
    if definition is None or not definition.allows(condition.operator):
        return False
    op = condition.operator
    now = now or datetime.now(timezone.utc)
    try:
        actual = resolve_field_value(item, definition)
        if actual is UNKNOWN:
            return False
        if actual is None:
            return _empty_value_result(definition, op)
        if op == 'null':
            return False
        if op == 'notNull':
            return True
        if definition.type == 'date':
            return _compare_dates(actual, op, condition.value, definition, condition.unit, now)
        compare = OPERATORS_BY_TYPE.get(definition.type)
        if compare is None:
            return False
        return compare(actual, op, condition.value, definition, condition.unit)
    except (TypeError, ValueError, re.error):
        # Malformed values make the condition false rather than failing the item
        return False


class _Evaluator(CriteriaVisitor):
    def __init__(self, item: Any, now: datetime) -> None:
        self.item = item
        self.now = now

    def visit_group(self, group: Group, path: str, visit_child) -> bool:
        if group.operator == 'OR':
            for i, child in enumerate(group.conditions):
                if visit_child(child, f'{path}.conditions[{i}]'):
                    return True
            return False
        for i, child in enumerate(group.conditions):
            if not visit_child(child, f'{path}.conditions[{i}]'):
                return False
        return bool(group.conditions)

    def visit_condition(self, condition: Condition, path: str) -> bool:
        return evaluate_condition(self.item, condition, self.now)

    def visit_unknown(self, node: Any, path: str) -> bool:
        raise EvaluationError(f'{path}: not a criteria node: {type(node).__name__}')


def evaluate(tree: Any, item: Any, now: Optional[datetime] = None) -> bool:
    """Return True when ``item`` satisfies the criteria tree.

    Groups short-circuit in declaration order. Data problems on the item make
    individual conditions false; only a tree that is not made of criteria
    nodes raises ``EvaluationError``.
    """
    if not isinstance(tree, (Group, Condition)):
        raise EvaluationError(f'root: not a criteria node: {type(tree).__name__}')
    return bool(visit(tree, _Evaluator(item, now or datetime.now(timezone.utc))))
