from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List

from core import fields as registry
from core.criteria import Condition, CriteriaVisitor, Group, visit
from core.utils import parse_datetime

LIST_OPERATORS = ('in', 'notIn', 'containsAny', 'containsAll')
NO_VALUE_OPERATORS = ('null', 'notNull', 'isEmpty', 'isNotEmpty')
RELATIVE_DATE_OPERATORS = ('olderThan', 'newerThan')
ABSOLUTE_DATE_OPERATORS = ('before', 'after')


@dataclass
class CriteriaError:
    path: str
    message: str

    def __str__(self) -> str:
        return f'{self.path}: {self.message}'


@dataclass
class ValidationResult:
    valid: bool
    errors: List[CriteriaError] = field(default_factory=list)

    def messages(self) -> List[str]:
        return [str(e) for e in self.errors]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _scalar_ok(definition: registry.FieldDefinition, value: Any) -> bool:
    ftype = definition.type
    if ftype == 'number':
        return _is_number(value)
    if ftype == 'boolean':
        return isinstance(value, bool)
    if ftype == 'date':
        return parse_datetime(value) is not None
    # strings, enums and array members are compared as strings
    return isinstance(value, str) and value != ''


class _Validator(CriteriaVisitor):
    def __init__(self, media_type: str) -> None:
        self.media_type = media_type
        self.errors: List[CriteriaError] = []

    def error(self, path: str, message: str) -> None:
        self.errors.append(CriteriaError(path, message))

    def visit_group(self, group: Group, path: str, visit_child) -> None:
        if group.operator not in ('AND', 'OR'):
            self.error(path, f'Invalid group operator "{group.operator}"')
        if not group.conditions:
            self.error(path, 'Group must contain at least one condition')
        for i, child in enumerate(group.conditions):
            visit_child(child, f'{path}.conditions[{i}]')

    def visit_condition(self, cond: Condition, path: str) -> None:
        definition = registry.get_field_definition(cond.field)
        if definition is None:
            self.error(path, f'Unknown field "{cond.field}"')
            return
        if self.media_type in registry.MEDIA_TYPES and not definition.applies_to(self.media_type):
            self.error(path, f'Field "{cond.field}" is not available for {self.media_type}')
        if not definition.allows(cond.operator):
            self.error(path, f'Operator "{cond.operator}" is not allowed for field "{cond.field}"')
            return
        self._check_unit(definition, cond, path)
        self._check_value(definition, cond, path)

    def _check_unit(self, definition: registry.FieldDefinition, cond: Condition, path: str) -> None:
        if not cond.unit:
            return
        if not definition.unit:
            self.error(path, f'Field "{cond.field}" does not take a unit')
            return
        if registry.unit_multiplier(definition.unit, cond.unit) is None:
            allowed = ', '.join(registry.UNIT_DOMAINS[definition.unit])
            self.error(path, f'Unknown unit "{cond.unit}" (expected one of {allowed})')

    def _check_value(self, definition: registry.FieldDefinition, cond: Condition, path: str) -> None:
        op = cond.operator
        value = cond.value
        if op in NO_VALUE_OPERATORS:
            if value not in (None, '', []):
                self.error(path, f'Operator "{op}" does not take a value')
            return
        if op in LIST_OPERATORS:
            if not isinstance(value, list) or not value:
                self.error(path, f'Operator "{op}" requires a non-empty list of values')
                return
            for v in value:
                if not self._member_ok(definition, v):
                    self.error(path, f'Invalid value "{v}" for field "{cond.field}"')
            return
        if op == 'between':
            if not isinstance(value, list) or len(value) != 2:
                self.error(path, 'Operator "between" requires exactly two values')
                return
            if not all(_scalar_ok(definition, v) for v in value):
                self.error(path, f'Operator "between" requires two {definition.type} values')
            return
        if op in RELATIVE_DATE_OPERATORS:
            if not _is_number(value) or value < 0:
                self.error(path, f'Operator "{op}" requires a non-negative number')
            return
        if op in ABSOLUTE_DATE_OPERATORS:
            if parse_datetime(value) is None:
                self.error(path, f'Operator "{op}" requires an ISO date')
            return
        if op == 'regex':
            if not isinstance(value, str):
                self.error(path, 'Operator "regex" requires a pattern string')
                return
            try:
                re.compile(value)
            except re.error as e:
                self.error(path, f'Invalid regex: {e}')
            return
        if definition.type == 'array':
            if not isinstance(value, str) or value == '':
                self.error(path, f'Operator "{op}" requires a single value')
            return
        if not self._member_ok(definition, value):
            self.error(path, f'Invalid value "{value}" for {definition.type} field "{cond.field}"')

    def _member_ok(self, definition: registry.FieldDefinition, value: Any) -> bool:
        if definition.type == 'enum':
            return definition.enum_rank(value) is not None
        if definition.type == 'array':
            return isinstance(value, str) and value != ''
        return _scalar_ok(definition, value)


def validate_criteria(tree: Any, media_type: str) -> ValidationResult:
    """Check a criteria tree against the field registry for one media type.

    Every problem is collected with a ``path: message`` location; only a
    non-node object in the tree or an empty registry raises.
    """
    if not registry.FIELD_DEFINITIONS:
        raise RuntimeError('field registry is empty')
    validator = _Validator(media_type)
    if media_type not in registry.MEDIA_TYPES:
        validator.error('root', f'Unknown media type "{media_type}"')
    if not isinstance(tree, Group):
        if isinstance(tree, Condition):
            validator.error('root', 'Root must be a group')
        else:
            raise TypeError(f'not a criteria node: {type(tree).__name__}')
    visit(tree, validator)
    return ValidationResult(valid=not validator.errors, errors=validator.errors)
