from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

GROUP_OPERATORS = ('AND', 'OR')


@dataclass
class Condition:
    id: str
    field: str
    operator: str
    value: Any = None
    unit: Optional[str] = None
    type: str = 'condition'


@dataclass
class Group:
    id: str
    operator: str = 'AND'
    conditions: List[Union['Group', Condition]] = field(default_factory=list)
    type: str = 'group'


Node = Union[Group, Condition]


class CriteriaParseError(ValueError):
    def __init__(self, path: str, message: str) -> None:
        super().__init__(f'{path}: {message}')
        self.path = path
        self.message = message


def parse_criteria(data: Any, path: str = 'root') -> Node:
    """Build a criteria tree from its JSON form.

    Only structure is checked here (node kinds, group operator, child lists);
    field and operator semantics are left to ``validate_criteria``.
    """
    if not isinstance(data, dict):
        raise CriteriaParseError(path, 'Expected an object')
    kind = data.get('type')
    if kind == 'group':
        op = str(data.get('operator') or '').upper()
        if op not in GROUP_OPERATORS:
            raise CriteriaParseError(path, f'Invalid group operator "{data.get("operator")}"')
        children = data.get('conditions')
        if not isinstance(children, list):
            raise CriteriaParseError(path, 'Group conditions must be a list')
        return Group(
            id=str(data.get('id') or path),
            operator=op,
            conditions=[parse_criteria(c, f'{path}.conditions[{i}]') for i, c in enumerate(children)],
        )
    if kind == 'condition':
        if not data.get('field'):
            raise CriteriaParseError(path, 'Condition is missing a field')
        if not data.get('operator'):
            raise CriteriaParseError(path, 'Condition is missing an operator')
        return Condition(
            id=str(data.get('id') or path),
            field=str(data['field']),
            operator=str(data['operator']),
            value=data.get('value'),
            unit=data.get('valueUnit'),
        )
    raise CriteriaParseError(path, f'Unknown node type "{kind}"')


def criteria_to_dict(node: Node) -> Dict[str, Any]:
    if isinstance(node, Group):
        return {
            'type': 'group',
            'id': node.id,
            'operator': node.operator,
            'conditions': [criteria_to_dict(c) for c in node.conditions],
        }
    out: Dict[str, Any] = {
        'type': 'condition',
        'id': node.id,
        'field': node.field,
        'operator': node.operator,
        'value': node.value,
    }
    if node.unit:
        out['valueUnit'] = node.unit
    return out


def child_paths(group: Group, path: str) -> Iterator[Tuple[str, Node]]:
    for i, child in enumerate(group.conditions):
        yield f'{path}.conditions[{i}]', child


class CriteriaVisitor:
    """Base visitor shared by validation and evaluation.

    ``visit_group`` receives a callable that visits one child and returns the
    child's result; subclasses decide the traversal order and when to stop.
    """

    def visit_group(self, group: Group, path: str, visit_child) -> Any:
        results = []
        for child_path, child in child_paths(group, path):
            results.append(visit_child(child, child_path))
        return results

    def visit_condition(self, condition: Condition, path: str) -> Any:
        raise NotImplementedError

    def visit_unknown(self, node: Any, path: str) -> Any:
        raise TypeError(f'{path}: not a criteria node: {type(node).__name__}')


def visit(node: Any, visitor: CriteriaVisitor, path: str = 'root') -> Any:
    if isinstance(node, Group):
        return visitor.visit_group(node, path, lambda child, child_path: visit(child, visitor, child_path))
    if isinstance(node, Condition):
        return visitor.visit_condition(node, path)
    return visitor.visit_unknown(node, path)


def iter_conditions(node: Node) -> Iterator[Condition]:
    if isinstance(node, Condition):
        yield node
        return
    for child in node.conditions:
        yield from iter_conditions(child)


def complexity(tree: Node) -> Dict[str, Any]:
    conditions = 0
    groups = 0
    max_depth = 0

    def walk(node: Node, depth: int) -> None:
        nonlocal conditions, groups, max_depth
        max_depth = max(max_depth, depth)
        if isinstance(node, Group):
            groups += 1
            for child in node.conditions:
                walk(child, depth + 1)
        else:
            conditions += 1

    walk(tree, 0)
    if conditions > 10 or max_depth > 3:
        level = 'complex'
    elif conditions > 5 or max_depth > 2:
        level = 'moderate'
    else:
        level = 'simple'
    return {'conditions': conditions, 'groups': groups, 'depth': max_depth, 'level': level}
