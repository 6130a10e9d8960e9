import importlib

import pytest


def _tree(data):
    criteria = importlib.import_module('core.criteria')
    return criteria.parse_criteria(data)


def _cond(field, operator, value=None, unit=None, cid='c'):
    d = {'type': 'condition', 'id': cid, 'field': field, 'operator': operator, 'value': value}
    if unit:
        d['valueUnit'] = unit
    return d


def _group(op, *children, gid='g'):
    return {'type': 'group', 'id': gid, 'operator': op, 'conditions': list(children)}


def test_valid_tree_passes():
    validation = importlib.import_module('core.validation')
    tree = _tree(_group('AND',
                        _cond('playCount', 'equals', 0),
                        _cond('lastWatchedAt', 'olderThan', 90, 'days'),
                        _group('OR', _cond('genres', 'containsAny', ['Horror']), _cond('resolution', 'lessThanOrEqual', '720'))))
    result = validation.validate_criteria(tree, 'MOVIE')
    assert result.valid, result.messages()
    assert result.errors == []


def test_unknown_field_reports_path():
    validation = importlib.import_module('core.validation')
    tree = _tree(_group('AND', _cond('playCount', 'equals', 1), _cond('bogusField', 'equals', 'x')))
    result = validation.validate_criteria(tree, 'MOVIE')
    assert not result.valid
    assert result.messages() == ['root.conditions[1]: Unknown field "bogusField"']


def test_nested_paths_and_all_errors_collected():
    validation = importlib.import_module('core.validation')
    tree = _tree(_group('AND',
                        _cond('bogus', 'equals', 1),
                        _group('OR', _cond('playCount', 'contains', 'x'), _cond('sonarr.status', 'equals', 'ended'))))
    result = validation.validate_criteria(tree, 'MOVIE')
    msgs = result.messages()
    assert len(msgs) == 3
    assert msgs[0].startswith('root.conditions[0]:')
    assert msgs[1].startswith('root.conditions[1].conditions[0]: Operator "contains"')
    assert msgs[2] == 'root.conditions[1].conditions[1]: Field "sonarr.status" is not available for MOVIE'


def test_empty_group_and_unknown_media_type():
    validation = importlib.import_module('core.validation')
    tree = _tree(_group('AND'))
    result = validation.validate_criteria(tree, 'MUSIC')
    msgs = result.messages()
    assert 'root: Unknown media type "MUSIC"' in msgs
    assert 'root: Group must contain at least one condition' in msgs


@pytest.mark.parametrize('cond', [
    _cond('libraryId', 'in', 'notalist'),
    _cond('fileSize', 'between', [1]),
    _cond('lastWatchedAt', 'null', 'x'),
    _cond('lastWatchedAt', 'olderThan', 'ninety'),
    _cond('lastWatchedAt', 'olderThan', 5, 'fortnights'),
    _cond('addedAt', 'before', 'not-a-date'),
    _cond('title', 'regex', '(['),
    _cond('radarr.monitored', 'equals', 'yes'),
    _cond('resolution', 'equals', '8k'),
    _cond('playCount', 'equals', 1, 'days'),
])
def test_value_shape_errors(cond):
    validation = importlib.import_module('core.validation')
    result = validation.validate_criteria(_tree(_group('AND', cond)), 'MOVIE')
    assert not result.valid
    assert all(m.startswith('root.conditions[0]: ') for m in result.messages())


def test_error_str_format():
    validation = importlib.import_module('core.validation')
    err = validation.CriteriaError('root.conditions[2]', 'Unknown field "x"')
    assert str(err) == 'root.conditions[2]: Unknown field "x"'


def test_non_node_raises():
    validation = importlib.import_module('core.validation')
    criteria = importlib.import_module('core.criteria')
    with pytest.raises(TypeError):
        validation.validate_criteria({'type': 'group'}, 'MOVIE')
    bad = criteria.Group(id='g', operator='AND', conditions=['oops'])
    with pytest.raises(TypeError):
        validation.validate_criteria(bad, 'MOVIE')


def test_parse_errors_carry_path():
    criteria = importlib.import_module('core.criteria')
    with pytest.raises(criteria.CriteriaParseError) as ei:
        criteria.parse_criteria(_group('AND', _cond('playCount', 'equals', 1), {'type': 'weird'}))
    assert ei.value.path == 'root.conditions[1]'
    with pytest.raises(criteria.CriteriaParseError):
        criteria.parse_criteria(_group('XOR', _cond('playCount', 'equals', 1)))


def test_serialization_keeps_shape():
    criteria = importlib.import_module('core.criteria')
    data = _group('OR', _cond('lastWatchedAt', 'olderThan', 30, 'days', cid='a'), _cond('year', 'lessThan', 2000, cid='b'))
    out = criteria.criteria_to_dict(criteria.parse_criteria(data))
    assert out['type'] == 'group' and out['operator'] == 'OR'
    assert out['conditions'][0] == {'type': 'condition', 'id': 'a', 'field': 'lastWatchedAt',
                                    'operator': 'olderThan', 'value': 30, 'valueUnit': 'days'}
    assert 'valueUnit' not in out['conditions'][1]


def test_complexity_levels():
    criteria = importlib.import_module('core.criteria')
    simple = _tree(_group('AND', _cond('playCount', 'equals', 0)))
    assert criteria.complexity(simple) == {'conditions': 1, 'groups': 1, 'depth': 1, 'level': 'simple'}
    many = _tree(_group('AND', *[_cond('playCount', 'equals', i, cid=f'c{i}') for i in range(6)]))
    assert criteria.complexity(many)['level'] == 'moderate'
    deep = _tree(_group('AND', _group('OR', _group('AND', _group('OR', _cond('playCount', 'equals', 0))))))
    assert criteria.complexity(deep)['level'] == 'complex'


def test_disallowed_operator_flags_exactly_that_condition():
    validation = importlib.import_module('core.validation')
    tree = _tree(_group('AND',
                        _cond('playCount', 'equals', 0, cid='a'),
                        _group('OR', _cond('year', 'lessThan', 2000, cid='b'), _cond('neverWatched', 'notEquals', True, cid='c')),
                        _cond('title', 'contains', 'x', cid='d')))
    result = validation.validate_criteria(tree, 'MOVIE')
    assert [e.path for e in result.errors] == ['root.conditions[1].conditions[1]']


def test_empty_nested_group_reported_at_its_path():
    validation = importlib.import_module('core.validation')
    tree = _tree(_group('AND', _cond('playCount', 'equals', 0), _group('OR', _group('AND'))))
    result = validation.validate_criteria(tree, 'MOVIE')
    assert result.messages() == ['root.conditions[1].conditions[0]: Group must contain at least one condition']
