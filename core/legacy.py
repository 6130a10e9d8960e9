from __future__ import annotations

from typing import Any, Dict, List

from core.criteria import Condition, Group
from core.fields import SIZE_UNITS, normalize_enum_value

LEGACY_KEYS = (
    'neverWatched',
    'lastWatchedBefore',
    'maxPlayCount',
    'addedBefore',
    'minFileSize',
    'maxQuality',
    'maxRating',
    'libraryIds',
    'tags',
)


def is_legacy_criteria(data: Any) -> bool:
    if not isinstance(data, dict) or 'type' in data:
        return False
    return not data or any(k in data for k in LEGACY_KEYS + ('operator',))


def migrate_legacy_criteria(legacy: Dict[str, Any]) -> Group:
    """Convert the flat pre-tree criteria shape into a single group.

    One condition is produced per populated legacy key, joined by the legacy
    operator (AND when absent). An empty legacy object migrates to
    ``neverWatched equals true``. Ids are deterministic so re-running the
    migration yields the same tree.
    """
    legacy = legacy or {}
    conditions: List[Condition] = []

    def add(field: str, operator: str, value: Any, unit: Any = None) -> None:
        conditions.append(Condition(id=f'legacy-{len(conditions) + 1}', field=field, operator=operator, value=value, unit=unit))

    if legacy.get('neverWatched') is not None:
        add('neverWatched', 'equals', bool(legacy['neverWatched']))
    lwb = legacy.get('lastWatchedBefore')
    if isinstance(lwb, dict) and lwb.get('value') is not None:
        add('lastWatchedAt', 'olderThan', lwb['value'], lwb.get('unit') or 'days')
    if legacy.get('maxPlayCount') is not None:
        add('playCount', 'lessThanOrEqual', legacy['maxPlayCount'])
    ab = legacy.get('addedBefore')
    if isinstance(ab, dict) and ab.get('value') is not None:
        add('addedAt', 'olderThan', ab['value'], ab.get('unit') or 'days')
    mfs = legacy.get('minFileSize')
    if isinstance(mfs, dict) and mfs.get('value') is not None:
        multiplier = SIZE_UNITS.get(str(mfs.get('unit') or 'MB').upper(), SIZE_UNITS['MB'])
        add('fileSize', 'greaterThanOrEqual', int(mfs['value'] * multiplier))
    if legacy.get('maxQuality'):
        add('resolution', 'lessThanOrEqual', normalize_enum_value(legacy['maxQuality']))
    if legacy.get('maxRating') is not None:
        add('rating', 'lessThanOrEqual', legacy['maxRating'])
    if legacy.get('libraryIds'):
        add('libraryId', 'in', [str(x) for x in legacy['libraryIds']])
    if legacy.get('tags'):
        add('labels', 'containsAny', [str(x) for x in legacy['tags']])

    if not conditions:
        add('neverWatched', 'equals', True)

    operator = str(legacy.get('operator') or 'AND').upper()
    if operator not in ('AND', 'OR'):
        operator = 'AND'
    return Group(id='legacy-root', operator=operator, conditions=conditions)
