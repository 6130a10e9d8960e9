from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from core.criteria import CriteriaParseError, parse_criteria
from core.fields import MEDIA_TYPES
from core.legacy import is_legacy_criteria, migrate_legacy_criteria
from core.models import ACTION_TYPES, Rule
from core.scheduler import cron_error
from core.validation import validate_criteria
from storage.maintenance import new_id


class RuleValidationError(ValueError):
    def __init__(self, errors: List[str]) -> None:
        super().__init__('; '.join(errors))
        self.errors = list(errors)


class RuleNotFound(KeyError):
    pass


def _get(payload: Dict[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in payload:
        return payload[camel]
    return payload.get(snake, default)


def _build_rule(payload: Dict[str, Any], base: Optional[Rule], now: float) -> Rule:
    """Merge ``payload`` over ``base`` (or defaults) and validate the result.

    Criteria may be given as a tree or in the legacy flat shape, which is
    migrated before validation. Raises ``RuleValidationError`` with every
    problem found.
    """
    if not isinstance(payload, dict):
        raise RuleValidationError(['root: Expected an object'])
    errors: List[str] = []

    name = _get(payload, 'name', 'name', base.name if base else None)
    if not isinstance(name, str) or not name.strip():
        errors.append('name: Name is required')
    media_type = _get(payload, 'mediaType', 'media_type', base.media_type if base else None)
    if media_type not in MEDIA_TYPES:
        errors.append(f'mediaType: Unknown media type "{media_type}"')
    action_type = _get(payload, 'actionType', 'action_type', base.action_type if base else 'FLAG_FOR_REVIEW')
    if action_type not in ACTION_TYPES:
        errors.append(f'actionType: Unknown action type "{action_type}"')
    delay = _get(payload, 'actionDelayDays', 'action_delay_days', base.action_delay_days if base else None)
    if delay is not None and (isinstance(delay, bool) or not isinstance(delay, int) or delay < 0):
        errors.append('actionDelayDays: Must be a non-negative integer')
    schedule = _get(payload, 'schedule', 'schedule', base.schedule if base else None)
    if schedule is not None and schedule != '':
        problem = cron_error(schedule)
        if problem:
            errors.append(f'schedule: {problem}')
    else:
        schedule = None
    instances = _get(payload, 'instances', 'instances', list(base.instances) if base else [])
    if not isinstance(instances, list) or not all(isinstance(i, str) for i in instances):
        errors.append('instances: Must be a list of instance names')
        instances = []
    enabled = _get(payload, 'enabled', 'enabled', base.enabled if base else True)
    if not isinstance(enabled, bool):
        errors.append('enabled: Must be true or false')

    criteria = base.criteria if base else None
    raw = payload.get('criteria')
    if raw is not None or base is None:
        try:
            criteria = migrate_legacy_criteria(raw) if is_legacy_criteria(raw) else parse_criteria(raw)
        except CriteriaParseError as e:
            errors.append(f'criteria.{e.path}: {e.message}')
            criteria = None
    if criteria is not None and media_type in MEDIA_TYPES:
        result = validate_criteria(criteria, media_type)
        errors.extend(f'criteria.{m}' for m in result.messages())

    if errors:
        raise RuleValidationError(errors)
    return Rule(
        id=base.id if base else new_id(),
        name=name.strip(),
        description=str(_get(payload, 'description', 'description', base.description if base else '') or ''),
        enabled=enabled,
        media_type=media_type,
        criteria=criteria,
        action_type=action_type,
        action_delay_days=delay,
        schedule=schedule.strip() if schedule else None,
        instances=instances,
        created_at=base.created_at if base else now,
        updated_at=now,
        last_run_at=base.last_run_at if base else None,
    )


def create_rule(store, payload: Dict[str, Any], *, scheduler=None, now: Optional[float] = None) -> Rule:
    rule = _build_rule(payload, None, now or time.time())
    store.save_rule(rule)
    if scheduler is not None:
        scheduler.sync_rule(rule)
    return rule


def update_rule(store, rule_id: str, payload: Dict[str, Any], *, scheduler=None, now: Optional[float] = None) -> Rule:
    existing = store.get_rule(rule_id)
    if existing is None:
        raise RuleNotFound(rule_id)
    rule = _build_rule(payload, existing, now or time.time())
    store.save_rule(rule)
    if scheduler is not None:
        scheduler.sync_rule(rule)
    return rule


def delete_rule(store, rule_id: str, *, scheduler=None) -> bool:
    if scheduler is not None:
        scheduler.remove_rule(rule_id)
    return store.delete_rule(rule_id)


def set_rule_enabled(store, rule_id: str, enabled: bool, *, scheduler=None, now: Optional[float] = None) -> Rule:
    if not store.set_rule_enabled(rule_id, enabled, now or time.time()):
        raise RuleNotFound(rule_id)
    rule = store.get_rule(rule_id)
    if scheduler is not None:
        scheduler.sync_rule(rule)
    return rule


def get_rule(store, rule_id: str) -> Rule:
    rule = store.get_rule(rule_id)
    if rule is None:
        raise RuleNotFound(rule_id)
    return rule


def list_rules(store, *, enabled_only: bool = False) -> List[Rule]:
    return store.list_rules(enabled_only=enabled_only)
