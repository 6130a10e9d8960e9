from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from core.models import EXECUTABLE_ACTIONS, Candidate, Rule
from integrations.services import ServiceError

DAY_SECONDS = 86400

# Operator-triggered deletions of APPROVED candidates, whatever the rule's action
MANUAL_DELETE = 'MANUAL_DELETE'
MANUAL_DELETE_KEEP_FILES = 'MANUAL_DELETE_KEEP_FILES'


@dataclass
class ActionsDeps:
    store: Any  # storage.maintenance.MaintenanceStore
    library_managers: Dict[str, Any]  # instance name -> integrations.servarr.LibraryManager
    session: Any
    event_bus: Any
    dry_run: bool
    debug_logging: bool = False
    now: Callable[[], float] = time.time


def is_due(candidate: Candidate, rule: Rule, now: float) -> bool:
    delay_days = rule.action_delay_days or 0
    return candidate.flagged_at + delay_days * DAY_SECONDS <= now


def describe_command(action_type: str) -> List[str]:
    if action_type in ('AUTO_DELETE', MANUAL_DELETE, MANUAL_DELETE_KEEP_FILES):
        return ['delete_item']
    if action_type == 'UNMONITOR_AND_DELETE':
        return ['unmonitor', 'delete_files']
    if action_type == 'UNMONITOR_AND_KEEP':
        return ['unmonitor']
    return []


async def _apply(manager, session: aiohttp.ClientSession, action_type: str, library_id: Any) -> None:
    if action_type in ('AUTO_DELETE', MANUAL_DELETE):
        await manager.delete_item(session, library_id, delete_files=True)
    elif action_type == MANUAL_DELETE_KEEP_FILES:
        await manager.delete_item(session, library_id, delete_files=False)
    elif action_type == 'UNMONITOR_AND_DELETE':
        await manager.set_monitored(session, library_id, False)
        await manager.delete_files(session, library_id)
    elif action_type == 'UNMONITOR_AND_KEEP':
        await manager.set_monitored(session, library_id, False)
    else:
        raise ValueError(f'action {action_type} is not executable')


def _fail(candidate: Candidate, rule: Rule, action: str, message: str, deps: ActionsDeps) -> bool:
    deps.store.record_deletion_error(candidate.id, message)
    deps.event_bus.emit(
        'action_failed', candidate_id=candidate.id, rule_id=rule.id, action=action,
        title=candidate.title, reason=message,
    )
    if deps.debug_logging:
        logging.warning(f'Rule {rule.name}: {action} failed for {candidate.title}: {message}')
    return False


async def execute_candidate(candidate: Candidate, rule: Rule, deps: ActionsDeps, action_type: Optional[str] = None) -> bool:
    """Run an action (the rule's own unless ``action_type`` is given) against one candidate.

    Returns True once the candidate is DELETED. Failures leave the review
    status as it was, with ``deletion_error`` set so the next pass retries it.
    A PENDING candidate is auto-approved only after the command succeeded.
    """
    action = action_type or rule.action_type
    instance = candidate.ids.get('instance')
    library_id = candidate.ids.get('library_id')
    if deps.dry_run:
        deps.event_bus.emit(
            'dry_action', candidate_id=candidate.id, rule_id=rule.id, action=action,
            instance=instance, library_id=library_id, title=candidate.title, commands=describe_command(action),
        )
        return False
    current = deps.store.get_candidate(candidate.id)
    if current is None or current.review_status != candidate.review_status:
        # Reviewed or reset since the pass started
        return False
    manager = deps.library_managers.get(instance)
    if manager is None or library_id is None:
        return _fail(candidate, rule, action, f'library manager {instance!r} not configured', deps)
    try:
        await _apply(manager, deps.session, action, library_id)
    except (ServiceError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        return _fail(candidate, rule, action, str(e) or e.__class__.__name__, deps)

    now = deps.now()
    if candidate.review_status == 'PENDING':
        if deps.store.transition_candidate(candidate.id, 'PENDING', 'APPROVED', reviewer='auto', now=now):
            candidate.review_status = 'APPROVED'
    if not deps.store.transition_candidate(candidate.id, 'APPROVED', 'DELETED', now=now):
        # Another executor finished it, or a reviewer rejected it mid-flight
        logging.warning(f'Action {action} ran for {candidate.title} but candidate {candidate.id} was no longer approved')
        return False
    deps.store.log_deletion(candidate, action, now)
    deps.event_bus.emit(
        'action_executed', candidate_id=candidate.id, rule_id=rule.id, action=action,
        instance=instance, library_id=library_id, title=candidate.title,
    )
    return True


async def run_action_pass(deps: ActionsDeps) -> Dict[str, int]:
    summary = {'executed': 0, 'failed': 0, 'skipped': 0, 'dry_run': 0}
    now = deps.now()
    for rule in deps.store.list_rules(enabled_only=True):
        if rule.action_type not in EXECUTABLE_ACTIONS:
            continue
        statuses = ['APPROVED', 'PENDING'] if rule.action_type == 'AUTO_DELETE' else ['APPROVED']
        for cand in deps.store.candidates_for_rule(rule.id, statuses):
            if not is_due(cand, rule, now):
                summary['skipped'] += 1
                continue
            if deps.dry_run:
                await execute_candidate(cand, rule, deps)
                summary['dry_run'] += 1
                continue
            if await execute_candidate(cand, rule, deps):
                summary['executed'] += 1
            else:
                summary['failed'] += 1
    if deps.debug_logging:
        logging.info(f'Action executor: {summary}')
    return summary


async def execute_approved(candidate_ids: List[str], deps: ActionsDeps, *, delete_files: bool = True) -> Dict[str, List[str]]:
    """Delete APPROVED candidates on demand, ignoring the rule's action and delay.

    Unknown ids are reported as ``missing`` and candidates that are not
    APPROVED as ``unchanged``.
    """
    action = MANUAL_DELETE if delete_files else MANUAL_DELETE_KEEP_FILES
    report: Dict[str, List[str]] = {'executed': [], 'failed': [], 'unchanged': [], 'missing': [], 'dry_run': []}
    rules: Dict[str, Rule] = {}
    for cid in dict.fromkeys(candidate_ids):
        cand = deps.store.get_candidate(cid)
        if cand is None:
            report['missing'].append(cid)
            continue
        if cand.review_status != 'APPROVED':
            report['unchanged'].append(cid)
            continue
        if cand.rule_id not in rules:
            rules[cand.rule_id] = deps.store.get_rule(cand.rule_id)
        rule = rules[cand.rule_id]
        if rule is None:
            report['unchanged'].append(cid)
            continue
        if deps.dry_run:
            await execute_candidate(cand, rule, deps, action)
            report['dry_run'].append(cid)
        elif await execute_candidate(cand, rule, deps, action):
            report['executed'].append(cid)
        else:
            report['failed'].append(cid)
    return report
