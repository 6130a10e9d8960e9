from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from core.models import Rule, Scan, UnifiedMediaItem
from core.reconcile import ReconcileError, ReconcileResult
from core.rules import EvaluationError, evaluate


@dataclass
class ScanDeps:
    store: Any  # storage.maintenance.MaintenanceStore
    # (media_type, instances) -> ReconcileResult
    reconcile: Callable[[str, Optional[List[str]]], Awaitable[ReconcileResult]]
    event_bus: Any
    is_rule_enabled: Optional[Callable[[str], bool]] = None
    lease_lost: Callable[[], bool] = field(default=lambda: False)
    batch_size: int = 100
    debug_logging: bool = False
    now: Callable[[], float] = time.time


class ScanAborted(Exception):
    pass


def _check_still_allowed(rule: Rule, deps: ScanDeps) -> None:
    enabled = deps.is_rule_enabled or deps.store.is_rule_enabled
    if not enabled(rule.id):
        raise ScanAborted('rule disabled mid-run')
    if deps.lease_lost():
        raise ScanAborted('lease lost mid-run')


def _finish(scan: Scan, deps: ScanDeps, status: str, error: Optional[str] = None) -> Scan:
    scan.status = status
    scan.error = error
    scan.completed_at = deps.now()
    deps.store.save_scan(scan)
    return scan


async def run_scan(rule: Rule, deps: ScanDeps) -> Scan:
    """Evaluate one rule against the reconciled library and record its candidates.

    Candidates are upserted per ``(rule, identity_key)`` so repeated runs of the
    same rule never duplicate them, and candidates that were already reviewed
    keep their status.
    """
    scan = deps.store.create_scan(rule.id, deps.now())
    scan.status = 'RUNNING'
    deps.store.save_scan(scan)
    deps.event_bus.emit('scan_started', rule_id=rule.id, rule=rule.name, scan_id=scan.id)
    try:
        return await _scan_body(rule, deps, scan)
    except Exception as e:
        # Never leave the row RUNNING; the caller still sees the error
        _finish(scan, deps, 'FAILED', f'unexpected error: {e.__class__.__name__}: {e}')
        deps.event_bus.emit('scan_failed', rule_id=rule.id, scan_id=scan.id, reason=scan.error)
        raise


async def _scan_body(rule: Rule, deps: ScanDeps, scan: Scan) -> Scan:
    try:
        result = await deps.reconcile(rule.media_type, rule.instances or None)
    except ReconcileError as e:
        _finish(scan, deps, 'FAILED', str(e))
        deps.event_bus.emit('scan_failed', rule_id=rule.id, scan_id=scan.id, reason=str(e))
        return scan
    scan.warnings = list(result.warnings)

    batch_size = max(1, int(deps.batch_size or 1))
    items: List[UnifiedMediaItem] = result.items
    try:
        for start in range(0, len(items), batch_size):
            _check_still_allowed(rule, deps)
            for item in items[start:start + batch_size]:
                scan.items_scanned += 1
                if item.error:
                    scan.items_errored += 1
                    continue
                try:
                    matched = evaluate(rule.criteria, item)
                except EvaluationError as e:
                    scan.items_errored += 1
                    if deps.debug_logging:
                        logging.warning(f'Rule {rule.name}: evaluation error on {item.title}: {e}')
                    continue
                if not matched:
                    continue
                scan.items_flagged += 1
                outcome = deps.store.upsert_candidate(scan.id, rule.id, item, deps.now())
                if outcome == 'created':
                    deps.event_bus.emit(
                        'candidate_flagged', rule_id=rule.id, scan_id=scan.id, title=item.title, key=item.identity_key
                    )
            deps.store.save_scan(scan)
        # Catch a disable that landed during the final batch
        _check_still_allowed(rule, deps)
    except ScanAborted as e:
        _finish(scan, deps, 'FAILED', str(e))
        deps.event_bus.emit('scan_failed', rule_id=rule.id, scan_id=scan.id, reason=str(e))
        return scan

    _finish(scan, deps, 'COMPLETED')
    deps.store.mark_rule_run(rule.id, scan.completed_at)
    deps.event_bus.emit(
        'scan_completed',
        rule_id=rule.id,
        scan_id=scan.id,
        scanned=scan.items_scanned,
        flagged=scan.items_flagged,
        errored=scan.items_errored,
        warnings=len(scan.warnings),
    )
    return scan
