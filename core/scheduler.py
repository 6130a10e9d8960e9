from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.models import Rule

JOB_PREFIX = 'maintenance-rule-'
ACTION_JOB_ID = 'maintenance-action-executor'
SYNC_JOB_ID = 'maintenance-schedule-sync'


def job_id_for(rule_id: str) -> str:
    return f'{JOB_PREFIX}{rule_id}'


def cron_error(expr: Optional[str], tz: str = 'UTC') -> Optional[str]:
    """Return why ``expr`` is not a usable five-field crontab, or None."""
    if not expr or not str(expr).strip():
        return 'schedule is empty'
    try:
        CronTrigger.from_crontab(str(expr).strip(), timezone=tz)
    except ValueError as e:
        return f'invalid cron expression "{expr}": {e}'
    return None


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


class ScanScheduler:
    """Cron jobs for scheduled rules plus the action executor's interval job.

    ``fire_scan`` is awaited inside a background task; the job itself only
    starts that task so a long scan never holds up the scheduler.
    """

    def __init__(
        self,
        fire_scan: Callable[[str], Awaitable[Any]],
        scheduler: Optional[AsyncIOScheduler] = None,
        *,
        timezone: str = 'UTC',
        event_bus=None,
        debug_logging: bool = False,
    ) -> None:
        self.fire_scan = fire_scan
        self.timezone = timezone
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone)
        self.event_bus = event_bus
        self.debug_logging = debug_logging
        self._rules: Dict[str, Rule] = {}
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    def sync_rule(self, rule: Rule) -> bool:
        """Register or replace the rule's job; remove it when the rule is not schedulable."""
        if not rule.enabled or not rule.schedule or cron_error(rule.schedule, self.timezone):
            self.remove_rule(rule.id)
            return False
        trigger = CronTrigger.from_crontab(rule.schedule.strip(), timezone=self.timezone)
        # replace_existing is not honoured for jobs added before start()
        if self.scheduler.get_job(job_id_for(rule.id)) is not None:
            self.scheduler.remove_job(job_id_for(rule.id))
        self.scheduler.add_job(
            self._fire,
            trigger=trigger,
            args=[rule.id],
            id=job_id_for(rule.id),
            name=rule.name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )
        self._rules[rule.id] = rule
        if self.debug_logging:
            logging.info(f'Scheduler: rule {rule.name} scheduled "{rule.schedule}"')
        return True

    def remove_rule(self, rule_id: str) -> None:
        self._rules.pop(rule_id, None)
        if self.scheduler.get_job(job_id_for(rule_id)) is not None:
            self.scheduler.remove_job(job_id_for(rule_id))

    def sync_all(self, rules: List[Rule]) -> int:
        wanted = {r.id for r in rules}
        for rule_id in list(self._rules):
            if rule_id not in wanted:
                self.remove_rule(rule_id)
        return sum(1 for r in rules if self.sync_rule(r))

    def list_active(self) -> List[Dict[str, Any]]:
        now = datetime.now(timezone.utc)
        out: List[Dict[str, Any]] = []
        for job in self.scheduler.get_jobs():
            if not job.id.startswith(JOB_PREFIX):
                continue
            rule_id = job.id[len(JOB_PREFIX):]
            rule = self._rules.get(rule_id)
            # Jobs added before start() have no next_run_time yet
            nxt = getattr(job, 'next_run_time', None) or job.trigger.get_next_fire_time(None, now)
            out.append({
                'ruleId': rule_id,
                'ruleName': rule.name if rule else job.name,
                'enabled': bool(rule.enabled) if rule else True,
                'schedule': rule.schedule if rule else None,
                'next': _iso(nxt),
                'lastRun': rule.last_run_at if rule else None,
            })
        out.sort(key=lambda r: (r['next'] or '', r['ruleId']))
        return out

    def add_interval_job(self, func: Callable[[], Awaitable[Any]], minutes: float, job_id: str = ACTION_JOB_ID) -> None:
        if self.scheduler.get_job(job_id) is not None:
            self.scheduler.remove_job(job_id)
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(minutes=minutes, timezone=self.timezone),
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def is_running(self, rule_id: str) -> bool:
        return rule_id in self._in_flight

    async def _fire(self, rule_id: str) -> None:
        if rule_id in self._in_flight:
            if self.event_bus is not None:
                self.event_bus.emit('schedule_skipped', rule_id=rule_id, reason='scan already running')
            return
        self._in_flight.add(rule_id)
        task = asyncio.create_task(self._run(rule_id))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    async def _run(self, rule_id: str) -> None:
        try:
            await self.fire_scan(rule_id)
        finally:
            self._in_flight.discard(rule_id)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logging.error(f'Scheduler: unhandled error in scan task: {task.exception()!r}')

    def start(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
