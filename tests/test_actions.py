import importlib

import pytest

from core.criteria import Condition, Group
from core.models import Rule, UnifiedMediaItem
from integrations.services import ServiceError
from storage.maintenance import MaintenanceStore


pytestmark = pytest.mark.asyncio

DAY = 86400.0
NOW = 1_800_000_000.0


class DummySession:
    pass


class DummyBus:
    def __init__(self):
        self.events = []

    def emit(self, event, **fields):
        self.events.append({'event': event, **fields})


class FakeManager:
    def __init__(self, fail_with=None):
        self.calls = []
        self.fail_with = fail_with

    async def _record(self, *call):
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with

    async def delete_item(self, session, library_id, delete_files=True):
        await self._record('delete_item', library_id, delete_files)

    async def set_monitored(self, session, library_id, monitored):
        await self._record('set_monitored', library_id, monitored)

    async def delete_files(self, session, library_id):
        await self._record('delete_files', library_id)
        return 1


def _setup(tmp_path, action_type, delay_days, status='APPROVED', age_days=5):
    store = MaintenanceStore(str(tmp_path / 'm.db'))
    rule = Rule(
        id='r1', name='Cleanup', media_type='MOVIE', action_type=action_type, action_delay_days=delay_days,
        criteria=Group(id='root', conditions=[Condition(id='c', field='playCount', operator='equals', value=0)]),
    )
    store.save_rule(rule)
    scan = store.create_scan('r1', NOW - age_days * DAY)
    item = UnifiedMediaItem(media_type='MOVIE', title='Heat', year=1995, ids={'instance': 'Radarr', 'library_id': 42})
    store.upsert_candidate(scan.id, 'r1', item, now=NOW - age_days * DAY)
    cand = store.list_candidates(rule_id='r1')[0][0]
    if status == 'APPROVED':
        store.transition_candidate(cand.id, 'PENDING', 'APPROVED', reviewer='ana', now=NOW - DAY)
    return store, cand


def _deps(store, manager, dry_run=False):
    actions = importlib.import_module('core.actions')
    return actions.ActionsDeps(
        store=store,
        library_managers={'Radarr': manager},
        session=DummySession(),
        event_bus=DummyBus(),
        dry_run=dry_run,
        now=lambda: NOW,
    )


async def test_delay_not_elapsed_takes_no_action(tmp_path):
    actions = importlib.import_module('core.actions')
    store, cand = _setup(tmp_path, 'UNMONITOR_AND_DELETE', delay_days=7)
    mgr = FakeManager()
    summary = await actions.run_action_pass(_deps(store, mgr))
    assert mgr.calls == []
    assert summary['skipped'] == 1 and summary['executed'] == 0
    assert store.get_candidate(cand.id).review_status == 'APPROVED'


async def test_delay_elapsed_unmonitors_then_deletes_files(tmp_path):
    actions = importlib.import_module('core.actions')
    store, cand = _setup(tmp_path, 'UNMONITOR_AND_DELETE', delay_days=3)
    mgr = FakeManager()
    deps = _deps(store, mgr)
    summary = await actions.run_action_pass(deps)
    assert mgr.calls == [('set_monitored', 42, False), ('delete_files', 42)]
    assert summary['executed'] == 1
    done = store.get_candidate(cand.id)
    assert done.review_status == 'DELETED' and done.deleted_at == NOW
    log = store.list_deletion_log()
    assert log[0]['candidate_id'] == cand.id and log[0]['action_type'] == 'UNMONITOR_AND_DELETE'
    assert any(e['event'] == 'action_executed' for e in deps.event_bus.events)


async def test_unmonitor_and_keep_only_unmonitors(tmp_path):
    actions = importlib.import_module('core.actions')
    store, cand = _setup(tmp_path, 'UNMONITOR_AND_KEEP', delay_days=None)
    mgr = FakeManager()
    await actions.run_action_pass(_deps(store, mgr))
    assert mgr.calls == [('set_monitored', 42, False)]
    assert store.get_candidate(cand.id).review_status == 'DELETED'


async def test_auto_delete_auto_approves_pending(tmp_path):
    actions = importlib.import_module('core.actions')
    store, cand = _setup(tmp_path, 'AUTO_DELETE', delay_days=0, status='PENDING')
    mgr = FakeManager()
    await actions.run_action_pass(_deps(store, mgr))
    assert mgr.calls == [('delete_item', 42, True)]
    done = store.get_candidate(cand.id)
    assert done.review_status == 'DELETED' and done.reviewed_by == 'auto'


async def test_pending_is_ignored_for_non_auto_actions(tmp_path):
    actions = importlib.import_module('core.actions')
    store, cand = _setup(tmp_path, 'UNMONITOR_AND_DELETE', delay_days=0, status='PENDING')
    mgr = FakeManager()
    await actions.run_action_pass(_deps(store, mgr))
    assert mgr.calls == []
    assert store.get_candidate(cand.id).review_status == 'PENDING'


@pytest.mark.parametrize('action_type', ['FLAG_FOR_REVIEW', 'DO_NOTHING'])
async def test_non_executable_actions_never_act(tmp_path, action_type):
    actions = importlib.import_module('core.actions')
    store, cand = _setup(tmp_path, action_type, delay_days=0)
    mgr = FakeManager()
    summary = await actions.run_action_pass(_deps(store, mgr))
    assert mgr.calls == [] and summary['executed'] == 0
    assert store.get_candidate(cand.id).review_status == 'APPROVED'


async def test_failure_records_error_and_stays_approved(tmp_path):
    actions = importlib.import_module('core.actions')
    store, cand = _setup(tmp_path, 'AUTO_DELETE', delay_days=0)
    mgr = FakeManager(fail_with=ServiceError(500, 'DELETE movie/42 failed: Internal Server Error'))
    deps = _deps(store, mgr)
    summary = await actions.run_action_pass(deps)
    assert summary['failed'] == 1
    after = store.get_candidate(cand.id)
    assert after.review_status == 'APPROVED'
    assert 'Internal Server Error' in after.deletion_error
    assert store.list_deletion_log() == []
    assert deps.event_bus.events[-1]['event'] == 'action_failed'

    # Next pass retries and clears the error
    mgr.fail_with = None
    await actions.run_action_pass(deps)
    after = store.get_candidate(cand.id)
    assert after.review_status == 'DELETED' and after.deletion_error is None


async def test_missing_manager_is_a_failure(tmp_path):
    actions = importlib.import_module('core.actions')
    store, cand = _setup(tmp_path, 'AUTO_DELETE', delay_days=0)
    deps = _deps(store, FakeManager())
    deps.library_managers = {}
    await actions.run_action_pass(deps)
    assert 'not configured' in store.get_candidate(cand.id).deletion_error


async def test_dry_run_changes_nothing(tmp_path):
    actions = importlib.import_module('core.actions')
    store, cand = _setup(tmp_path, 'AUTO_DELETE', delay_days=0, status='PENDING')
    mgr = FakeManager()
    deps = _deps(store, mgr, dry_run=True)
    summary = await actions.run_action_pass(deps)
    assert mgr.calls == [] and summary['dry_run'] == 1
    assert store.get_candidate(cand.id).review_status == 'PENDING'
    ev = deps.event_bus.events[0]
    assert ev['event'] == 'dry_action' and ev['commands'] == ['delete_item']


async def test_is_due_boundary():
    actions = importlib.import_module('core.actions')
    models = importlib.import_module('core.models')
    rule = models.Rule(id='r', name='n', media_type='MOVIE', criteria=None, action_delay_days=7)
    cand = models.Candidate(id='c', scan_id='s', rule_id='r', media_type='MOVIE', identity_key='k', title='t',
                            flagged_at=NOW - 7 * DAY)
    assert actions.is_due(cand, rule, NOW) is True
    assert actions.is_due(cand, rule, NOW - 1) is False


async def test_failed_auto_delete_leaves_pending_candidate_reviewable(tmp_path):
    actions = importlib.import_module('core.actions')
    review = importlib.import_module('core.review')
    store, cand = _setup(tmp_path, 'AUTO_DELETE', delay_days=0, status='PENDING')
    mgr = FakeManager(fail_with=ServiceError(503, 'Service Unavailable'))
    summary = await actions.run_action_pass(_deps(store, mgr))
    assert summary['failed'] == 1
    after = store.get_candidate(cand.id)
    assert after.review_status == 'PENDING' and after.reviewed_by is None
    assert 'Service Unavailable' in after.deletion_error
    assert review.reject(store, cand.id, 'bob') is True


async def test_candidate_rejected_after_listing_is_not_acted_on(tmp_path):
    actions = importlib.import_module('core.actions')
    store, cand = _setup(tmp_path, 'AUTO_DELETE', delay_days=0, status='PENDING')
    store.transition_candidate(cand.id, 'PENDING', 'REJECTED', reviewer='bob', now=NOW)
    mgr = FakeManager()
    rule = store.get_rule('r1')
    assert await actions.execute_candidate(cand, rule, _deps(store, mgr)) is False
    assert mgr.calls == []
    assert store.get_candidate(cand.id).review_status == 'REJECTED'


async def test_execute_approved_on_demand_for_review_only_rule(tmp_path):
    actions = importlib.import_module('core.actions')
    store, cand = _setup(tmp_path, 'FLAG_FOR_REVIEW', delay_days=30)
    scan = store.create_scan('r1', NOW)
    store.upsert_candidate(scan.id, 'r1', UnifiedMediaItem(
        media_type='MOVIE', title='Ronin', year=1998, ids={'instance': 'Radarr', 'library_id': 7}), now=NOW)
    pending = next(c for c in store.list_candidates(rule_id='r1')[0] if c.title == 'Ronin')
    mgr = FakeManager()
    deps = _deps(store, mgr)
    report = await actions.execute_approved([cand.id, pending.id, 'ghost', cand.id], deps, delete_files=False)
    assert report['executed'] == [cand.id]
    assert report['unchanged'] == [pending.id]
    assert report['missing'] == ['ghost']
    assert mgr.calls == [('delete_item', 42, False)]
    assert store.get_candidate(cand.id).review_status == 'DELETED'
    assert store.list_deletion_log()[0]['action_type'] == 'MANUAL_DELETE_KEEP_FILES'


async def test_execute_approved_dry_run_only_reports(tmp_path):
    actions = importlib.import_module('core.actions')
    store, cand = _setup(tmp_path, 'FLAG_FOR_REVIEW', delay_days=None)
    mgr = FakeManager()
    deps = _deps(store, mgr, dry_run=True)
    report = await actions.execute_approved([cand.id], deps)
    assert report['dry_run'] == [cand.id] and mgr.calls == []
    assert deps.event_bus.events[0]['action'] == 'MANUAL_DELETE'
    assert store.get_candidate(cand.id).review_status == 'APPROVED'
