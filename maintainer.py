import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from core.actions import ActionsDeps, execute_approved, run_action_pass
from core.config import (
    ConfigAccessor,
    env_flag,
    get_env_var,
    load_yaml,
    sanitize_config,
    validate_config,
)
from core.events import EventBus, make_event_logger
from core.models import Scan
from core.reconcile import ReconcileSources, reconcile
from core.runner import ScanDeps, run_scan
from core.scheduler import SYNC_JOB_ID, ScanScheduler
from integrations.clients import get_torrent_states
from integrations.overseerr import RequestBroker
from integrations.plex import MediaServer
from integrations.servarr import LibraryManager, build_library_managers
from integrations.services import RequestManager, is_service_configured
from integrations.tautulli import WatchTracker
from storage.lease import LeaseBusy, LeaseLock
from storage.maintenance import MaintenanceStore

# Fetch debug flag from environment and set logging level
DEBUG_LOGGING = get_env_var('DEBUG_LOGGING', default='false', cast_to=env_flag)
logging_level = logging.DEBUG if DEBUG_LOGGING else logging.INFO

logging.basicConfig(
    format='%(asctime)s [%(levelname)s]: %(message)s',
    level=logging_level,
    handlers=[logging.StreamHandler()],
    force=True,
)

EVENT_LOG = make_event_logger('media_maintainer.events')

CONFIG_PATH = get_env_var('CONFIG_PATH', '/app/config.yaml')
CONFIG: Dict[str, Any] = sanitize_config(load_yaml(CONFIG_PATH), DEBUG_LOGGING)
validate_config(CONFIG, DEBUG_LOGGING)

_AC = ConfigAccessor(CONFIG)


# Prefer YAML general for app-level settings; fallback to env-loaded defaults
def _get_general(key: str, default: Any) -> Any:
    val = _AC.general(key, None)
    return default if val is None else val


DEBUG_LOGGING = bool(_get_general('debug_logging', DEBUG_LOGGING))
STRUCTURED_LOGS = bool(_get_general('structured_logs', get_env_var('STRUCTURED_LOGS', 'true', cast_to=env_flag)))
DRY_RUN = bool(_get_general('dry_run', get_env_var('DRY_RUN', 'false', cast_to=env_flag)))
DB_PATH = str(_get_general('db_path', get_env_var('MAINTENANCE_DB_PATH', '/app/data/maintenance.sqlite3')))
REQUEST_TIMEOUT = int(_get_general('request_timeout', get_env_var('REQUEST_TIMEOUT', 10, cast_to=int)))
RETRY_ATTEMPTS = int(_get_general('retry_attempts', get_env_var('RETRY_ATTEMPTS', 2, cast_to=int)))
RETRY_BACKOFF = float(_get_general('retry_backoff', get_env_var('RETRY_BACKOFF', 1.0, cast_to=float)))
SOURCE_TIMEOUT = float(_get_general('source_timeout', get_env_var('SOURCE_TIMEOUT', 60.0, cast_to=float)))
MAX_PARALLEL_SOURCES = int(_get_general('max_parallel_sources', get_env_var('MAX_PARALLEL_SOURCES', 4, cast_to=int)))
ACTION_INTERVAL_MINUTES = float(_get_general('action_interval_minutes', get_env_var('ACTION_INTERVAL_MINUTES', 15.0, cast_to=float)))
LEASE_SECONDS = int(_get_general('lease_seconds', get_env_var('LEASE_SECONDS', 30, cast_to=int)))
SCAN_BATCH_SIZE = int(_get_general('scan_batch_size', get_env_var('SCAN_BATCH_SIZE', 100, cast_to=int)))
TIMEZONE = str(_get_general('timezone', get_env_var('TZ', 'UTC')))
RULE_SYNC_MINUTES = float(_get_general('rule_sync_minutes', get_env_var('RULE_SYNC_MINUTES', 1.0, cast_to=float)))

logging.getLogger().setLevel(logging.DEBUG if DEBUG_LOGGING else logging.INFO)

EVENT_BUS = EventBus(structured_logs=STRUCTURED_LOGS, debug_logging=DEBUG_LOGGING, logger=EVENT_LOG)

REQUESTS = RequestManager(
    request_timeout=REQUEST_TIMEOUT,
    retry_attempts=RETRY_ATTEMPTS,
    retry_backoff=RETRY_BACKOFF,
    debug_logging=DEBUG_LOGGING,
    service_settings=_AC.throttle_settings(),
)


@dataclass
class Integrations:
    library_managers: Dict[str, LibraryManager] = field(default_factory=dict)
    watch: Optional[WatchTracker] = None
    server: Optional[MediaServer] = None
    requests: Optional[RequestBroker] = None


def build_integrations(accessor: ConfigAccessor, request_manager: RequestManager) -> Integrations:
    request = request_manager.throttled_request
    integ = Integrations(
        library_managers=build_library_managers(
            accessor.library_manager_configs(), request, debug_logging=DEBUG_LOGGING
        )
    )
    tautulli = accessor.service_endpoint('Tautulli')
    if is_service_configured(tautulli):
        integ.watch = WatchTracker(tautulli['api_url'], tautulli['api_key'], request, debug_logging=DEBUG_LOGGING)
    plex = accessor.plex_endpoint()
    if plex['base_url'] and plex['token']:
        integ.server = MediaServer(plex['base_url'], plex['token'], request, debug_logging=DEBUG_LOGGING)
    overseerr = accessor.service_endpoint('Overseerr')
    if is_service_configured(overseerr):
        integ.requests = RequestBroker(overseerr['api_url'], overseerr['api_key'], request, debug_logging=DEBUG_LOGGING)
    return integ


def build_sources(session: aiohttp.ClientSession, integ: Integrations, media_type: str, config: Dict[str, Any] = None) -> ReconcileSources:
    config = CONFIG if config is None else config
    managers = {n: m for n, m in integ.library_managers.items() if m.media_type == media_type}

    async def downloads(instances: List[str]) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        for name in instances:
            if name in managers:
                records.extend(await managers[name].list_queue(session))
        states = await get_torrent_states(session, [r.get('download_id') for r in records], config, DEBUG_LOGGING)
        if states is None:
            # Queue membership is still known; seeding and ratio stay unknown
            logging.warning('Download client unreachable; seeding state unknown for this scan')
            states = {}
        for rec in records:
            st = states.get(str(rec.get('download_id') or '').lower())
            if st:
                rec['seeding'] = st['seeding']
                rec['ratio'] = st['ratio']
        return records

    return ReconcileSources(
        library={n: (lambda m=m: m.list_items(session)) for n, m in managers.items()},
        downloads=downloads,
        watch=(lambda mt: integ.watch.list_history(session, mt)) if integ.watch else None,
        server=(lambda mt: integ.server.list_items(session, mt)) if integ.server else None,
        requests=(lambda mt: integ.requests.list_requests(session, mt)) if integ.requests else None,
        timeout=SOURCE_TIMEOUT,
        max_parallel=MAX_PARALLEL_SOURCES,
        debug_logging=DEBUG_LOGGING,
    )


def _lease(name: str) -> LeaseLock:
    return LeaseLock(DB_PATH, name, lease_seconds=LEASE_SECONDS, renew_interval=max(1.0, LEASE_SECONDS / 3.0))


async def run_rule_scan(session: aiohttp.ClientSession, store: MaintenanceStore, integ: Integrations, rule_id: str) -> Optional[Scan]:
    rule = store.get_rule(rule_id)
    if rule is None or not rule.enabled:
        EVENT_BUS.emit('schedule_skipped', rule_id=rule_id, reason='rule missing or disabled')
        return None
    lock = _lease(f'scan:{rule_id}')
    try:
        async with lock.held():
            sources = build_sources(session, integ, rule.media_type)

            async def _reconcile(media_type: str, instances: Optional[List[str]]):
                return await reconcile(media_type, sources, instances=instances)

            deps = ScanDeps(
                store=store,
                reconcile=_reconcile,
                event_bus=EVENT_BUS,
                lease_lost=lambda: lock.lost,
                batch_size=SCAN_BATCH_SIZE,
                debug_logging=DEBUG_LOGGING,
            )
            return await run_scan(rule, deps)
    except LeaseBusy as e:
        EVENT_BUS.emit('schedule_skipped', rule_id=rule_id, reason=f'scan lease held by {e.owner}')
        return None


async def run_action_executor(session: aiohttp.ClientSession, store: MaintenanceStore, integ: Integrations) -> Optional[Dict[str, int]]:
    try:
        async with _lease('action-executor').held():
            deps = ActionsDeps(
                store=store,
                library_managers=integ.library_managers,
                session=session,
                event_bus=EVENT_BUS,
                dry_run=DRY_RUN,
                debug_logging=DEBUG_LOGGING,
            )
            return await run_action_pass(deps)
    except LeaseBusy as e:
        if DEBUG_LOGGING:
            logging.info(f'Action executor: lease held by {e.owner}; skipping pass')
        return None


async def run_manual_execution(
    session: aiohttp.ClientSession, store: MaintenanceStore, integ: Integrations, candidate_ids: List[str], delete_files: bool = True
) -> Optional[Dict[str, List[str]]]:
    # Shares the executor lease so an interval pass never races an operator
    try:
        async with _lease('action-executor').held():
            deps = ActionsDeps(
                store=store,
                library_managers=integ.library_managers,
                session=session,
                event_bus=EVENT_BUS,
                dry_run=DRY_RUN,
                debug_logging=DEBUG_LOGGING,
            )
            return await execute_approved(candidate_ids, deps, delete_files=delete_files)
    except LeaseBusy as e:
        logging.warning(f'Manual execution: action executor lease held by {e.owner}')
        return None


async def main():
    os.makedirs(os.path.dirname(DB_PATH) or '.', exist_ok=True)
    store = MaintenanceStore(DB_PATH)
    integ = build_integrations(_AC, REQUESTS)
    if not integ.library_managers:
        logging.warning('No library manager configured (RADARR_URL/SONARR_URL); scans will fail until one is set')
    async with aiohttp.ClientSession() as session:
        if DEBUG_LOGGING:
            logging.info('Running media-library-maintainer')

        async def _fire(rule_id: str):
            return await run_rule_scan(session, store, integ, rule_id)

        async def _actions():
            return await run_action_executor(session, store, integ)

        scheduler = ScanScheduler(_fire, timezone=TIMEZONE, event_bus=EVENT_BUS, debug_logging=DEBUG_LOGGING)

        # Rules edited through the CLI land in the database; pick them up here
        async def _resync():
            scheduler.sync_all(store.list_rules())

        scheduled = scheduler.sync_all(store.list_rules())
        scheduler.add_interval_job(_actions, ACTION_INTERVAL_MINUTES)
        scheduler.add_interval_job(_resync, RULE_SYNC_MINUTES, job_id=SYNC_JOB_ID)
        scheduler.start()
        logging.info(f'Scheduler started: {scheduled} scheduled rule(s); action pass every {ACTION_INTERVAL_MINUTES:g} min')
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.shutdown()


def cli_entry():
    asyncio.run(main())


if __name__ == '__main__':
    cli_entry()
