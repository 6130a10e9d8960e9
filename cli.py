import argparse
import asyncio
import json
import os
import sys
from typing import Any

from core import review
from core.criteria import CriteriaParseError, complexity, criteria_to_dict, parse_criteria
from core.legacy import is_legacy_criteria, migrate_legacy_criteria
from core.models import UnifiedMediaItem
from core.rulebook import (
    RuleNotFound,
    RuleValidationError,
    create_rule,
    delete_rule,
    list_rules,
    set_rule_enabled,
    update_rule,
)
from core.rules import evaluate
from core.scheduler import ScanScheduler
from core.validation import validate_criteria
from storage.maintenance import MaintenanceStore


def _env(key: str, default: Any) -> Any:
    return os.environ.get(key, default)


def _db_path() -> str:
    return _env('MAINTENANCE_DB_PATH', '/app/data/maintenance.sqlite3')


def _store() -> MaintenanceStore:
    return MaintenanceStore(_db_path())


def _read_json(path: str) -> Any:
    with open(path, 'r') as f:
        return json.load(f)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _load_tree(data: Any):
    return migrate_legacy_criteria(data) if is_legacy_criteria(data) else parse_criteria(data)


def cmd_rules(args):
    _print([r.to_dict() for r in list_rules(_store())])


def cmd_rule_add(args):
    try:
        rule = create_rule(_store(), _read_json(args.rule_json))
    except RuleValidationError as e:
        _print({'errors': e.errors})
        return 1
    _print(rule.to_dict())
    return 0


def cmd_rule_update(args):
    try:
        rule = update_rule(_store(), args.rule_id, _read_json(args.rule_json))
    except RuleNotFound:
        _print({'error': f'rule {args.rule_id} not found'})
        return 1
    except RuleValidationError as e:
        _print({'errors': e.errors})
        return 1
    _print(rule.to_dict())
    return 0


def cmd_rule_delete(args):
    _print({'deleted': delete_rule(_store(), args.rule_id)})


def cmd_enable(args, enabled=True):
    try:
        rule = set_rule_enabled(_store(), args.rule_id, enabled)
    except RuleNotFound:
        _print({'error': f'rule {args.rule_id} not found'})
        return 1
    _print(rule.to_dict())
    return 0


def cmd_validate(args):
    try:
        tree = _load_tree(_read_json(args.criteria_json))
    except CriteriaParseError as e:
        _print({'valid': False, 'errors': [str(e)]})
        return 1
    result = validate_criteria(tree, args.media_type)
    _print({'valid': result.valid, 'errors': result.messages(), 'complexity': complexity(tree)})
    return 0 if result.valid else 1


def cmd_migrate(args):
    _print(criteria_to_dict(migrate_legacy_criteria(_read_json(args.legacy_json))))


def cmd_simulate(args):
    item = UnifiedMediaItem.from_dict(_read_json(args.item_json))
    try:
        tree = _load_tree(_read_json(args.criteria))
    except CriteriaParseError as e:
        _print({'matched': False, 'errors': [str(e)]})
        return 1
    result = validate_criteria(tree, item.media_type)
    if not result.valid:
        _print({'matched': False, 'errors': result.messages()})
        return 1
    _print({'matched': evaluate(tree, item), 'errors': []})
    return 0


def cmd_scans(args):
    _print([s.to_dict() for s in _store().list_scans(args.rule, limit=args.limit)])


def cmd_scan(args):
    # Runs one scan now, with the service's wiring and lease
    import maintainer
    import aiohttp

    async def _run():
        store = _store()
        integ = maintainer.build_integrations(maintainer._AC, maintainer.REQUESTS)
        async with aiohttp.ClientSession() as session:
            return await maintainer.run_rule_scan(session, store, integ, args.rule)

    scan = asyncio.run(_run())
    _print(scan.to_dict() if scan else {'skipped': True})


def cmd_candidates(args):
    _print(
        review.list_candidates(
            _store(),
            review_status=args.status,
            media_type=args.media_type,
            rule_id=args.rule,
            page=args.page,
            page_size=args.page_size,
        )
    )


def cmd_approve(args):
    _print(review.bulk_approve(_store(), args.ids, reviewer=args.reviewer))


def cmd_reject(args):
    _print(review.bulk_reject(_store(), args.ids, reviewer=args.reviewer))


def cmd_execute(args):
    # Deletes APPROVED candidates now, under the action executor's lease
    import maintainer
    import aiohttp

    async def _run():
        integ = maintainer.build_integrations(maintainer._AC, maintainer.REQUESTS)
        async with aiohttp.ClientSession() as session:
            return await maintainer.run_manual_execution(
                session, _store(), integ, args.ids, delete_files=not args.keep_files
            )

    report = asyncio.run(_run())
    if report is None:
        _print({'error': 'action executor is busy; try again shortly'})
        return 1
    _print(report)
    return 1 if report['failed'] else 0


def cmd_history(args):
    _print(_store().list_deletion_log(limit=args.limit))


def cmd_reset(args):
    _print({'rule': args.rule, 'removed': review.reset_candidates(_store(), args.rule)})


async def _schedules(store):
    sched = ScanScheduler(fire_scan=lambda rule_id: asyncio.sleep(0), timezone=_env('TZ', 'UTC'))
    sched.sync_all(store.list_rules())
    return sched.list_active()


def cmd_schedules(args):
    _print(asyncio.run(_schedules(_store())))


def cmd_status(args):
    store = _store()
    rules = store.list_rules()
    last = store.list_scans(limit=1)
    _print(
        {
            'db_path': _db_path(),
            'rules': len(rules),
            'enabled_rules': sum(1 for r in rules if r.enabled),
            'candidates': store.candidate_counts(),
            'last_scan': last[0].to_dict() if last else None,
            'recent_actions': store.list_deletion_log(limit=5),
        }
    )


def main():
    ap = argparse.ArgumentParser(description="Media Library Maintainer CLI")
    sub = ap.add_subparsers(dest='cmd')

    p = sub.add_parser('rules', help='List maintenance rules')
    p.set_defaults(func=cmd_rules)

    p = sub.add_parser('rule-add', help='Create a rule from a JSON file')
    p.add_argument('rule_json')
    p.set_defaults(func=cmd_rule_add)

    p = sub.add_parser('rule-update', help='Update a rule from a JSON file (only the given keys change)')
    p.add_argument('rule_id')
    p.add_argument('rule_json')
    p.set_defaults(func=cmd_rule_update)

    p = sub.add_parser('rule-delete', help='Delete a rule and its scans and candidates')
    p.add_argument('rule_id')
    p.set_defaults(func=cmd_rule_delete)

    p = sub.add_parser('enable', help='Enable a rule')
    p.add_argument('rule_id')
    p.set_defaults(func=lambda a: cmd_enable(a, True))

    p = sub.add_parser('disable', help='Disable a rule')
    p.add_argument('rule_id')
    p.set_defaults(func=lambda a: cmd_enable(a, False))

    p = sub.add_parser('validate', help='Validate a criteria JSON file')
    p.add_argument('criteria_json')
    p.add_argument('--media-type', default='MOVIE', choices=['MOVIE', 'TV_SERIES'])
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser('migrate', help='Convert legacy flat criteria to a tree')
    p.add_argument('legacy_json')
    p.set_defaults(func=cmd_migrate)

    p = sub.add_parser('simulate', help='Evaluate criteria against an item JSON')
    p.add_argument('item_json', help='Path to item JSON file')
    p.add_argument('--criteria', required=True, help='Path to criteria JSON file')
    p.set_defaults(func=cmd_simulate)

    p = sub.add_parser('scans', help='List recent scans')
    p.add_argument('--rule')
    p.add_argument('--limit', type=int, default=20)
    p.set_defaults(func=cmd_scans)

    p = sub.add_parser('scan', help='Run one rule scan now')
    p.add_argument('--rule', required=True)
    p.set_defaults(func=cmd_scan)

    p = sub.add_parser('candidates', help='List flagged candidates')
    p.add_argument('--status', choices=['PENDING', 'APPROVED', 'REJECTED', 'DELETED'])
    p.add_argument('--media-type', choices=['MOVIE', 'TV_SERIES'])
    p.add_argument('--rule')
    p.add_argument('--page', type=int, default=1)
    p.add_argument('--page-size', type=int, default=review.DEFAULT_PAGE_SIZE)
    p.set_defaults(func=cmd_candidates)

    for name, fn in (('approve', cmd_approve), ('reject', cmd_reject)):
        p = sub.add_parser(name, help=f'{name.capitalize()} pending candidates')
        p.add_argument('ids', nargs='+')
        p.add_argument('--reviewer', default=_env('USER', 'cli'))
        p.set_defaults(func=fn)

    p = sub.add_parser('execute', help='Delete approved candidates now')
    p.add_argument('ids', nargs='+')
    p.add_argument('--keep-files', action='store_true', help='Remove from the library manager but keep files on disk')
    p.set_defaults(func=cmd_execute)

    p = sub.add_parser('history', help='Show executed actions, newest first')
    p.add_argument('--limit', type=int, default=50)
    p.set_defaults(func=cmd_history)

    p = sub.add_parser('reset', help="Clear a rule's non-deleted candidates")
    p.add_argument('--rule', required=True)
    p.set_defaults(func=cmd_reset)

    p = sub.add_parser('schedules', help='Show scheduled rules and next run times')
    p.set_defaults(func=cmd_schedules)

    p = sub.add_parser('status', help='Show rule, candidate and action summary')
    p.set_defaults(func=cmd_status)

    args = ap.parse_args()
    if not hasattr(args, 'func'):
        ap.print_help()
        sys.exit(1)
    sys.exit(args.func(args) or 0)


if __name__ == '__main__':
    main()
