import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict, Optional, Tuple

import aiohttp

from core.config import CleanerConfig, ConfigAccessor, ServiceInstance
from core.config import load_yaml as _load_yaml
from core.config import sanitize_config as _sanitize_config
from core.errors import CleanerError
from core.preview import execute_enhanced_preview
from core.rules import evaluate_queue_item
from core.runner import execute_queue_cleaner
from core.utils import utcnow
from integrations.arr import ArrClient
from storage.strikes import StrikeStore


def _env(key: str, default: Any) -> Any:
    return os.environ.get(key, default)


def _strike_path() -> str:
    return _env('STRIKE_FILE_PATH', '/app/data/strikes.json')


def _load_config() -> Dict[str, Any]:
    return _sanitize_config(_load_yaml(_env('CONFIG_PATH', '/app/config.yaml')))


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_list(args):
    _print(StrikeStore(_strike_path()).snapshot())


def cmd_clear(args):
    store = StrikeStore(_strike_path())
    if args.key:
        if store.clear(args.key):
            print(f"Cleared {args.key}")
        else:
            print("Key not found")
    else:
        store.clear()
        print("Cleared all strikes")


def cmd_status(args):
    data = StrikeStore(_strike_path()).snapshot()
    per_instance: Dict[str, Dict[str, int]] = {}
    for key, entry in data.items():
        if not isinstance(entry, dict):
            continue
        instance_id = str(entry.get('instance_id') or key.partition(':')[0])
        stats = per_instance.setdefault(instance_id, {'entries': 0, 'active_strikes': 0, 'import_attempts': 0})
        stats['entries'] += 1
        if int(entry.get('strike_count') or 0) > 0:
            stats['active_strikes'] += 1
        stats['import_attempts'] += int(entry.get('import_attempts') or 0)
    _print({
        "strike_file": _strike_path(),
        "entries": sum(s['entries'] for s in per_instance.values()),
        "per_instance": per_instance,
    })


def cmd_simulate(args):
    with open(args.item_json, 'r') as f:
        item = json.load(f)
    accessor = ConfigAccessor(_load_config())
    config = CleanerConfig.from_dict(accessor.cleaner_settings(args.service), instance_id=args.service.lower())
    match = evaluate_queue_item(item, config, utcnow())
    if match is None:
        _print({"rule": None, "reason": None})
    else:
        _print({"rule": match.rule, "reason": match.reason})


def _resolve(service: str) -> Optional[Tuple[ServiceInstance, CleanerConfig]]:
    accessor = ConfigAccessor(_load_config())
    for inst in accessor.instances():
        if inst.service.lower() == service.lower():
            return inst, accessor.cleaner_config(inst)
    return None


async def _with_client(instance: ServiceInstance, fn):
    async with aiohttp.ClientSession() as session:
        return await fn(ArrClient(session, instance))


def cmd_preview(args):
    found = _resolve(args.service)
    if found is None:
        print(f"Service {args.service} is not configured")
        sys.exit(2)
    instance, config = found
    store = StrikeStore(_strike_path())
    result = asyncio.run(_with_client(
        instance, lambda client: execute_enhanced_preview(instance, config, client=client, store=store)
    ))
    _print(result.to_dict())


def cmd_run(args):
    found = _resolve(args.service)
    if found is None:
        print(f"Service {args.service} is not configured")
        sys.exit(2)
    instance, config = found
    if args.dry_run:
        config = config.with_overrides(dry_run_mode=True)
    store = StrikeStore(_strike_path())
    result = asyncio.run(_with_client(
        instance, lambda client: execute_queue_cleaner(instance, config, client=client, store=store)
    ))
    _print(result.to_dict())
    if result.status == 'error':
        sys.exit(1)


def main():
    ap = argparse.ArgumentParser(description="Queue Cleaner CLI")
    sub = ap.add_subparsers(dest='cmd')

    p_list = sub.add_parser('list', help='List strike records')
    p_list.set_defaults(func=cmd_list)

    p_clear = sub.add_parser('clear', help='Clear strikes (all or one key)')
    p_clear.add_argument('--key', help='Strike key to clear (e.g., sonarr:SABnzbd_nzo_abc123)')
    p_clear.set_defaults(func=cmd_clear)

    p_status = sub.add_parser('status', help='Show strike summary per instance')
    p_status.set_defaults(func=cmd_status)

    p_sim = sub.add_parser('simulate', help='Evaluate the cleaner rules for an item JSON')
    p_sim.add_argument('item_json', help='Path to item JSON file')
    p_sim.add_argument('--service', default='Sonarr')
    p_sim.set_defaults(func=cmd_simulate)

    p_prev = sub.add_parser('preview', help='Preview what a clean would do for a configured service')
    p_prev.add_argument('--service', default='Sonarr')
    p_prev.set_defaults(func=cmd_preview)

    p_run = sub.add_parser('run', help='Run one clean for a configured service')
    p_run.add_argument('--service', default='Sonarr')
    p_run.add_argument('--dry-run', action='store_true', help='Force dry-run mode')
    p_run.set_defaults(func=cmd_run)

    args = ap.parse_args()
    if not hasattr(args, 'func'):
        ap.print_help()
        sys.exit(1)
    try:
        args.func(args)
    except CleanerError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
