"""Command-line maintenance tool for the cache.

Loads environment variables (and ``.env``), builds a CacheManager from the
resulting settings and runs one maintenance command against it.
"""
from dotenv import load_dotenv
import argparse
import asyncio
import json
import sys
from typing import List, Optional

from pydantic import ValidationError

from kvstash.cache import CacheManager, CacheError
from kvstash.config import CacheSettings
from kvstash.utils.logger import configure_logging, log_warning, log_error


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kvstash", description="Inspect and maintain the kvstash cache.")
    parser.add_argument('--backend', type=str, choices=["memory", "persistent", "file"],
                        help='Override CACHE_BACKEND for this run.')
    parser.add_argument('--prefix', type=str, help='Override CACHE_PREFIX for this run.')

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("stats", help="Print backend statistics as JSON.")
    commands.add_parser("health", help="Probe the configured backends.")
    commands.add_parser("cleanup", help="Remove expired entries.")
    commands.add_parser("flush", help="Remove every entry under the prefix.")

    get_cmd = commands.add_parser("get", help="Print the value stored under KEY.")
    get_cmd.add_argument("key")

    set_cmd = commands.add_parser("set", help="Store VALUE (JSON, or a plain string) under KEY.")
    set_cmd.add_argument("key")
    set_cmd.add_argument("value")
    set_cmd.add_argument('--ttl', type=float, help='TTL in seconds (0 = never expires; default from settings).')

    delete_cmd = commands.add_parser("delete", help="Delete KEY.")
    delete_cmd.add_argument("key")

    return parser


def _parse_value(raw: str):
    """Interpret a command-line value as JSON when it parses, else as text."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def run_command(args: argparse.Namespace, settings: CacheSettings) -> int:
    """Run one command and return the process exit code."""
    manager = CacheManager.from_settings(settings)
    try:
        if not await manager.initialize():
            print("❌ No cache backend available", file=sys.stderr)
            return 2

        if manager.degraded:
            print(f"⚠️  Preferred backend '{settings.cache_backend}' unavailable, using fallback",
                  file=sys.stderr)

        if args.command == "stats":
            stats = manager.get_stats()
            count_entries = getattr(manager.active_backend, "count_entries", None)
            if count_entries is not None:
                stats["entries"] = await count_entries()
            _print_json(stats)
            return 0

        if args.command == "health":
            health = await manager.health_check()
            _print_json(health)
            return 0 if health["overall_health"] else 1

        if args.command == "cleanup":
            removed = await manager.cleanup_expired()
            print(f"🧹 Removed {removed} expired entries")
            return 0

        if args.command == "flush":
            if await manager.flush():
                print(f"✅ Cache flushed (prefix '{manager.key_prefix}')")
                return 0
            print("❌ Cache flush failed", file=sys.stderr)
            return 1

        if args.command == "get":
            marker = object()
            value = await manager.get(args.key, marker)
            if value is marker:
                print(f"Key '{args.key}' not found", file=sys.stderr)
                return 1
            _print_json(value)
            return 0

        if args.command == "set":
            if await manager.set(args.key, _parse_value(args.value), args.ttl):
                print(f"✅ Stored '{args.key}'")
                return 0
            print(f"❌ Could not store '{args.key}'", file=sys.stderr)
            return 1

        if args.command == "delete":
            return 0 if await manager.delete(args.key) else 1

        return 2

    except CacheError as e:
        log_error("Cache command failed", command=args.command, error=str(e))
        return 1
    finally:
        await manager.close()


def main(argv: Optional[List[str]] = None) -> int:
    # Load environment variables first, before settings are read
    load_dotenv()

    args = build_parser().parse_args(argv)

    overrides = {}
    if args.backend is not None:
        overrides["cache_backend"] = args.backend
    if args.prefix is not None:
        overrides["cache_prefix"] = args.prefix

    try:
        settings = CacheSettings(**overrides)
    except ValidationError as e:
        print("❌ Configuration issues found:", file=sys.stderr)
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"])
            print(f"  - {field}: {error['msg']}", file=sys.stderr)
        return 2

    configure_logging(settings.log_level, settings.log_format)
    settings.log_configuration()
    for issue in settings.validate_configuration():
        log_warning("Configuration warning", issue=issue)

    return asyncio.run(run_command(args, settings))


if __name__ == "__main__":
    sys.exit(main())
