#!/usr/bin/env python3
"""Inspect and repair the ephemeral state kept in the KVS.

Usage:
    # Connectivity and presence
    REDIS_URL=redis://localhost:6379/0 python scripts/kvs_admin.py health

    # Lift rate limits for a user id or client IP (optionally one policy/action)
    python scripts/kvs_admin.py reset-rate-limit --principal 203.0.113.7
    python scripts/kvs_admin.py reset-rate-limit --principal <user-id> --action social

    # Drop cached responses
    python scripts/kvs_admin.py clear-cache --tag prompts
    python scripts/kvs_admin.py clear-cache --pattern 'route:/api/users/*'

    # Sign a user out everywhere
    python scripts/kvs_admin.py revoke-sessions --user <user-id>

Environment Variables:
    REDIS_URL: KVS connection string (defaults to redis://localhost:6379/0)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def health() -> dict:
    from promptvault.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        healthy = await runtime.cache.health_check()
        active = await runtime.presence.active_count() if healthy else 0
    finally:
        await runtime.close()
    print(f"KVS: {'ok' if healthy else 'unavailable'}")
    print(f"Active users: {active}")
    return {"healthy": healthy, "active_users": active}


async def reset_rate_limit(principal: str, action: str | None, dry_run: bool) -> int:
    from promptvault.service.runtime import get_runtime

    if dry_run:
        scope = f" for action {action}" if action else ""
        print(f"[DRY RUN] Would reset rate-limit windows of {principal}{scope}")
        return 0
    runtime = get_runtime()
    try:
        deleted = await runtime.rate_limiter.reset(principal, action)
    finally:
        await runtime.close()
    print(f"Deleted {deleted} rate-limit counter(s) for {principal}")
    return deleted


async def clear_cache(pattern: str | None, tag: str | None, dry_run: bool) -> int:
    from promptvault.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if dry_run:
            keys = await runtime.kvs.keys(pattern) if pattern else []
            print(f"[DRY RUN] {len(keys)} key(s) match pattern {pattern!r}; tag {tag!r} untouched")
            return 0
        deleted = 0
        if tag:
            deleted += await runtime.cache.delete_by_tag(tag)
        if pattern:
            deleted += await runtime.cache.delete_by_pattern(pattern)
    finally:
        await runtime.close()
    print(f"Deleted {deleted} cache entr{'y' if deleted == 1 else 'ies'}")
    return deleted


async def revoke_sessions(user_id: str, dry_run: bool) -> int:
    from promptvault.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        sessions = await runtime.sessions.list_for_subject(user_id)
        if dry_run:
            print(f"[DRY RUN] Would delete {len(sessions)} session(s) of {user_id}")
            return 0
        deleted = await runtime.sessions.delete_all_for_subject(user_id)
    finally:
        await runtime.close()
    print(f"Deleted {deleted} session(s) of {user_id}")
    return deleted


def main():
    parser = argparse.ArgumentParser(
        description="Inspect and repair PromptVault ephemeral state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--redis-url",
        default=os.environ.get("REDIS_URL"),
        help="KVS connection string (or set REDIS_URL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("health", help="Ping the KVS and count active users")

    reset = commands.add_parser("reset-rate-limit", help="Delete rate-limit windows")
    reset.add_argument("--principal", required=True, help="User id or client IP")
    reset.add_argument("--action", help="Policy prefix or action name")

    clear = commands.add_parser("clear-cache", help="Delete cached responses")
    clear.add_argument("--pattern", help="Glob over cache keys")
    clear.add_argument("--tag", help="Invalidation tag, e.g. prompts or user:<id>")

    revoke = commands.add_parser("revoke-sessions", help="Sign a user out everywhere")
    revoke.add_argument("--user", required=True, help="User id")

    args = parser.parse_args()

    if args.command == "clear-cache" and not (args.pattern or args.tag):
        print("Error: clear-cache needs --pattern or --tag")
        sys.exit(1)

    if args.redis_url:
        os.environ["REDIS_URL"] = args.redis_url

    # Auth tokens are never minted here; any secret satisfies settings validation
    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    try:
        if args.command == "health":
            result = asyncio.run(health())
            sys.exit(0 if result["healthy"] else 2)
        elif args.command == "reset-rate-limit":
            asyncio.run(reset_rate_limit(args.principal, args.action, args.dry_run))
        elif args.command == "clear-cache":
            asyncio.run(clear_cache(args.pattern, args.tag, args.dry_run))
        elif args.command == "revoke-sessions":
            asyncio.run(revoke_sessions(args.user, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
