#!/usr/bin/env python3
"""
webtestkit CLI
==============
Runs the auth setup phase and manages stored sessions from the terminal.

The config file is the resolved ``auth`` section (JSON) produced by the
project's config loader.  Credentials come from the environment; a ``.env``
file in the working directory is loaded first.

Run with: python -m webtestkit --config auth.json setup
"""

import argparse
import asyncio
import logging
import os
import sys
import time
from pathlib import Path

from dotenv import load_dotenv
from playwright.async_api import async_playwright

from .auth.auth_setup import AuthSetup
from .auth.credentials import format_missing_credentials, validate_credentials
from .auth.session_bootstrap import bootstrap_session, login_url_for
from .auth.session_store import StorageStateStore
from .errors import ConfigurationError, WebTestKitError
from .run_config import load_auth_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "webtestkit.auth.json"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_setup(args, auth_config) -> int:
    async def _run():
        async with async_playwright() as pw:
            browser = await pw.chromium.launch(headless=not args.headed)
            try:
                setup = AuthSetup(auth_config, browser)
                return await setup.run_all(args.roles or None, force=args.force)
            finally:
                await browser.close()

    start = time.time()
    results = asyncio.run(_run())

    print(f"\n{'=' * 60}")
    print("  AUTH SETUP")
    print(f"{'=' * 60}")
    for role, result in results.items():
        detail = str(result.storage_state_path or "")
        if result.error is not None:
            detail = result.error.args[0] if result.error.args else type(result.error).__name__
        print(f"  {role:<20} {result.status:<8} {detail}")
    print(f"{'=' * 60}")
    print(f"  Done in {time.time() - start:.1f}s\n")

    return 0 if all(r.success for r in results.values()) else 1


def cmd_status(args, auth_config) -> int:
    store = StorageStateStore(auth_config.storage_state)
    stored = {meta.role: meta for meta in store.list_states()}

    print(f"\n  Storage directory: {store.directory}")
    print(f"  Max age:           {auth_config.storage_state.max_age_minutes} min\n")
    for role in sorted(set(auth_config.role_names) | set(stored)):
        meta = stored.get(role)
        if meta is None:
            print(f"  {role:<20} missing")
            continue
        state = "valid" if meta.is_valid else "stale"
        print(f"  {role:<20} {state:<8} {meta.age_seconds / 60:6.1f} min  {meta.path}")
    print()
    return 0


def cmd_clear(args, auth_config) -> int:
    store = StorageStateStore(auth_config.storage_state)
    deleted = store.clear(args.role)
    print(f"  Deleted {deleted} stored session(s)")
    return 0


def cmd_cleanup(args, auth_config) -> int:
    store = StorageStateStore(auth_config.storage_state)
    deleted = store.cleanup_expired()
    print(f"  Deleted {deleted} session(s) older than 24h")
    return 0


def cmd_bootstrap(args, auth_config) -> int:
    auth_config.role(args.role)
    url = args.url or login_url_for(auth_config)
    store = StorageStateStore(auth_config.storage_state)
    path = asyncio.run(bootstrap_session(
        role=args.role,
        login_url=url,
        store=store,
        timeout_minutes=args.timeout_minutes,
    ))
    return 0 if path else 1


def cmd_check_credentials(args, auth_config) -> int:
    roles = args.roles or auth_config.role_names
    missing = validate_credentials(roles, auth_config, os.environ)
    if not missing:
        print(f"  Credentials present for: {', '.join(roles)}")
        return 0
    print(format_missing_credentials(missing))
    return 1


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m webtestkit",
        description="Auth setup and session storage for browser test suites",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m webtestkit setup                        # every configured role
  python -m webtestkit setup admin hr --force       # re-login even if fresh
  python -m webtestkit status
  python -m webtestkit bootstrap admin              # manual login (push MFA, CAPTCHA)
        """
    )
    parser.add_argument(
        '--config', type=str,
        default=os.environ.get("WEBTESTKIT_CONFIG", DEFAULT_CONFIG_PATH),
        help=f'Resolved auth config (JSON). Default: $WEBTESTKIT_CONFIG or {DEFAULT_CONFIG_PATH}',
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('setup', help='Log roles in and save their sessions')
    p.add_argument('roles', nargs='*', help='Roles to set up (default: all)')
    p.add_argument('--force', action='store_true', help='Ignore fresh saved sessions')
    p.add_argument('--headed', action='store_true', help='Show the browser')
    p.set_defaults(func=cmd_setup)

    p = sub.add_parser('status', help='Show stored sessions')
    p.set_defaults(func=cmd_status)

    p = sub.add_parser('clear', help='Delete stored sessions')
    p.add_argument('role', nargs='?', help='Role to clear (default: all)')
    p.set_defaults(func=cmd_clear)

    p = sub.add_parser('cleanup', help='Delete sessions older than 24h')
    p.set_defaults(func=cmd_cleanup)

    p = sub.add_parser('bootstrap', help='Headed browser for a manual login')
    p.add_argument('role', help='Role the session is saved for')
    p.add_argument('--url', type=str, help='Page to open (default: configured login URL)')
    p.add_argument('--timeout-minutes', type=int, default=10, help='Max wait (default: 10)')
    p.set_defaults(func=cmd_bootstrap)

    p = sub.add_parser('check-credentials', help='Report missing credential env vars')
    p.add_argument('roles', nargs='*', help='Roles to check (default: all)')
    p.set_defaults(func=cmd_check_credentials)

    return parser


def main(argv=None) -> int:
    load_dotenv(Path.cwd() / '.env')

    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%H:%M:%S'
    )

    try:
        auth_config = load_auth_config(args.config)
        return args.func(args, auth_config)
    except ConfigurationError as exc:
        print(f"\n  Configuration error: {exc}\n", file=sys.stderr)
        return 2
    except WebTestKitError as exc:
        print(f"\n  {exc}\n", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n\n  Interrupted by user.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
