"""TaskShoot calendar sync console."""
# taskshoot/main.py
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.errors import AuthExpiredError, SyncDisabledError, SyncError, SyncInProgressError
from core.settings import GOOGLE_SYNC
from models.sync_run import DIRECTIONS
from models.sync_state import SYNC_FREQUENCIES
from services.calendar_client import CalendarClient
from services.credential_store import CredentialStore
from services.google_auth import GoogleAuth
from services.sync_config import SyncConfig
from services.sync_engine import SyncEngine, SyncRequest
from services.sync_log import SyncLog
from services.sync_state_store import SyncStateStore
from storage.db import init_db


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def cmd_init_db(args) -> int:
    init_db()
    print("Database ready.")
    return 0


def cmd_auth_url(args) -> int:
    print(GoogleAuth().authorization_url(state=args.state))
    return 0


def cmd_exchange_code(args) -> int:
    init_db()
    auth = GoogleAuth()
    tokens = auth.exchange_code(args.code, state=args.state)
    state = SyncStateStore()
    CredentialStore(refresher=auth.refresh).store_tokens(args.owner, tokens)
    state.update_profile(args.owner, enabled=True, auto_sync_enabled=True, needs_reconnect=False)
    print(f"Google Calendar connected for {args.owner}.")
    return 0


def cmd_calendars(args) -> int:
    init_db()
    state = SyncStateStore()
    credentials = CredentialStore(
        refresher=GoogleAuth().refresh,
        on_auth_expired=state.mark_reconnect_required,
    )
    client = CalendarClient.for_access_token(credentials.get_valid_token(args.owner))
    for cal in client.list_calendars():
        marker = "*" if cal.primary else " "
        print(f"{marker} {cal.id}\t{cal.summary}\t{cal.access_role or ''}")
    if args.select:
        SyncConfig(state).update(args.owner, selected_calendars=args.select)
        print(f"Selected calendars: {', '.join(args.select)}")
    return 0


def cmd_sync(args) -> int:
    init_db()
    if args.if_due and not SyncConfig(SyncStateStore()).auto_sync_due(args.owner):
        print("Auto sync is not due.")
        return 0
    request = SyncRequest(
        owner_id=args.owner,
        calendar_ids=list(args.calendar or []),
        direction=args.direction,
        force_full_sync=args.full,
        dry_run=args.dry_run,
        timeout_sec=args.timeout,
        sync_type="auto" if args.if_due else "manual",
    )
    with SyncEngine.create() as engine:
        result = engine.sync(request)
    _print_json(result.to_dict())
    return 0 if result.status != "error" else 1


def cmd_config(args) -> int:
    init_db()
    config = SyncConfig(SyncStateStore())
    changes = {
        "enabled": args.enabled,
        "auto_sync_enabled": args.auto_sync,
        "sync_direction": args.direction,
        "sync_frequency": args.frequency,
        "selected_calendars": args.calendars,
    }
    if any(value is not None for value in changes.values()):
        config.update(args.owner, **changes)
    _print_json(config.get(args.owner))
    return 0


def cmd_stats(args) -> int:
    init_db()
    log = SyncLog()
    _print_json(log.stats(args.owner, days_back=args.days))
    if args.recent:
        for row in log.recent_runs(args.owner, limit=args.recent, include_children=False):
            print(f"{row.started_at}  {row.status:<8} {row.direction:<18} processed={row.events_processed}")
    return 0


def cmd_cleanup(args) -> int:
    init_db()
    removed = SyncLog().cleanup(days_to_keep=args.days)
    print(f"Removed {removed} sync log entries older than {args.days} days.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__ or "")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log to stderr as well")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create or migrate the local database")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("auth-url", help="Print the Google consent URL")
    p.add_argument("--state", default=None)
    p.set_defaults(func=cmd_auth_url)

    p = sub.add_parser("exchange-code", help="Store tokens for an authorization code")
    p.add_argument("--owner", required=True)
    p.add_argument("--state", default=None)
    p.add_argument("code")
    p.set_defaults(func=cmd_exchange_code)

    p = sub.add_parser("calendars", help="List calendars, optionally selecting some for sync")
    p.add_argument("--owner", required=True)
    p.add_argument("--select", nargs="+", metavar="CALENDAR_ID")
    p.set_defaults(func=cmd_calendars)

    p = sub.add_parser("sync", help="Run a synchronization")
    p.add_argument("--owner", required=True)
    p.add_argument("--calendar", action="append", metavar="CALENDAR_ID")
    p.add_argument("--direction", choices=DIRECTIONS, default=None,
                   help="Defaults to the owner's configured direction")
    p.add_argument("--if-due", action="store_true", help="Only run when the auto-sync interval has elapsed")
    p.add_argument("--full", action="store_true", help="Ignore the stored sync token")
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--timeout", type=float, default=None)
    p.set_defaults(func=cmd_sync)

    p = sub.add_parser("config", help="Show or change the owner's sync settings")
    p.add_argument("--owner", required=True)
    p.add_argument("--enable", dest="enabled", action="store_const", const=True)
    p.add_argument("--disable", dest="enabled", action="store_const", const=False)
    p.add_argument("--auto-sync", dest="auto_sync", action="store_const", const=True)
    p.add_argument("--no-auto-sync", dest="auto_sync", action="store_const", const=False)
    p.add_argument("--direction", choices=DIRECTIONS)
    p.add_argument("--frequency", choices=list(SYNC_FREQUENCIES))
    p.add_argument("--calendars", nargs="+", metavar="CALENDAR_ID")
    p.set_defaults(func=cmd_config)

    p = sub.add_parser("stats", help="Show sync statistics")
    p.add_argument("--owner", required=True)
    p.add_argument("--days", type=int, default=30)
    p.add_argument("--recent", type=int, default=0, help="Also list the N most recent runs")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("cleanup", help="Delete old sync log entries")
    p.add_argument("--days", type=int, default=GOOGLE_SYNC.log_retention_days)
    p.set_defaults(func=cmd_cleanup)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s %(message)s")
    try:
        return args.func(args)
    except AuthExpiredError:
        print("Google Calendar authorization expired: reconnect required.", file=sys.stderr)
        return 2
    except SyncInProgressError as exc:
        print(f"Sync already running for calendar {exc.calendar_id}.", file=sys.stderr)
        return 3
    except SyncDisabledError:
        print("Calendar sync is disabled for this owner.", file=sys.stderr)
        return 4
    except SyncError as exc:
        logging.getLogger("taskshoot.sync").exception("Command failed: %s", exc)
        print(f"Sync failed: {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"Invalid request: {exc}", file=sys.stderr)
        return 5


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
