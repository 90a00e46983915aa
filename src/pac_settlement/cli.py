"""
PAC Settlement CLI

Commands:
  serve          - Run the API server
  init-db        - Create the schema
  weekly-close   - Settle the week that just ended (cron, once per deadline)
  expiry-check   - Settle grace-expired commitments (cron, frequently)
  week-status    - Show a user's week
  reconcile      - Show or resolve a charged week's reconciliation delta
"""

import argparse
import json
import os
import sys


def _print_json(data):
    print(json.dumps(data, indent=2, sort_keys=True))


def _service():
    from .core.logging import configure_logging
    from .settlement.service import SettlementService

    configure_logging()
    return SettlementService()


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting PAC Settlement on {host}:{port}")

    uvicorn.run(
        "pac_settlement.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_init_db(args):
    """Create the schema."""
    from .config import SettlementConfig
    from .persistence.database import get_database

    config = SettlementConfig.from_env()
    get_database(config.database_url)
    print(f"Database initialized: {config.database_url}")


def cmd_weekly_close(args):
    """Settle the week that just ended."""
    summary = _service().run_weekly_close(week_end_date=args.week)
    _print_json(summary.to_dict())
    if summary.failed:
        sys.exit(2)


def cmd_expiry_check(args):
    """Settle grace-expired commitments."""
    result = _service().run_expiry_check()
    _print_json(result.to_dict())
    if any(summary.failed for summary in result.weeks):
        sys.exit(2)


def cmd_week_status(args):
    """Show a user's week."""
    from .persistence.repository import DataIntegrityError

    try:
        status = _service().get_week_status(args.user_id, args.week)
    except DataIntegrityError as e:
        print(f"Error: {e}")
        sys.exit(1)
    _print_json(status.to_dict())


def cmd_reconcile(args):
    """Show or resolve a reconciliation delta."""
    from .settlement.reconciliation import ReconciliationError

    service = _service()
    if args.resolve:
        try:
            penalty = service.mark_reconciled(args.user_id, args.week)
        except ReconciliationError as e:
            print(f"Error: {e}")
            sys.exit(1)
        _print_json(penalty.to_dict())
        return

    result = service.check_reconciliation(args.user_id, args.week)
    if result is None:
        print(f"Week {args.week} for {args.user_id} has not been charged")
        return
    _print_json(result.to_dict())


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="PAC Settlement - Weekly screen-time penalty settlement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # init-db
    subparsers.add_parser("init-db", help="Create the database schema")

    # weekly-close
    close_parser = subparsers.add_parser("weekly-close", help="Settle the week that just ended")
    close_parser.add_argument("--week", help="Week to close (YYYY-MM-DD); defaults to the last deadline")

    # expiry-check
    subparsers.add_parser("expiry-check", help="Settle grace-expired commitments")

    # week-status
    status_parser = subparsers.add_parser("week-status", help="Show a user's week")
    status_parser.add_argument("user_id")
    status_parser.add_argument("week", help="Week identifier (YYYY-MM-DD)")

    # reconcile
    reconcile_parser = subparsers.add_parser("reconcile", help="Show or resolve a reconciliation delta")
    reconcile_parser.add_argument("user_id")
    reconcile_parser.add_argument("week", help="Week identifier (YYYY-MM-DD)")
    reconcile_parser.add_argument("--resolve", action="store_true", help="Mark the delta as settled")

    args = parser.parse_args(argv)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "init-db":
        cmd_init_db(args)
    elif args.command == "weekly-close":
        cmd_weekly_close(args)
    elif args.command == "expiry-check":
        cmd_expiry_check(args)
    elif args.command == "week-status":
        cmd_week_status(args)
    elif args.command == "reconcile":
        cmd_reconcile(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
