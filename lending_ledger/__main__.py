#!/usr/bin/env python3
"""
Command line entry point

    python -m lending_ledger serve [--host HOST] [--port PORT] [--reload]
    python -m lending_ledger run-jobs [--date YYYY-MM-DD] [--job JOB]
"""

import argparse
import json
import sys
from datetime import date

from .config import get_config
from .errors import LedgerError
from .logging_config import setup_logging


JOBS = ("accrue-interest", "mature-due", "aging-overdue", "all")


def main() -> int:
    parser = argparse.ArgumentParser(prog="lending_ledger", description="Lending ledger engine")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", help="Bind address (default from LEDGER_API_HOST)")
    serve.add_argument("--port", type=int, help="Port (default from LEDGER_API_PORT)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes")

    jobs = commands.add_parser("run-jobs", help="Run loan lifecycle jobs once and print summaries")
    jobs.add_argument("--date", help="Business date, YYYY-MM-DD (default today)")
    jobs.add_argument("--job", choices=JOBS, default="all")

    args = parser.parse_args()

    if args.command == "serve":
        from .api import run_server
        run_server(host=args.host, port=args.port, debug=args.reload)
        return 0

    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)

    try:
        as_of = date.fromisoformat(args.date) if args.date else None
    except ValueError:
        parser.error("--date must be an ISO date (YYYY-MM-DD)")

    from .api.auth import LedgerSystem
    system = LedgerSystem()
    try:
        scheduler = system.scheduler
        if args.job == "all":
            summaries = scheduler.run_all(as_of)
        else:
            run = {
                "accrue-interest": scheduler.run_accrue_interest,
                "mature-due": scheduler.run_mature_due,
                "aging-overdue": scheduler.run_aging_overdue,
            }[args.job]
            summaries = [run(as_of)]
    except LedgerError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 1
    finally:
        system.close()

    print(json.dumps([summary.to_dict() for summary in summaries], indent=2))
    return 1 if any(summary.errors for summary in summaries) else 0


if __name__ == "__main__":
    sys.exit(main())
