#!/usr/bin/env python3
"""
Order timeout sweep.

Lists orders that stayed in a status past its auto_timeout, or moves them to
their timeout status. Run it from cron or any job runner; it does one pass
and exits.
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from config.settings_schema import load_validated_settings
from core.exceptions import BookingSystemError
from oms.order_status import OrderStatusService


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Booking order timeout sweep",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python order_timeouts.py --check            # List timed-out orders as JSON
  python order_timeouts.py --apply            # Move timed-out orders once
  python order_timeouts.py --apply --db x.db  # Use another orders database
        """
    )
    parser.add_argument("--dotenv", type=str, default=str(ROOT / ".env"),
                        help="Path to .env file")
    parser.add_argument("--db", type=str, default=None,
                        help="Orders database (default: orders.db_path from settings)")
    parser.add_argument("--check", action="store_true",
                        help="List timed-out orders without changing them")
    parser.add_argument("--apply", action="store_true",
                        help="Apply timeout transitions")

    args = parser.parse_args(argv)

    load_dotenv(args.dotenv)

    try:
        settings = load_validated_settings()
        if args.db:
            settings.orders.db_path = args.db
        service = OrderStatusService.from_settings(settings)

        if args.apply:
            count = service.handle_timeout_orders()
            print(json.dumps({"action": "apply", "timed_out": count}))
        else:
            timed_out = [t.to_dict() for t in service.check_timeout_orders()]
            print(json.dumps({"action": "check", "timed_out": timed_out}, indent=2))
    except BookingSystemError as e:
        print(json.dumps({"error": e.to_dict()}, default=str), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
