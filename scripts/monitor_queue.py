"""
Watch the analysis job queue from a terminal.

Reads the same DATABASE_URL as the worker:

    export DATABASE_URL="postgresql+psycopg://..."
    python3 scripts/monitor_queue.py --interval 5

Use --once to print a single snapshot and exit.
"""

import argparse
import os
import sys
import time
from datetime import datetime

from segment_worker.db import make_engine
from segment_worker.monitor import snapshot
from segment_worker.store import JobStore


def main(argv=None):
    parser = argparse.ArgumentParser(description="Analysis job queue monitor")
    parser.add_argument("--database-url", default=os.getenv("DATABASE_URL", "sqlite:///./segment_worker.db"))
    parser.add_argument("--interval", type=float, default=5.0, help="seconds between refreshes")
    parser.add_argument("--recent", type=int, default=5, help="number of recent results to show")
    parser.add_argument("--once", action="store_true", help="print one snapshot and exit")
    args = parser.parse_args(argv)

    store = JobStore(make_engine(args.database_url))

    while True:
        try:
            report = snapshot(store, recent=args.recent)
        except Exception as e:
            print(f"❌ Error fetching stats: {e}", file=sys.stderr)
            if args.once:
                return 1
        else:
            if not args.once:
                print("\033[2J\033[H", end="")
            print(report)
            if args.once:
                return 0
            print(f"Last updated: {datetime.now():%H:%M:%S}")
            print(f"Refreshing in {args.interval:g} seconds... (Ctrl+C to exit)")
        try:
            time.sleep(args.interval)
        except KeyboardInterrupt:
            return 0


if __name__ == "__main__":
    sys.exit(main())
