"""
Content Desk worker entry point.

Usage:
    python -m content_desk.worker [OPTIONS]

Options:
    --poll-interval N   Seconds between ticks (default: from config)
    --once              Run a single tick and exit
"""
from __future__ import annotations

import argparse
import json
import sys

from .loop import run_worker


def main() -> int:
    """Main entry point for worker CLI."""
    parser = argparse.ArgumentParser(
        description="Content Desk worker - scheduled publishing, fan-out, digests, delivery",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run with default settings
    python -m content_desk.worker

    # Tick every 10 seconds
    python -m content_desk.worker --poll-interval 10

    # Single tick, e.g. from cron
    python -m content_desk.worker --once
        """,
    )

    parser.add_argument(
        "--poll-interval",
        type=int,
        default=None,
        help="Seconds between ticks (default: from config)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and print its summary",
    )

    args = parser.parse_args()

    try:
        summary = run_worker(poll_interval=args.poll_interval, once=args.once)
        if summary is not None:
            print(json.dumps(summary, indent=2, default=str))
        return 0
    except KeyboardInterrupt:
        print("\nWorker stopped by user")
        return 0
    except Exception as e:
        print(f"Worker error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
