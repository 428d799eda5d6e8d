#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging

from billing.scheduler import create_scheduler_from_env
from billing.store import store


def main() -> int:
    parser = argparse.ArgumentParser(description="Enqueue periodic billing jobs (charges, stuck sync, payouts).")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and print what was enqueued.",
    )
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")

    scheduler = create_scheduler_from_env(store=store)
    if args.once:
        ran = scheduler.tick()
        print(json.dumps({"success": True, "ran": ran}, ensure_ascii=True))
        return 0
    scheduler.run_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
