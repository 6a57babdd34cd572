"""Run a single pass of one webhook job outside Celery.

Usage:
    python scripts/run_job_pass.py reconciliation
    python scripts/run_job_pass.py health_check --no-lock
"""

import argparse
import asyncio
import json

from webhook_sync.core.logging import setup_logging
from webhook_sync.database import close_database
from webhook_sync.services.subscription_manager import build_manager
from webhook_sync.tasks.webhook_tasks import run_job_pass

JOBS = ("reconciliation", "health_check", "cleanup")


async def _run_unlocked(job: str) -> dict:
    manager = build_manager()
    try:
        runner = {
            "reconciliation": manager.run_reconciliation,
            "health_check": manager.run_health_check,
            "cleanup": manager.run_cleanup,
        }[job]
        summary = await runner()
        return summary.as_dict()
    finally:
        await close_database()


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("job", choices=JOBS)
    parser.add_argument(
        "--no-lock",
        action="store_true",
        help="skip the Redis job lock (for local runs without Redis)",
    )
    args = parser.parse_args()

    setup_logging()
    if args.no_lock:
        result = asyncio.run(_run_unlocked(args.job))
    else:
        result = asyncio.run(run_job_pass(args.job))
    print(json.dumps(result, indent=2, default=str))
    return 1 if result.get("aborted") else 0


if __name__ == "__main__":
    raise SystemExit(main())
