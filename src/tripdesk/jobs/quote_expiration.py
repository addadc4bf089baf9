from __future__ import annotations

import logging
import sys

from tripdesk.config import configure_logging
from tripdesk.jobs.runner import Job, Task
from tripdesk.quotes.sweep import QuoteExpirationSweep

logger = logging.getLogger(__name__)

JOB_NAME = "quote_expiration"


def build_quote_expiration_job(sweep: QuoteExpirationSweep) -> Job:
    return Job(
        name=JOB_NAME,
        tasks=[
            Task(name="warn_expiring_quotes", depends_on=[], fn=lambda: sweep.warn_expiring().to_dict()),
            Task(name="expire_overdue_quotes", depends_on=[], fn=lambda: sweep.expire_overdue().to_dict()),
        ],
    )


def main() -> int:
    """Entry point for ``python -m tripdesk.jobs.quote_expiration`` (cron/scheduler)."""
    configure_logging()
    from tripdesk.runtime import TripDeskRuntime

    runtime = TripDeskRuntime()
    try:
        result = runtime.run_job(JOB_NAME)
    finally:
        runtime.close()
    for task in result["task_results"]:
        logger.info("%s: %s %s", task["task_name"], task["status"], task.get("result") or task.get("error_message"))
    return 0 if result["status"] in {"succeeded", "skipped"} else 1


if __name__ == "__main__":
    sys.exit(main())
