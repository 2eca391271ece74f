"""
Scheduled jobs.

Run from the platform scheduler (daily is enough for reward settlement):

    python -m referrals.jobs process-due-rewards
"""

import argparse
import logging

from .container import Services, build_services
from .logging_config import setup_logging
from .models import SettlementSummary, utc_now
from .settings import get_settings

logger = logging.getLogger(__name__)

ERRORS_COLLECTION = "errors"


def run_process_due_rewards(services: Services) -> SettlementSummary:
    try:
        return services.rewards.process_due_rewards()
    except Exception as e:
        logger.exception("Error processing due rewards")
        if services.settings.is_development:
            logger.debug("Development mode, the error is not recorded in the store")
        else:
            try:
                services.store.create_document(ERRORS_COLLECTION, {
                    "name": "processDueRewards",
                    "error": str(e),
                    "timestamp": utc_now(),
                })
            except Exception:
                logger.exception("Could not record the settlement failure")
        raise


JOBS = {
    "process-due-rewards": run_process_due_rewards,
}


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Run a referral ledger job once.")
    parser.add_argument("job", choices=sorted(JOBS))
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings)
    result = JOBS[args.job](build_services(settings))
    logger.info("Job %s finished: %s", args.job, result)


if __name__ == "__main__":
    main()
