"""
Run the periodic subscription work: reprocess unverified webhooks, run due payment retries,
close expired grace periods and settle trials that have ended.

Meant to be invoked periodically (cron or a scheduled job):

    python process_payment_retries.py [--dry-run]
"""
import argparse
import logging

from dotenv import load_dotenv

load_dotenv()

from subscription_engine.database import Base, engine  # noqa: E402
from subscription_engine.exceptions import SubscriptionEngineError  # noqa: E402
from subscription_engine.lifecycle import STATUS_UNVERIFIED, TRIAL_SKIPPED  # noqa: E402
from subscription_engine.services import get_services  # noqa: E402

logger = logging.getLogger("process_payment_retries")


def process(dry_run: bool = False) -> dict:
    services = get_services()
    summary = {
        "reprocessed": 0,
        "still_unverified": 0,
        "retried": 0,
        "recovered": 0,
        "grace_period": 0,
        "unknown": 0,
        "expired": 0,
        "trials_converted": 0,
        "trials_cancelled": 0,
        "trials_expired": 0,
        "trials_unknown": 0,
        "errors": 0,
    }

    # Must run before the retries: a reprocessed charge can close a failure episode.
    pending = services.lifecycle.pending_unverified_events()
    logger.info("%s unverified webhook events pending", len(pending))
    for entry in pending:
        if dry_run:
            logger.info("Would reprocess webhook %s (%s)", entry["event_data"].get("event"), entry["reference"])
            continue
        try:
            outcome = services.lifecycle.reprocess_unverified(entry)
        except Exception:
            logger.exception("Reprocessing webhook audit entry %s failed", entry["id"])
            summary["errors"] += 1
            continue
        if outcome.status == STATUS_UNVERIFIED:
            summary["still_unverified"] += 1
        else:
            summary["reprocessed"] += 1

    due = services.scheduler.due_retries()
    logger.info("%s payment retries due", len(due))
    for user_id in due:
        if dry_run:
            logger.info("Would retry payment for user %s", user_id)
            continue
        try:
            outcome = services.scheduler.execute_retry(user_id)
        except SubscriptionEngineError:
            logger.exception("Payment retry failed for user %s", user_id)
            summary["errors"] += 1
            continue
        summary["retried"] += 1
        if outcome.success:
            summary["recovered"] += 1
        elif outcome.status == "grace_period":
            summary["grace_period"] += 1
        elif outcome.status == "unknown":
            summary["unknown"] += 1
        logger.info("User %s: %s", user_id, outcome.message)

    expired = services.scheduler.expired_grace_periods()
    logger.info("%s grace periods expired", len(expired))
    for user_id in expired:
        if dry_run:
            logger.info("Would cancel subscription for user %s", user_id)
            continue
        try:
            services.lifecycle.cancel(user_id, reason="grace_period_expired")
        except SubscriptionEngineError:
            logger.exception("Could not cancel subscription for user %s after grace period", user_id)
            summary["errors"] += 1
            continue
        summary["expired"] += 1

    trials = services.lifecycle.expired_trials()
    logger.info("%s trials ended", len(trials))
    for user_id in trials:
        if dry_run:
            logger.info("Would settle ended trial for user %s", user_id)
            continue
        try:
            result = services.lifecycle.expire_trial(user_id)
        except SubscriptionEngineError:
            logger.exception("Could not settle ended trial for user %s", user_id)
            summary["errors"] += 1
            continue
        if result != TRIAL_SKIPPED:
            summary[f"trials_{result}"] += 1
        logger.info("Trial for user %s: %s", user_id, result)

    return summary


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--dry-run", action="store_true", help="list due work without charging or cancelling")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    Base.metadata.create_all(bind=engine)
    logger.info("Processing subscription jobs%s", " (dry run)" if args.dry_run else "")
    logger.info("Done: %s", process(dry_run=args.dry_run))
