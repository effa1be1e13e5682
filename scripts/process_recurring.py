# scripts/process_recurring.py
#
# Daily recurring-transaction run. Schedule it from cron, e.g.
#   5 0 * * *  cd /srv/cashpath && python scripts/process_recurring.py
import argparse
import os
import sys

# Ensure project root is on sys.path
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = os.path.dirname(SCRIPT_DIR)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from cashpath.database import SessionLocal, engine, init_db
from cashpath.recurring import RecurringJobRunner, RecurringScheduler, RecurringWorker
from cashpath.settings import configure_logging, get_settings


def main(user_id: int | None = None):
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    init_db(engine)

    runner = RecurringJobRunner(
        RecurringWorker(SessionLocal),
        max_workers=settings.RECURRING_CONCURRENCY,
        retries=settings.RECURRING_RETRIES,
    )
    summary = {}

    db = SessionLocal()
    try:
        result = RecurringScheduler(db).run(lambda units: summary.update(runner.run(units)), user_id=user_id)
    finally:
        db.close()

    print(result["message"])
    if summary:
        print(f"Created {summary['processed']} occurrences, {len(summary['failed'])} failed.")
    return 1 if summary.get("failed") else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Materialize due recurring transactions.")
    parser.add_argument("--user-id", type=int, default=None, help="only process this user's templates")
    args = parser.parse_args()
    sys.exit(main(args.user_id))
