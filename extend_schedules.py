"""Daily batch job: roll every active protocol's schedule window forward."""
import argparse
import os
import sys
from datetime import date

# Ensure protocol_scheduler package import
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from protocol_scheduler.core.logging import setup_logging
from protocol_scheduler.crud import SqlAlchemyProtocolRepository
from protocol_scheduler.database import SessionLocal
from protocol_scheduler.services import materializer


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--horizon", type=date.fromisoformat, default=None,
                        help="extend to this date instead of today + SCHEDULE_HORIZON_DAYS")
    args = parser.parse_args(argv)

    logger = setup_logging()
    db = SessionLocal()
    try:
        summary = materializer.extend_all_active(SqlAlchemyProtocolRepository(db), horizon_date=args.horizon)
    finally:
        db.close()

    logger.info("extend_schedules_done", **{k: v for k, v in summary.items() if k != "failed"},
                failed_instances=summary["failed"])
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
