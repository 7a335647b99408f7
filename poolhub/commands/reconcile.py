import argparse
import asyncio
from pathlib import Path

from poolhub.database import SessionLocal
from poolhub.engine import PoolEngine
from poolhub.logging_config import get_logger
from poolhub.reconciliation import generate_reconciliation_csv

logger = get_logger(__name__)


async def reconcile(output_path: str = "reconciliation.csv", retry_payouts: bool = False, session_factory=None) -> int:
    session_factory = session_factory or SessionLocal
    if retry_payouts:
        result = await PoolEngine(session_factory).retry_failed_payouts()
        logger.info("Payout retry: %s", result.message)
    with session_factory() as db:
        csv_text, mismatches = generate_reconciliation_csv(db)
    Path(output_path).write_text(csv_text, newline="")
    logger.info("Wrote %s rows to %s", mismatches, output_path)
    return 1 if mismatches else 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="List money movements that need manual review.")
    parser.add_argument("--output", default="reconciliation.csv")
    parser.add_argument("--retry-payouts", action="store_true", help="retry failed prize payouts first")
    args = parser.parse_args(argv)
    return asyncio.run(reconcile(args.output, args.retry_payouts))


if __name__ == "__main__":
    raise SystemExit(main())
