import argparse
import asyncio
import logging

from housing_ledger.core.config import settings
from housing_ledger.db.session import AsyncSessionLocal
from housing_ledger.services.reconciliation import ReconciliationService

logger = logging.getLogger("backfill_month_settled")

async def main(dry_run: bool):
    async with AsyncSessionLocal() as db:
        service = ReconciliationService(db)
        report = await service.backfill_month_settled(dry_run=dry_run)
        integrity = await service.verify_integrity()

    print(f"Scanned {report.scanned}, resolved {report.resolved}, failed {len(report.failed)}{' (dry run)' if dry_run else ''}")
    for strategy, count in report.by_strategy.items():
        print(f"  {strategy.value:10} {count}")
    for repair in report.repairs:
        print(f" - {repair.transaction_id} -> {repair.month_settled} ({repair.strategy.value})")
    for failure in report.failed:
        print(f" ! {failure.transaction_id}: {failure.error}")
    if not integrity.is_clean:
        print(f"\n{len(integrity.findings)} integrity findings:")
        for finding in integrity.findings:
            print(f" ! {finding.transaction_id} {finding.issue}: {finding.detail}")

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Attribute legacy receivable payments to the month they settle.")
    parser.add_argument("--dry-run", action="store_true", help="report what would change without writing")
    args = parser.parse_args()
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(main(args.dry_run))
