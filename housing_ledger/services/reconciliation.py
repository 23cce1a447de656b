"""
Repairs and audits over the posted ledger.

backfill_month_settled() attributes legacy receivable payments that carry no
monthSettled. Each candidate is resolved, in order, from:

1. its originalARTransaction reference (the month of that accrual)
2. the student's oldest month still outstanding as of the payment date
3. the payment's own month

Every candidate runs in its own savepoint so one failure never undoes the
others. Only monthSettled is written.
"""
import logging
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from housing_ledger.core.config import settings
from housing_ledger.core.money import money
from housing_ledger.core.periods import format_month, month_key
from housing_ledger.exceptions import LedgerError
from housing_ledger.models import EntrySource, EntryStatus, ResolutionStrategy, TransactionEntry
from housing_ledger.schemas import (
    IntegrityFinding,
    IntegrityReport,
    LedgerFilter,
    ReconciliationFailure,
    ReconciliationRepair,
    ReconciliationReport,
)
from housing_ledger.services.accounts import GENERAL_RECEIVABLE, ChartOfAccountsService
from housing_ledger.services.balances import BalanceAggregator
from housing_ledger.services.ledger import TransactionEntryLedger, line_totals

logger = logging.getLogger(__name__)

STUDENT_RECEIVABLE_PREFIX = f"{GENERAL_RECEIVABLE}-"


def payment_student_id(entry: TransactionEntry) -> Optional[str]:
    if entry.student_id:
        return entry.student_id
    for line in entry.lines:
        if line.account_code.startswith(STUDENT_RECEIVABLE_PREFIX):
            return line.account_code[len(STUDENT_RECEIVABLE_PREFIX):]
    return None


class ReconciliationService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = TransactionEntryLedger(db)
        self.accounts = ChartOfAccountsService(db)
        self.balances = BalanceAggregator(db)

    async def _from_reference(self, entry: TransactionEntry) -> Optional[str]:
        reference = (entry.metadata_json or {}).get("originalARTransaction")
        if not reference:
            return None
        accrual = await self.ledger.find_by_reference(reference)
        if (
            not accrual
            or accrual.source != EntrySource.RENTAL_ACCRUAL.value
            or accrual.status != EntryStatus.POSTED
        ):
            logger.warning(f"Payment {entry.transaction_id} references unknown accrual {reference}")
            return None
        if accrual.accrual_year and accrual.accrual_month:
            return format_month(accrual.accrual_year, accrual.accrual_month)
        return month_key(accrual.date)

    async def _from_fifo(self, entry: TransactionEntry) -> Optional[str]:
        student_id = payment_student_id(entry)
        if not student_id:
            return None
        obligations, _ = await self.balances.student_obligations(student_id, as_of=entry.date)
        for obligation in obligations:
            if obligation.total_outstanding > 0:
                return obligation.month
        return None

    async def resolve_month(self, entry: TransactionEntry) -> Tuple[str, ResolutionStrategy]:
        month = await self._from_reference(entry)
        if month:
            return month, ResolutionStrategy.REFERENCE
        month = await self._from_fifo(entry)
        if month:
            return month, ResolutionStrategy.FIFO
        return month_key(entry.date), ResolutionStrategy.FALLBACK

    async def backfill_month_settled(self, dry_run: bool = False) -> ReconciliationReport:
        """
        Sets monthSettled on posted receivable payments that lack it. With
        dry_run the same resolution runs and is reported, then rolled back.
        Running it twice repairs nothing the second time.
        """
        candidates = await self.ledger.find(LedgerFilter(
            source=EntrySource.PAYMENT.value,
            account_code_prefix=GENERAL_RECEIVABLE,
            month_settled_missing=True,
        ))
        report = ReconciliationReport(dry_run=dry_run, scanned=len(candidates))
        logger.info(f"Backfill scanning {len(candidates)} payments without monthSettled (dry_run={dry_run})")

        for entry in candidates:
            entry_id, transaction_id = entry.id, entry.transaction_id
            try:
                async with self.db.begin_nested():
                    month, strategy = await self.resolve_month(entry)
                    # Applied even on a dry run so later FIFO resolutions see it.
                    await self.ledger.set_month_settled(entry, month)
            except (LedgerError, SQLAlchemyError, ValueError) as exc:
                logger.error(f"Backfill failed for payment {transaction_id}: {exc}")
                report.failed.append(ReconciliationFailure(entry_id=entry_id, transaction_id=transaction_id, error=str(exc)))
                continue

            report.resolved += 1
            report.by_strategy[strategy] = report.by_strategy.get(strategy, 0) + 1
            report.repairs.append(ReconciliationRepair(
                entry_id=entry_id,
                transaction_id=transaction_id,
                month_settled=month,
                strategy=strategy,
            ))
            logger.info(f"Payment {transaction_id} attributed to {month} via {strategy.value}")

        if dry_run:
            await self.db.rollback()
        else:
            await self.db.commit()

        logger.info(
            f"Backfill done: {report.resolved}/{report.scanned} resolved, {len(report.failed)} failed "
            f"({', '.join(f'{k.value}={v}' for k, v in report.by_strategy.items()) or 'no repairs'})"
        )
        return report

    async def verify_integrity(self) -> IntegrityReport:
        """
        Audits every posted entry: lines must balance, cached totals must
        match the lines, and every line must reference a chart account.
        """
        entries = await self.ledger.find(LedgerFilter())
        chart = {account.code for account in await self.accounts.list_accounts()}
        findings = []

        for entry in entries:
            debit, credit = line_totals(entry)
            if abs(debit - credit) > settings.BALANCE_TOLERANCE:
                findings.append(IntegrityFinding(
                    entry_id=entry.id,
                    transaction_id=entry.transaction_id,
                    issue="unbalanced",
                    detail=f"lines debit {debit} != credit {credit}",
                ))
            if money(entry.total_debit) != debit or money(entry.total_credit) != credit:
                findings.append(IntegrityFinding(
                    entry_id=entry.id,
                    transaction_id=entry.transaction_id,
                    issue="totals_mismatch",
                    detail=f"cached {entry.total_debit}/{entry.total_credit}, lines {debit}/{credit}",
                ))
            unknown = sorted({line.account_code for line in entry.lines} - chart)
            if unknown:
                findings.append(IntegrityFinding(
                    entry_id=entry.id,
                    transaction_id=entry.transaction_id,
                    issue="unknown_account",
                    detail=f"accounts not in chart: {', '.join(unknown)}",
                ))

        for finding in findings:
            logger.warning(f"Integrity: {finding.transaction_id} {finding.issue}: {finding.detail}")
        logger.info(f"Integrity check scanned {len(entries)} entries, {len(findings)} findings")
        return IntegrityReport(scanned=len(entries), findings=findings)
