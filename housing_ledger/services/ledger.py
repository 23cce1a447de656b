import logging
import uuid
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from housing_ledger.core.config import settings
from housing_ledger.core.money import ZERO, money
from housing_ledger.exceptions import (
    DuplicateTransactionError,
    EntryNotFoundError,
    InvalidEntryError,
    UnbalancedEntryError,
)
from housing_ledger.models import EntryStatus, LineItem, TransactionEntry
from housing_ledger.schemas import LedgerFilter, TransactionEntryCreate
from housing_ledger.services.accounts import ChartOfAccountsService

# Setup Logger
logger = logging.getLogger(__name__)

TRANSACTION_PREFIXES = {
    "rental_accrual": "ACR",
    "payment": "PAY",
    "expense": "EXP",
    "petty_cash": "PCS",
}


def new_transaction_id(source: str, on_date) -> str:
    prefix = TRANSACTION_PREFIXES.get(source, "TXN")
    return f"{prefix}-{on_date:%Y%m%d}-{uuid.uuid4().hex[:10].upper()}"


class TransactionEntryLedger:
    """
    Append-only store of balanced double-entry records and the sole read
    path for every other component.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.accounts = ChartOfAccountsService(db)

    async def post(self, entry_in: TransactionEntryCreate) -> TransactionEntry:
        """
        Validates and appends one entry. Flushes but does not commit; the
        calling operation owns the transaction.
        """
        lines = entry_in.entries
        codes = [line.account_code for line in lines]
        if len(lines) < 2:
            raise InvalidEntryError(
                f"An entry needs at least two lines, got {len(lines)} ({', '.join(codes) or 'none'})",
                context={"account_codes": codes},
            )

        chart = await self.accounts.require_accounts(codes)

        total_debit = ZERO
        total_credit = ZERO
        for line in lines:
            debit, credit = money(line.debit), money(line.credit)
            if (debit > 0) == (credit > 0):
                raise InvalidEntryError(
                    f"Line on {line.account_code} must carry exactly one of debit/credit "
                    f"(debit {debit}, credit {credit})",
                    context={"account_code": line.account_code, "debit": str(debit), "credit": str(credit)},
                )
            total_debit += debit
            total_credit += credit

        if abs(total_debit - total_credit) > settings.BALANCE_TOLERANCE:
            logger.warning(
                f"Rejected unbalanced entry on {entry_in.date}: debits {total_debit}, credits {total_credit}, accounts {codes}"
            )
            raise UnbalancedEntryError(total_debit, total_credit, codes, entry_in.description)

        if entry_in.transaction_id and await self._transaction_id_taken(entry_in.transaction_id):
            raise DuplicateTransactionError(entry_in.transaction_id)

        entry = TransactionEntry(
            id=uuid.uuid4(),
            transaction_id=entry_in.transaction_id or new_transaction_id(entry_in.source, entry_in.date),
            date=entry_in.date,
            description=entry_in.description,
            reference=entry_in.reference,
            source=entry_in.source,
            source_id=entry_in.source_id,
            status=EntryStatus.POSTED,
            total_debit=total_debit,
            total_credit=total_credit,
        )
        entry.apply_metadata(entry_in.metadata.to_json() if entry_in.metadata else {})
        entry.lines = [
            LineItem(
                position=position,
                account_code=line.account_code,
                account_name=line.account_name or chart[line.account_code].name,
                account_type=line.account_type or chart[line.account_code].type,
                debit=money(line.debit),
                credit=money(line.credit),
                description=line.description,
                component=line.component.value if line.component else None,
            )
            for position, line in enumerate(lines)
        ]
        self.db.add(entry)
        await self.db.flush()
        logger.info(
            f"Posted {entry.source} entry {entry.transaction_id} dated {entry.date}: {total_debit} across {len(lines)} lines"
        )
        return entry

    async def record(self, entry_in: TransactionEntryCreate) -> TransactionEntry:
        """
        Posts a single entry in its own transaction.
        """
        try:
            entry = await self.post(entry_in)
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            if entry_in.transaction_id and await self._transaction_id_taken(entry_in.transaction_id):
                logger.warning(f"Rejected entry with duplicate transaction id {entry_in.transaction_id}")
                raise DuplicateTransactionError(entry_in.transaction_id) from exc
            raise
        except Exception:
            await self.db.rollback()
            raise
        return await self.get(entry.id)

    async def _transaction_id_taken(self, transaction_id: str) -> bool:
        result = await self.db.execute(
            select(TransactionEntry.id).where(TransactionEntry.transaction_id == transaction_id)
        )
        return result.first() is not None

    async def get(self, entry_id: UUID) -> TransactionEntry:
        query = select(TransactionEntry).options(selectinload(TransactionEntry.lines)).where(TransactionEntry.id == entry_id)
        result = await self.db.execute(query)
        entry = result.scalar_one_or_none()
        if not entry:
            raise EntryNotFoundError(entry_id)
        return entry

    async def find_by_reference(self, reference: str) -> Optional[TransactionEntry]:
        """
        Looks up an entry by its UUID or its transaction_id.
        """
        query = select(TransactionEntry).options(selectinload(TransactionEntry.lines))
        try:
            query = query.where(TransactionEntry.id == UUID(str(reference)))
        except ValueError:
            query = query.where(TransactionEntry.transaction_id == reference)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def find(self, entry_filter: Optional[LedgerFilter] = None) -> List[TransactionEntry]:
        entry_filter = entry_filter or LedgerFilter()
        query = select(TransactionEntry).options(selectinload(TransactionEntry.lines))

        if entry_filter.status is not None:
            query = query.where(TransactionEntry.status == entry_filter.status)
        if entry_filter.date_from:
            query = query.where(TransactionEntry.date >= entry_filter.date_from)
        if entry_filter.date_to:
            query = query.where(TransactionEntry.date <= entry_filter.date_to)
        if entry_filter.source:
            query = query.where(TransactionEntry.source == entry_filter.source)
        if entry_filter.source_id:
            query = query.where(TransactionEntry.source_id == entry_filter.source_id)
        if entry_filter.student_id:
            query = query.where(TransactionEntry.student_id == entry_filter.student_id)
        if entry_filter.account_code_prefix:
            # Receivable sub-accounts are hierarchical: "1100" matches 1100 and 1100-<id>
            query = query.where(
                TransactionEntry.lines.any(
                    LineItem.account_code.startswith(entry_filter.account_code_prefix, autoescape=True)
                )
            )
        if entry_filter.metadata_field:
            field = TransactionEntry.metadata_json[entry_filter.metadata_field].as_string()
            if entry_filter.metadata_value is not None:
                query = query.where(field == entry_filter.metadata_value)
            else:
                query = query.where(field.is_not(None))
        if entry_filter.month_settled_missing:
            query = query.where(TransactionEntry.month_settled.is_(None))

        query = query.order_by(TransactionEntry.date, TransactionEntry.created_at, TransactionEntry.transaction_id)
        if entry_filter.limit:
            query = query.limit(entry_filter.limit)

        result = await self.db.execute(query)
        entries = list(result.scalars().all())
        logger.debug(f"Ledger find matched {len(entries)} entries")
        return entries

    async def soft_delete(self, entry_id: UUID) -> TransactionEntry:
        """
        Marks an entry deleted. The record and its lines are kept for audit.
        """
        entry = await self.get(entry_id)
        if entry.status == EntryStatus.DELETED:
            return entry
        try:
            entry.status = EntryStatus.DELETED
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info(f"Soft-deleted entry {entry.transaction_id} ({entry.source}, {entry.total_debit})")
        return entry

    async def set_month_settled(self, entry: TransactionEntry, month_settled: str) -> None:
        """
        The one permitted in-place edit of a posted entry: backfilling the
        settled month. Lines and totals are never touched.
        """
        metadata = dict(entry.metadata_json or {})
        metadata["monthSettled"] = month_settled
        entry.metadata_json = metadata
        entry.month_settled = month_settled
        await self.db.flush()

    async def account_lines(self, account_code: str, include_deleted: bool = False) -> List[LineItem]:
        """
        Returns the line history of one account ordered by entry date.
        """
        await self.accounts.get_account(account_code)
        query = (
            select(LineItem)
            .join(TransactionEntry, LineItem.entry_id == TransactionEntry.id)
            .options(selectinload(LineItem.entry))
            .where(LineItem.account_code == account_code)
            .order_by(TransactionEntry.date, TransactionEntry.created_at, LineItem.position)
        )
        if not include_deleted:
            query = query.where(TransactionEntry.status == EntryStatus.POSTED)
        result = await self.db.execute(query)
        lines = list(result.scalars().all())
        logger.debug(f"Retrieved {len(lines)} ledger lines for {account_code}")
        return lines


def line_totals(entry: TransactionEntry):
    debit = sum((money(line.debit) for line in entry.lines), Decimal("0.00"))
    credit = sum((money(line.credit) for line in entry.lines), Decimal("0.00"))
    return debit, credit
