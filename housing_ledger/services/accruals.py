import logging
import calendar
from datetime import date
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from housing_ledger.core.config import settings
from housing_ledger.core.money import ZERO, money
from housing_ledger.core.periods import format_month, month_bounds
from housing_ledger.exceptions import (
    InvalidEntryError,
    LedgerError,
    MissingPricingError,
    ResidenceNotFoundError,
    StudentNotFoundError,
)
from housing_ledger.models import (
    AccountKind,
    EntrySource,
    EntryStatus,
    PaymentComponent,
    Residence,
    Room,
    Student,
    TransactionEntry,
)
from housing_ledger.schemas import (
    AccrualFailure,
    AccrualMetadata,
    LineItemCreate,
    ReceivableAccount,
    ResidenceAccrualResult,
    TransactionEntryCreate,
)
from housing_ledger.services.accounts import (
    ADMIN_INCOME,
    GENERAL_RECEIVABLE,
    RENTAL_INCOME,
    TENANT_DEPOSITS,
    ChartOfAccountsService,
)
from housing_ledger.services.ledger import TransactionEntryLedger
from housing_ledger.services.payments import PaymentAllocator

logger = logging.getLogger(__name__)

# component -> (credit account, line label)
ACCRUAL_COMPONENTS = [
    (PaymentComponent.RENT, RENTAL_INCOME, "Rent"),
    (PaymentComponent.ADMIN, ADMIN_INCOME, "Admin fee"),
    (PaymentComponent.DEPOSIT, TENANT_DEPOSITS, "Security deposit"),
]


def prorated_rent(monthly_rent: Decimal, start: date) -> Decimal:
    """
    Rent for the days from `start` to the end of its month, inclusive.
    """
    days_in_month = calendar.monthrange(start.year, start.month)[1]
    days = days_in_month - start.day + 1
    return money(Decimal(monthly_rent) / days_in_month * days)


def lease_covers(student: Student, year: int, month: int) -> bool:
    period_start, period_end = month_bounds(year, month)
    if student.lease_start and student.lease_start > period_end:
        return False
    if student.lease_end and student.lease_end < period_start:
        return False
    return True


class AccrualService:
    """
    Records what a student owes for a month: one balanced rental_accrual
    entry per (student, month), debiting the receivable and crediting income
    (or the deposit liability).
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = TransactionEntryLedger(db)
        self.accounts = ChartOfAccountsService(db)

    async def find_existing(self, student_id: str, month: int, year: int) -> Optional[TransactionEntry]:
        query = (
            select(TransactionEntry)
            .options(selectinload(TransactionEntry.lines))
            .where(
                TransactionEntry.source == EntrySource.RENTAL_ACCRUAL.value,
                TransactionEntry.status == EntryStatus.POSTED,
                TransactionEntry.student_id == student_id,
                TransactionEntry.accrual_year == year,
                TransactionEntry.accrual_month == month,
            )
        )
        result = await self.db.execute(query)
        return result.scalars().first()

    async def _receivable_for(self, student_id: str, student_name: Optional[str]) -> ReceivableAccount:
        resolved = await self.accounts.resolve_receivable(student_id)
        if resolved.kind == AccountKind.STUDENT_RECEIVABLE.value:
            return resolved
        # Students with history on the general account stay there.
        if settings.OPEN_STUDENT_RECEIVABLES and not await self.accounts.has_activity(GENERAL_RECEIVABLE, student_id):
            account = await self.accounts.open_student_receivable(student_id, student_name)
            return ReceivableAccount(kind=AccountKind.STUDENT_RECEIVABLE.value, code=account.code, name=account.name)
        return resolved

    async def accrue(
        self,
        student_id: str,
        residence_id: str,
        room_price,
        admin_fee,
        month: int,
        year: int,
        deposit=ZERO,
        student_name: Optional[str] = None,
        accrual_date: Optional[date] = None,
        accrual_type: str = "monthly",
    ) -> Tuple[TransactionEntry, bool]:
        """
        Posts the accrual for one student and month. Returns (entry, created);
        an already accrued month returns the existing entry with created=False.
        Once a new month is posted, any advance the student holds is applied
        against it.
        """
        existing = await self.find_existing(student_id, month, year)
        if existing:
            logger.warning(f"Accrual for student {student_id} {format_month(year, month)} already exists ({existing.transaction_id}); skipping")
            return existing, False

        if room_price is None or money(room_price) <= 0:
            raise MissingPricingError(student_id, residence_id, None, month, year)

        period = format_month(year, month)
        name = student_name or student_id
        amounts = {
            PaymentComponent.RENT: money(room_price),
            PaymentComponent.ADMIN: money(admin_fee),
            PaymentComponent.DEPOSIT: money(deposit),
        }

        try:
            receivable = await self._receivable_for(student_id, student_name)
            lines = []
            for component, credit_account, label in ACCRUAL_COMPONENTS:
                amount = amounts[component]
                if amount <= 0:
                    continue
                lines.append(LineItemCreate(
                    account_code=receivable.code,
                    debit=amount,
                    description=f"{label} due from {name} for {period}",
                    component=component,
                ))
                lines.append(LineItemCreate(
                    account_code=credit_account,
                    credit=amount,
                    description=f"{label} accrued - {name} {period}",
                ))

            entry = await self.ledger.post(TransactionEntryCreate(
                date=accrual_date or date(year, month, 1),
                description=f"Rental accrual: {name} - {period}",
                reference=f"ACCRUAL-{student_id}-{period}",
                source=EntrySource.RENTAL_ACCRUAL.value,
                source_id=student_id,
                entries=lines,
                metadata=AccrualMetadata(
                    student_id=student_id,
                    student_name=student_name,
                    residence_id=residence_id,
                    accrual_month=month,
                    accrual_year=year,
                    type=accrual_type,
                ),
            ))
            await self.db.commit()
        except IntegrityError:
            # A concurrent accrual for the same student/month won the unique index.
            await self.db.rollback()
            existing = await self.find_existing(student_id, month, year)
            if existing:
                logger.warning(f"Concurrent accrual for student {student_id} {period} detected; returning {existing.transaction_id}")
                return existing, False
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Accrued {entry.total_debit} for student {student_id} {period} on {receivable.code}")
        await PaymentAllocator(self.db).apply_advances(student_id, entry.date)
        return await self.ledger.get(entry.id), True

    async def create_accrual(self, student_id: str, residence_id: str, month: int, year: int) -> Tuple[TransactionEntry, bool]:
        """
        Prices the month from the residence's room table and posts it. The
        lease-start month also carries the admin fee and deposit, and its rent
        is prorated when the lease starts after the 1st.
        """
        existing = await self.find_existing(student_id, month, year)
        if existing:
            logger.warning(f"Accrual for student {student_id} {format_month(year, month)} already exists; skipping")
            return existing, False

        student = await self.db.get(Student, student_id)
        if not student:
            raise StudentNotFoundError(student_id)
        residence = await self.db.get(Residence, residence_id)
        if not residence:
            raise ResidenceNotFoundError(residence_id)

        if not lease_covers(student, year, month):
            raise InvalidEntryError(
                f"Lease of student {student_id} ({student.lease_start} to {student.lease_end}) "
                f"does not cover {format_month(year, month)}",
                context={"student_id": student_id, "month": month, "year": year},
            )

        result = await self.db.execute(
            select(Room).where(Room.residence_id == residence_id, Room.name == student.room_name)
        )
        room = result.scalars().first()
        if not room or room.price is None or money(room.price) <= 0:
            logger.warning(f"No room price for student {student_id} room {student.room_name!r} in {residence_id}")
            raise MissingPricingError(student_id, residence_id, student.room_name, month, year)

        price = money(room.price)
        rent, admin_fee, deposit = price, ZERO, ZERO
        accrual_date, accrual_type = date(year, month, 1), "monthly"

        lease_start = student.lease_start
        if lease_start and (lease_start.year, lease_start.month) == (year, month):
            accrual_date, accrual_type = lease_start, "lease_start"
            admin_fee = money(residence.admin_fee)
            deposit = money(price * settings.DEPOSIT_MONTHS)
            if settings.PRORATE_FIRST_MONTH and lease_start.day > 1:
                rent = prorated_rent(price, lease_start)

        return await self.accrue(
            student_id,
            residence_id,
            rent,
            admin_fee,
            month,
            year,
            deposit=deposit,
            student_name=student.name,
            accrual_date=accrual_date,
            accrual_type=accrual_type,
        )

    async def accrue_residence(self, residence_id: str, month: int, year: int) -> ResidenceAccrualResult:
        """
        Monthly accrual run for every student of a residence whose lease
        covers the month. A failing student is logged and reported; the run
        continues with the rest.
        """
        residence = await self.db.get(Residence, residence_id)
        if not residence:
            raise ResidenceNotFoundError(residence_id)

        result = await self.db.execute(
            select(Student).where(Student.residence_id == residence_id).order_by(Student.id)
        )
        students = [s for s in result.scalars().all() if lease_covers(s, year, month)]

        outcome = ResidenceAccrualResult(residence_id=residence_id, month=format_month(year, month))
        for student in students:
            try:
                _, created = await self.create_accrual(student.id, residence_id, month, year)
            except LedgerError as exc:
                logger.warning(f"Accrual failed for student {student.id} in {residence_id}: {exc.detail}")
                outcome.failed.append(AccrualFailure(student_id=student.id, detail=exc.detail))
                continue
            (outcome.created if created else outcome.skipped).append(student.id)

        logger.info(
            f"Residence {residence_id} {outcome.month}: {len(outcome.created)} accrued, "
            f"{len(outcome.skipped)} skipped, {len(outcome.failed)} failed"
        )
        return outcome
