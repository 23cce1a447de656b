import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Iterator, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from housing_ledger.core.money import ZERO, money
from housing_ledger.core.periods import month_key
from housing_ledger.exceptions import NoOutstandingBalanceError
from housing_ledger.models import (
    COMPONENT_PRIORITY,
    EntrySource,
    PaymentComponent,
    PaymentMethod,
)
from housing_ledger.schemas import (
    AllocationLine,
    LineItemCreate,
    MonthlyObligation,
    PaymentCreate,
    PaymentMetadata,
    PaymentResult,
    ReceivableAccount,
    TransactionEntryCreate,
)
from housing_ledger.services.accounts import (
    ADVANCE_PAYMENTS,
    BANK_ACCOUNT,
    CASH_ACCOUNT,
    ChartOfAccountsService,
)
from housing_ledger.services.balances import BalanceAggregator
from housing_ledger.services.ledger import TransactionEntryLedger
from housing_ledger.services.locks import student_scope

logger = logging.getLogger(__name__)


def receiving_account(method: PaymentMethod) -> str:
    if method == PaymentMethod.CASH:
        return CASH_ACCOUNT
    return BANK_ACCOUNT


def allocation_slices(
    obligations: List[MonthlyObligation], available: Decimal
) -> Iterator[Tuple[MonthlyObligation, PaymentComponent, Decimal]]:
    """
    Yields (obligation, component, amount) oldest month first and by
    component priority within a month until `available` is used up.
    """
    remaining = available
    for obligation in obligations:
        for component in COMPONENT_PRIORITY:
            if remaining <= 0:
                return
            due = obligation.outstanding_for(component)
            if due <= 0:
                continue
            applied = min(due, remaining)
            remaining -= applied
            yield obligation, component, applied


def first_accrual(obligation: MonthlyObligation) -> Optional[str]:
    return str(obligation.accrual_entry_ids[0]) if obligation.accrual_entry_ids else None


class PaymentAllocator:
    """
    Splits a student's payment across outstanding obligations, oldest month
    first and by component priority within a month, posting one entry per
    (month, component) slice. Whatever is left over is held as an advance
    payment liability until a later accrual draws it down.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = TransactionEntryLedger(db)
        self.accounts = ChartOfAccountsService(db)
        self.balances = BalanceAggregator(db)

    async def record_payment(self, payment_in: PaymentCreate) -> PaymentResult:
        amount = money(payment_in.amount)
        payment_id = payment_in.payment_id or f"PMT-{uuid.uuid4().hex[:12].upper()}"
        cash_account = receiving_account(payment_in.method)

        async with student_scope(self.db, payment_in.student_id) as student:
            try:
                receivable = await self.accounts.resolve_receivable(student.id)
                obligations, _ = await self.balances.student_obligations(student.id, as_of=payment_in.date)
                total_outstanding = sum((o.total_outstanding for o in obligations), ZERO)

                if total_outstanding <= 0 and payment_in.require_outstanding:
                    logger.warning(f"Rejected payment {payment_id} of {amount} from student {student.id}: nothing outstanding")
                    raise NoOutstandingBalanceError(student.id, amount, payment_in.date)

                result = PaymentResult(
                    payment_id=payment_id,
                    student_id=student.id,
                    amount=amount,
                    receivable_account=receivable.code,
                    allocation_type=receivable.allocation_type,
                )

                remaining = amount
                for obligation, component, applied in allocation_slices(obligations, amount):
                    entry = await self.ledger.post(self._allocation_entry(
                        payment_in, payment_id, student.name, receivable, cash_account,
                        obligation.month, component, applied, first_accrual(obligation),
                    ))
                    result.allocations.append(AllocationLine(
                        month=obligation.month,
                        component=component,
                        amount_applied=applied,
                        entry_id=entry.id,
                    ))
                    remaining -= applied

                if remaining > 0:
                    overpayment_month = obligations[-1].month if obligations else month_key(payment_in.date)
                    entry = await self.ledger.post(self._overpayment_entry(
                        payment_in, payment_id, student.name, receivable, cash_account,
                        overpayment_month, remaining,
                    ))
                    result.overpayment = remaining
                    result.overpayment_month = overpayment_month
                    result.overpayment_entry_id = entry.id

                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            f"Payment {payment_id} of {amount} from student {result.student_id} via {payment_in.method.value}: "
            f"{len(result.allocations)} allocations on {receivable.code}, overpayment {result.overpayment}"
        )
        return result

    async def apply_advances(self, student_id: str, on_date: date) -> List[AllocationLine]:
        """
        Draws a student's held advance down against months now outstanding,
        moving it from the advance liability onto the receivable one slice at
        a time. Returns the slices applied; an empty list when the student
        holds no advance or owes nothing.
        """
        held, _ = await self.balances.advance_balance(student_id)
        if held <= 0:
            return []

        applications = []
        async with student_scope(self.db, student_id) as student:
            try:
                # Re-read under the lock; a concurrent run may have used it.
                held, last_movement = await self.balances.advance_balance(student.id)
                applied_on = max(on_date, last_movement) if last_movement else on_date
                receivable = await self.accounts.resolve_receivable(student.id)
                obligations, _ = await self.balances.student_obligations(student.id, as_of=applied_on)

                for obligation, component, applied in allocation_slices(obligations, max(held, ZERO)):
                    entry = await self.ledger.post(self._advance_entry(
                        student.id, student.name, receivable, applied_on,
                        obligation.month, component, applied, first_accrual(obligation),
                    ))
                    applications.append(AllocationLine(
                        month=obligation.month,
                        component=component,
                        amount_applied=applied,
                        entry_id=entry.id,
                    ))

                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        if applications:
            used = sum((a.amount_applied for a in applications), ZERO)
            logger.info(
                f"Applied {used} of {held} held advance for student {student_id} to "
                f"{', '.join(sorted({a.month for a in applications}))} on {receivable.code}"
            )
        return applications

    def _allocation_entry(
        self,
        payment_in: PaymentCreate,
        payment_id: str,
        student_name: str,
        receivable: ReceivableAccount,
        cash_account: str,
        month: str,
        component: PaymentComponent,
        applied: Decimal,
        original_ar_transaction: Optional[str],
    ) -> TransactionEntryCreate:
        return TransactionEntryCreate(
            date=payment_in.date,
            description=f"Payment {payment_id} from {student_name}: {component.value} for {month}",
            reference=payment_id,
            source=EntrySource.PAYMENT.value,
            source_id=payment_id,
            entries=[
                LineItemCreate(
                    account_code=cash_account,
                    debit=applied,
                    description=f"{component.value.capitalize()} received from {student_name}",
                ),
                LineItemCreate(
                    account_code=receivable.code,
                    credit=applied,
                    description=f"{component.value.capitalize()} settled for {month}",
                    component=component,
                ),
            ],
            metadata=self._metadata(
                payment_in, payment_id, student_name, receivable, month, component, original_ar_transaction
            ),
        )

    def _overpayment_entry(
        self,
        payment_in: PaymentCreate,
        payment_id: str,
        student_name: str,
        receivable: ReceivableAccount,
        cash_account: str,
        month: str,
        remaining: Decimal,
    ) -> TransactionEntryCreate:
        return TransactionEntryCreate(
            date=payment_in.date,
            description=f"Advance payment {payment_id} from {student_name}",
            reference=payment_id,
            source=EntrySource.PAYMENT.value,
            source_id=payment_id,
            entries=[
                LineItemCreate(
                    account_code=cash_account,
                    debit=remaining,
                    description=f"Advance received from {student_name}",
                ),
                LineItemCreate(
                    account_code=ADVANCE_PAYMENTS,
                    credit=remaining,
                    description=f"Held as advance for {student_name}",
                ),
            ],
            metadata=self._metadata(payment_in, payment_id, student_name, receivable, month, PaymentComponent.OTHER),
        )

    def _advance_entry(
        self,
        student_id: str,
        student_name: str,
        receivable: ReceivableAccount,
        applied_on: date,
        month: str,
        component: PaymentComponent,
        applied: Decimal,
        original_ar_transaction: Optional[str],
    ) -> TransactionEntryCreate:
        reference = f"ADV-{student_id}-{month}"
        return TransactionEntryCreate(
            date=applied_on,
            description=f"Advance from {student_name} applied: {component.value} for {month}",
            reference=reference,
            source=EntrySource.PAYMENT.value,
            source_id=reference,
            entries=[
                LineItemCreate(
                    account_code=ADVANCE_PAYMENTS,
                    debit=applied,
                    description=f"Advance released for {student_name}",
                ),
                LineItemCreate(
                    account_code=receivable.code,
                    credit=applied,
                    description=f"{component.value.capitalize()} settled for {month} from advance",
                    component=component,
                ),
            ],
            metadata=PaymentMetadata(
                student_id=student_id,
                student_name=student_name,
                month_settled=month,
                payment_type=component,
                allocation_type=receivable.allocation_type,
                payment_id=reference,
                original_ar_transaction=original_ar_transaction,
            ),
        )

    def _metadata(
        self,
        payment_in: PaymentCreate,
        payment_id: str,
        student_name: str,
        receivable: ReceivableAccount,
        month: str,
        component: PaymentComponent,
        original_ar_transaction: Optional[str] = None,
    ) -> PaymentMetadata:
        return PaymentMetadata(
            student_id=payment_in.student_id,
            student_name=student_name,
            month_settled=month,
            payment_type=component,
            allocation_type=receivable.allocation_type,
            payment_id=payment_id,
            payment_method=payment_in.method,
            original_ar_transaction=original_ar_transaction,
        )


async def record_payment(
    db: AsyncSession,
    student_id: str,
    amount,
    method: PaymentMethod,
    payment_date: date,
    require_outstanding: bool = False,
    payment_id: Optional[str] = None,
) -> PaymentResult:
    return await PaymentAllocator(db).record_payment(PaymentCreate(
        student_id=student_id,
        amount=amount,
        method=method,
        date=payment_date,
        require_outstanding=require_outstanding,
        payment_id=payment_id,
    ))
