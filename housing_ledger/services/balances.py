"""
Balance aggregation: account balances, balance sheet, trial balance, income
statement, cash flow and per-student monthly obligations. Every figure is
recomputed from the posted ledger on each call; nothing here is cached.
"""
import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from housing_ledger.core.config import settings
from housing_ledger.core.money import ZERO, money
from housing_ledger.core.periods import format_month, month_bounds, month_key, parse_month_key
from housing_ledger.models import (
    COMPONENT_PRIORITY,
    Account,
    AccountType,
    EntrySource,
    EntryStatus,
    LineItem,
    PaymentComponent,
    TransactionEntry,
)
from housing_ledger.schemas import (
    AccountBalance,
    BalanceSheet,
    CashFlowLine,
    CashFlowStatement,
    ComponentBalance,
    ComponentBalanceResponse,
    IncomeStatement,
    MonthlyObligation,
    StudentOutstanding,
    TrialBalance,
)
from housing_ledger.services.accounts import (
    ADVANCE_PAYMENTS,
    BANK_ACCOUNT,
    CASH_ACCOUNT,
    GENERAL_RECEIVABLE,
    student_receivable_code,
)

logger = logging.getLogger(__name__)

DEBIT_NORMAL = {AccountType.ASSET, AccountType.EXPENSE}
CASH_ACCOUNTS = [CASH_ACCOUNT, BANK_ACCOUNT]


def signed_balance(account_type: AccountType, debit_total: Decimal, credit_total: Decimal) -> Decimal:
    if account_type in DEBIT_NORMAL:
        return debit_total - credit_total
    return credit_total - debit_total


def classify_component(line: LineItem) -> PaymentComponent:
    """
    Component of a receivable line. Lines written before components were
    tagged are classified from their description.
    """
    if line.component:
        return PaymentComponent(line.component)
    description = (line.description or "").lower()
    if "admin" in description:
        return PaymentComponent.ADMIN
    if "deposit" in description:
        return PaymentComponent.DEPOSIT
    if "utilit" in description:
        return PaymentComponent.UTILITIES
    return PaymentComponent.RENT


def is_receivable(account_code: str) -> bool:
    return account_code.startswith(GENERAL_RECEIVABLE)


class _MonthBucket:
    def __init__(self, month: str):
        self.month = month
        self.components: Dict[PaymentComponent, ComponentBalance] = {}
        self.accrual_entry_ids = []

    def component(self, component: PaymentComponent) -> ComponentBalance:
        if component not in self.components:
            self.components[component] = ComponentBalance()
        return self.components[component]

    def to_obligation(self) -> MonthlyObligation:
        ordered = [c for c in COMPONENT_PRIORITY if c in self.components]
        components = {
            c: ComponentBalanceResponse(
                owed=self.components[c].owed,
                paid=self.components[c].paid,
                outstanding=self.components[c].outstanding,
            )
            for c in ordered
        }
        total_owed = sum((b.owed for b in components.values()), ZERO)
        total_paid = sum((b.paid for b in components.values()), ZERO)
        total_outstanding = sum((b.outstanding for b in components.values()), ZERO)
        return MonthlyObligation(
            month=self.month,
            components=components,
            total_owed=total_owed,
            total_paid=total_paid,
            total_outstanding=total_outstanding,
            fully_settled=total_outstanding == ZERO,
            accrual_entry_ids=self.accrual_entry_ids,
        )


class BalanceAggregator:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _balances(self, date_from: Optional[date], date_to: date) -> List[AccountBalance]:
        query = (
            select(
                Account.code,
                Account.name,
                Account.type,
                func.coalesce(func.sum(LineItem.debit), 0),
                func.coalesce(func.sum(LineItem.credit), 0),
            )
            .join(LineItem, LineItem.account_code == Account.code)
            .join(TransactionEntry, LineItem.entry_id == TransactionEntry.id)
            .where(TransactionEntry.status == EntryStatus.POSTED, TransactionEntry.date <= date_to)
            .group_by(Account.code, Account.name, Account.type)
            .order_by(Account.code)
        )
        if date_from:
            query = query.where(TransactionEntry.date >= date_from)

        result = await self.db.execute(query)
        balances = []
        for code, name, account_type, debit_sum, credit_sum in result.all():
            debit_total, credit_total = money(debit_sum), money(credit_sum)
            balances.append(
                AccountBalance(
                    account_code=code,
                    account_name=name,
                    account_type=account_type,
                    debit_total=debit_total,
                    credit_total=credit_total,
                    balance=signed_balance(account_type, debit_total, credit_total),
                )
            )
        return balances

    async def account_balances_as_of(self, as_of: date) -> List[AccountBalance]:
        balances = await self._balances(None, as_of)
        logger.debug(f"Computed {len(balances)} account balances as of {as_of}")
        return balances

    async def balance_sheet_as_of(self, as_of: date) -> BalanceSheet:
        """
        Assets = Liabilities + Equity, with cumulative Income - Expense folded
        into Equity as retained earnings. A mismatch is reported in
        `discrepancy`, not raised.
        """
        balances = await self.account_balances_as_of(as_of)
        by_type = defaultdict(list)
        for balance in balances:
            by_type[balance.account_type].append(balance)

        def total(account_type):
            return sum((b.balance for b in by_type[account_type]), ZERO)

        total_assets = total(AccountType.ASSET)
        total_liabilities = total(AccountType.LIABILITY)
        retained_earnings = total(AccountType.INCOME) - total(AccountType.EXPENSE)
        total_equity = total(AccountType.EQUITY) + retained_earnings
        discrepancy = total_assets - (total_liabilities + total_equity)
        is_balanced = abs(discrepancy) <= settings.BALANCE_TOLERANCE

        if not is_balanced:
            logger.warning(
                f"Balance sheet as of {as_of} does not balance: assets {total_assets}, "
                f"liabilities {total_liabilities}, equity {total_equity}, discrepancy {discrepancy}"
            )

        return BalanceSheet(
            as_of=as_of,
            assets=by_type[AccountType.ASSET],
            liabilities=by_type[AccountType.LIABILITY],
            equity=by_type[AccountType.EQUITY],
            total_assets=total_assets,
            total_liabilities=total_liabilities,
            total_equity=total_equity,
            retained_earnings=retained_earnings,
            discrepancy=discrepancy,
            is_balanced=is_balanced,
        )

    async def trial_balance(self, as_of: date) -> TrialBalance:
        balances = await self.account_balances_as_of(as_of)
        total_debit = sum((b.debit_total for b in balances), ZERO)
        total_credit = sum((b.credit_total for b in balances), ZERO)
        difference = total_debit - total_credit
        return TrialBalance(
            as_of=as_of,
            accounts=balances,
            total_debit=total_debit,
            total_credit=total_credit,
            difference=difference,
            is_balanced=abs(difference) <= settings.BALANCE_TOLERANCE,
        )

    async def income_statement(self, month: int, year: int) -> IncomeStatement:
        """
        Income and expense activity of entries dated within one month.
        """
        period_start, period_end = month_bounds(year, month)
        balances = await self._balances(period_start, period_end)
        income = [b for b in balances if b.account_type == AccountType.INCOME]
        expenses = [b for b in balances if b.account_type == AccountType.EXPENSE]
        total_income = sum((b.balance for b in income), ZERO)
        total_expenses = sum((b.balance for b in expenses), ZERO)
        return IncomeStatement(
            month=month,
            year=year,
            period_start=period_start,
            period_end=period_end,
            income=income,
            expenses=expenses,
            total_income=total_income,
            total_expenses=total_expenses,
            net_income=total_income - total_expenses,
        )

    async def _cash_position(self, before: date) -> Decimal:
        query = (
            select(func.coalesce(func.sum(LineItem.debit), 0), func.coalesce(func.sum(LineItem.credit), 0))
            .join(TransactionEntry, LineItem.entry_id == TransactionEntry.id)
            .where(
                TransactionEntry.status == EntryStatus.POSTED,
                TransactionEntry.date < before,
                LineItem.account_code.in_(CASH_ACCOUNTS),
            )
        )
        debit_sum, credit_sum = (await self.db.execute(query)).one()
        return money(debit_sum) - money(credit_sum)

    async def cash_flow_statement(self, month: int, year: int) -> CashFlowStatement:
        """
        Movements on Cash and Bank during one month, grouped by entry source.

        Each entry contributes its net effect on the two accounts, so a
        transfer between them nets to zero and is left out. Closing cash is
        opening cash plus the net change.
        """
        period_start, period_end = month_bounds(year, month)
        opening_cash = await self._cash_position(period_start)

        query = (
            select(
                TransactionEntry.id,
                TransactionEntry.source,
                func.coalesce(func.sum(LineItem.debit), 0),
                func.coalesce(func.sum(LineItem.credit), 0),
            )
            .join(LineItem, LineItem.entry_id == TransactionEntry.id)
            .where(
                TransactionEntry.status == EntryStatus.POSTED,
                TransactionEntry.date >= period_start,
                TransactionEntry.date <= period_end,
                LineItem.account_code.in_(CASH_ACCOUNTS),
            )
            .group_by(TransactionEntry.id, TransactionEntry.source)
        )
        result = await self.db.execute(query)

        inflows = defaultdict(lambda: ZERO)
        outflows = defaultdict(lambda: ZERO)
        counts = defaultdict(int)
        for _, source, debit_sum, credit_sum in result.all():
            net = money(debit_sum) - money(credit_sum)
            if net > 0:
                inflows[source] += net
                counts[(source, "in")] += 1
            elif net < 0:
                outflows[source] -= net
                counts[(source, "out")] += 1

        inflow_lines = [
            CashFlowLine(source=source, amount=amount, entry_count=counts[(source, "in")])
            for source, amount in sorted(inflows.items())
        ]
        outflow_lines = [
            CashFlowLine(source=source, amount=amount, entry_count=counts[(source, "out")])
            for source, amount in sorted(outflows.items())
        ]
        total_inflows = sum(inflows.values(), ZERO)
        total_outflows = sum(outflows.values(), ZERO)
        net_change = total_inflows - total_outflows

        logger.debug(
            f"Cash flow {format_month(year, month)}: opening {opening_cash}, in {total_inflows}, out {total_outflows}"
        )
        return CashFlowStatement(
            month=month,
            year=year,
            period_start=period_start,
            period_end=period_end,
            cash_accounts=CASH_ACCOUNTS,
            opening_cash=opening_cash,
            inflows=inflow_lines,
            outflows=outflow_lines,
            total_inflows=total_inflows,
            total_outflows=total_outflows,
            net_change=net_change,
            closing_cash=opening_cash + net_change,
        )

    async def advance_balance(self, student_id: str) -> Tuple[Decimal, Optional[date]]:
        """
        Amount a student holds on the advance payment liability and the date
        of its latest movement.
        """
        query = (
            select(
                func.coalesce(func.sum(LineItem.credit), 0),
                func.coalesce(func.sum(LineItem.debit), 0),
                func.max(TransactionEntry.date),
            )
            .join(TransactionEntry, LineItem.entry_id == TransactionEntry.id)
            .where(
                TransactionEntry.status == EntryStatus.POSTED,
                TransactionEntry.student_id == student_id,
                LineItem.account_code == ADVANCE_PAYMENTS,
            )
        )
        credit_sum, debit_sum, latest = (await self.db.execute(query)).one()
        return money(credit_sum) - money(debit_sum), latest

    async def _student_entries(self, student_id: str, source: EntrySource, as_of: Optional[date] = None):
        # Legacy accruals may only be identifiable through the student's sub-account.
        query = (
            select(TransactionEntry)
            .options(selectinload(TransactionEntry.lines))
            .where(
                TransactionEntry.status == EntryStatus.POSTED,
                TransactionEntry.source == source.value,
                or_(
                    TransactionEntry.student_id == student_id,
                    TransactionEntry.lines.any(LineItem.account_code == student_receivable_code(student_id)),
                ),
            )
            .order_by(TransactionEntry.date, TransactionEntry.created_at)
        )
        if as_of:
            query = query.where(TransactionEntry.date <= as_of)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def student_obligations(
        self,
        student_id: str,
        as_of: Optional[date] = None,
        through_month: Optional[str] = None,
        exclude_entry_ids=(),
    ) -> Tuple[List[MonthlyObligation], Decimal]:
        """
        Rebuilds owed/paid per (month, component) for one student.

        Owed comes from receivable debits of accruals dated on or before
        `as_of`, grouped by accrual month. Paid comes from receivable credits
        of payments grouped by metadata monthSettled, whatever the payment's
        own date. Returns obligations oldest first and the total paid that
        carries no monthSettled.
        """
        buckets: Dict[str, _MonthBucket] = {}

        def bucket(month: str) -> _MonthBucket:
            if month not in buckets:
                buckets[month] = _MonthBucket(month)
            return buckets[month]

        for accrual in await self._student_entries(student_id, EntrySource.RENTAL_ACCRUAL, as_of):
            if accrual.accrual_year and accrual.accrual_month:
                month = format_month(accrual.accrual_year, accrual.accrual_month)
            else:
                month = month_key(accrual.date)
            if through_month and month > through_month:
                continue
            target = bucket(month)
            target.accrual_entry_ids.append(accrual.id)
            for line in accrual.lines:
                if is_receivable(line.account_code) and money(line.debit) > 0:
                    target.component(classify_component(line)).owed += money(line.debit)

        unattributed = ZERO
        for payment in await self._student_entries(student_id, EntrySource.PAYMENT):
            if payment.id in exclude_entry_ids:
                continue
            for line in payment.lines:
                if not is_receivable(line.account_code) or money(line.credit) <= 0:
                    continue
                if not payment.month_settled:
                    unattributed += money(line.credit)
                    continue
                if through_month and payment.month_settled > through_month:
                    continue
                try:
                    component = PaymentComponent(payment.payment_type)
                except ValueError:
                    component = classify_component(line)
                bucket(payment.month_settled).component(component).paid += money(line.credit)

        obligations = [buckets[month].to_obligation() for month in sorted(buckets)]
        return obligations, unattributed

    async def monthly_outstanding_balances(self, student_id: str, as_of_month: str) -> StudentOutstanding:
        year, month = parse_month_key(as_of_month)
        _, month_end = month_bounds(year, month)
        obligations, unattributed = await self.student_obligations(
            student_id, as_of=month_end, through_month=as_of_month
        )
        if unattributed > 0:
            logger.warning(f"Student {student_id} has {unattributed} in payments without monthSettled")
        return StudentOutstanding(
            student_id=student_id,
            as_of_month=as_of_month,
            months=obligations,
            total_outstanding=sum((o.total_outstanding for o in obligations), ZERO),
            unattributed_paid=unattributed,
        )
