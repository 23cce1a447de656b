import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from housing_ledger.exceptions import AccountNotFoundError, DuplicateAccountError
from housing_ledger.models import (
    Account,
    AccountKind,
    AccountType,
    EntryStatus,
    LineItem,
    TransactionEntry,
)
from housing_ledger.schemas import AccountCreate, ReceivableAccount

logger = logging.getLogger(__name__)

CASH_ACCOUNT = "1000"
BANK_ACCOUNT = "1001"
GENERAL_RECEIVABLE = "1100"
ACCOUNTS_PAYABLE = "2000"
TENANT_DEPOSITS = "2020"
ADVANCE_PAYMENTS = "2200"
RENTAL_INCOME = "4000"
ADMIN_INCOME = "4100"

DEFAULT_CHART = [
    ("1000", "Cash", AccountType.ASSET),
    ("1001", "Bank Account", AccountType.ASSET),
    ("1100", "Accounts Receivable - Tenants", AccountType.ASSET),
    ("2000", "Accounts Payable", AccountType.LIABILITY),
    ("2020", "Tenant Deposits Held", AccountType.LIABILITY),
    ("2200", "Advance Payment Liability", AccountType.LIABILITY),
    ("3000", "Owner's Capital", AccountType.EQUITY),
    ("4000", "Rental Income - Residential", AccountType.INCOME),
    ("4100", "Administrative Income", AccountType.INCOME),
    ("4200", "Utilities Income", AccountType.INCOME),
    ("4900", "Other Income", AccountType.INCOME),
    ("5000", "Maintenance Expense", AccountType.EXPENSE),
    ("5100", "Utilities Expense", AccountType.EXPENSE),
    ("5200", "Cleaning Expense", AccountType.EXPENSE),
    ("5900", "General Expense", AccountType.EXPENSE),
]


def student_receivable_code(student_id: str) -> str:
    return f"{GENERAL_RECEIVABLE}-{student_id}"


class ChartOfAccountsService:
    """
    Registry of accounts every ledger line must reference, and the single
    place where a student's receivable account is resolved.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_account(self, account_in: AccountCreate) -> Account:
        existing = await self.db.get(Account, account_in.code)
        if existing:
            raise DuplicateAccountError(account_in.code)

        account = Account(code=account_in.code, name=account_in.name, type=account_in.type)
        self.db.add(account)
        await self.db.commit()
        await self.db.refresh(account)
        logger.info(f"Created account: {account.code} - {account.name} ({account.type.value})")
        return account

    async def get_account(self, code: str) -> Account:
        account = await self.db.get(Account, code)
        if not account:
            logger.warning(f"Account lookup failed: {code}")
            raise AccountNotFoundError(code)
        return account

    async def list_accounts(
        self, account_type: Optional[AccountType] = None, code_prefix: Optional[str] = None
    ) -> List[Account]:
        query = select(Account).order_by(Account.code)
        if account_type:
            query = query.where(Account.type == account_type)
        if code_prefix:
            query = query.where(Account.code.startswith(code_prefix, autoescape=True))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def require_accounts(self, codes: Iterable[str]) -> Dict[str, Account]:
        """
        Load every code in one query. Raises AccountNotFoundError naming the
        first code that is not in the chart.
        """
        wanted = list(dict.fromkeys(codes))
        result = await self.db.execute(select(Account).where(Account.code.in_(wanted)))
        found = {account.code: account for account in result.scalars().all()}
        for code in wanted:
            if code not in found:
                logger.warning(f"Account lookup failed: {code}")
                raise AccountNotFoundError(code)
        return found

    async def seed_default_chart(self) -> int:
        """
        Insert any missing well-known accounts. Returns how many were added.
        """
        result = await self.db.execute(select(Account.code))
        present = set(result.scalars().all())
        added = 0
        for code, name, account_type in DEFAULT_CHART:
            if code not in present:
                self.db.add(Account(code=code, name=name, type=account_type))
                added += 1
        await self.db.commit()
        if added:
            logger.info(f"Seeded {added} default accounts")
        return added

    async def open_student_receivable(self, student_id: str, student_name: Optional[str] = None) -> Account:
        """
        Register 1100-<studentId> if it is not already in the chart. Flushes
        only; the caller's operation commits.
        """
        code = student_receivable_code(student_id)
        account = await self.db.get(Account, code)
        if account:
            return account
        account = Account(
            code=code,
            name=f"Accounts Receivable - {student_name or student_id}",
            type=AccountType.ASSET,
        )
        self.db.add(account)
        await self.db.flush()
        logger.info(f"Opened student receivable account {code}")
        return account

    async def has_activity(self, account_code: str, student_id: Optional[str] = None) -> bool:
        query = (
            select(LineItem.id)
            .join(TransactionEntry, LineItem.entry_id == TransactionEntry.id)
            .where(
                LineItem.account_code == account_code,
                TransactionEntry.status == EntryStatus.POSTED,
            )
            .limit(1)
        )
        if student_id is not None:
            query = query.where(TransactionEntry.student_id == student_id)
        result = await self.db.execute(query)
        return result.first() is not None

    async def resolve_receivable(self, student_id: str) -> ReceivableAccount:
        """
        The student's sub-account (1100-<studentId>) when it is registered and
        has posted activity, otherwise the general 1100 account.
        """
        code = student_receivable_code(student_id)
        account = await self.db.get(Account, code)
        if account and await self.has_activity(code):
            return ReceivableAccount(kind=AccountKind.STUDENT_RECEIVABLE.value, code=code, name=account.name)

        general = await self.get_account(GENERAL_RECEIVABLE)
        logger.debug(f"Student {student_id} resolves to general receivable {GENERAL_RECEIVABLE}")
        return ReceivableAccount(kind=AccountKind.GENERAL_RECEIVABLE.value, code=general.code, name=general.name)
