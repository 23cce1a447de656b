import logging

from sqlalchemy.ext.asyncio import AsyncSession

from housing_ledger.core.money import money
from housing_ledger.exceptions import InvalidEntryError
from housing_ledger.models import AccountType, EntrySource, TransactionEntry
from housing_ledger.schemas import ExpenseCreate, ExpenseMetadata, LineItemCreate, TransactionEntryCreate
from housing_ledger.services.accounts import ACCOUNTS_PAYABLE, CASH_ACCOUNT, ChartOfAccountsService
from housing_ledger.services.ledger import TransactionEntryLedger

logger = logging.getLogger(__name__)


class ExpenseService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = TransactionEntryLedger(db)
        self.accounts = ChartOfAccountsService(db)

    async def record_expense(self, expense_in: ExpenseCreate) -> TransactionEntry:
        """
        Debits the expense account and credits Cash when already paid,
        otherwise Accounts Payable. Nothing is posted if the account is
        missing or is not an expense account.
        """
        account = await self.accounts.get_account(expense_in.account_code)
        if account.type != AccountType.EXPENSE:
            raise InvalidEntryError(
                f"Account {account.code} ({account.name}) is {account.type.value}, not Expense; "
                f"cannot record {expense_in.amount} for vendor {expense_in.vendor_id}",
                context={"account_code": account.code, "account_type": account.type.value},
            )

        amount = money(expense_in.amount)
        credit_account = CASH_ACCOUNT if expense_in.paid else ACCOUNTS_PAYABLE
        description = expense_in.description or f"{account.name} - vendor {expense_in.vendor_id}"

        entry = await self.ledger.record(TransactionEntryCreate(
            date=expense_in.date,
            description=description,
            reference=expense_in.reference,
            source=EntrySource.EXPENSE.value,
            source_id=expense_in.vendor_id,
            entries=[
                LineItemCreate(account_code=account.code, debit=amount, description=description),
                LineItemCreate(
                    account_code=credit_account,
                    credit=amount,
                    description="Paid in cash" if expense_in.paid else f"Owed to vendor {expense_in.vendor_id}",
                ),
            ],
            metadata=ExpenseMetadata(vendor_id=expense_in.vendor_id),
        ))
        logger.info(f"Recorded expense {entry.transaction_id}: {amount} to {account.code}, credit {credit_account}")
        return entry
