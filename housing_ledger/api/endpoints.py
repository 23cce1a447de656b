
from datetime import date
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from housing_ledger.db.session import get_db
from housing_ledger.exceptions import EntryNotFoundError
from housing_ledger.models import AccountType, EntryStatus
from housing_ledger.schemas import (
    AccountBalance,
    AccountCreate,
    AccountLineResponse,
    AccountResponse,
    AccrualCreate,
    AccrualResult,
    BalanceSheet,
    CashFlowStatement,
    ExpenseCreate,
    IncomeStatement,
    IntegrityReport,
    LedgerFilter,
    MONTH_KEY_PATTERN,
    PaymentCreate,
    PaymentResult,
    ReconciliationReport,
    ResidenceAccrualCreate,
    ResidenceAccrualResult,
    ResidenceCreate,
    ResidenceResponse,
    StudentCreate,
    StudentOutstanding,
    StudentResponse,
    TransactionEntryCreate,
    TransactionEntryResponse,
    TrialBalance,
)
from housing_ledger.services.accounts import ChartOfAccountsService
from housing_ledger.services.accruals import AccrualService
from housing_ledger.services.balances import BalanceAggregator
from housing_ledger.services.expenses import ExpenseService
from housing_ledger.services.ledger import TransactionEntryLedger
from housing_ledger.services.payments import PaymentAllocator
from housing_ledger.services.reconciliation import ReconciliationService
from housing_ledger.services.residences import ResidenceService

router = APIRouter()

# Chart of accounts

@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def create_account(account: AccountCreate, db: AsyncSession = Depends(get_db)):
    service = ChartOfAccountsService(db)
    return await service.create_account(account)

@router.post("/accounts/seed")
async def seed_accounts(db: AsyncSession = Depends(get_db)):
    service = ChartOfAccountsService(db)
    added = await service.seed_default_chart()
    return {"added": added}

@router.get("/accounts", response_model=List[AccountResponse])
async def list_accounts(
    type: Optional[AccountType] = None,
    code_prefix: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    service = ChartOfAccountsService(db)
    return await service.list_accounts(type, code_prefix)

@router.get("/accounts/{code}", response_model=AccountResponse)
async def get_account(code: str, db: AsyncSession = Depends(get_db)):
    service = ChartOfAccountsService(db)
    return await service.get_account(code)

@router.get("/accounts/{code}/lines", response_model=List[AccountLineResponse])
async def get_account_lines(code: str, include_deleted: bool = False, db: AsyncSession = Depends(get_db)):
    ledger = TransactionEntryLedger(db)
    lines = await ledger.account_lines(code, include_deleted=include_deleted)
    return [
        AccountLineResponse(
            entry_id=line.entry_id,
            date=line.entry.date,
            status=line.entry.status,
            account_code=line.account_code,
            account_name=line.account_name,
            account_type=line.account_type,
            debit=line.debit,
            credit=line.credit,
            description=line.description,
            component=line.component,
        )
        for line in lines
    ]

# Residences and students

@router.post("/residences", response_model=ResidenceResponse, status_code=status.HTTP_201_CREATED)
async def create_residence(residence: ResidenceCreate, db: AsyncSession = Depends(get_db)):
    service = ResidenceService(db)
    return await service.create_residence(residence)

@router.get("/residences/{residence_id}", response_model=ResidenceResponse)
async def get_residence(residence_id: str, db: AsyncSession = Depends(get_db)):
    service = ResidenceService(db)
    return await service.get_residence(residence_id)

@router.post("/students", response_model=StudentResponse, status_code=status.HTTP_201_CREATED)
async def create_student(student: StudentCreate, db: AsyncSession = Depends(get_db)):
    service = ResidenceService(db)
    return await service.create_student(student)

@router.get("/students/{student_id}/outstanding", response_model=StudentOutstanding)
async def get_student_outstanding(
    student_id: str,
    as_of_month: str = Query(..., pattern=MONTH_KEY_PATTERN),
    db: AsyncSession = Depends(get_db),
):
    await ResidenceService(db).get_student(student_id)
    aggregator = BalanceAggregator(db)
    return await aggregator.monthly_outstanding_balances(student_id, as_of_month)

# Ledger entries

@router.post("/entries", response_model=TransactionEntryResponse, status_code=status.HTTP_201_CREATED)
async def post_entry(entry: TransactionEntryCreate, db: AsyncSession = Depends(get_db)):
    ledger = TransactionEntryLedger(db)
    return await ledger.record(entry)

@router.get("/entries", response_model=List[TransactionEntryResponse])
async def find_entries(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    entry_status: Optional[EntryStatus] = Query(default=EntryStatus.POSTED, alias="status"),
    source: Optional[str] = None,
    source_id: Optional[str] = None,
    student_id: Optional[str] = None,
    account_code_prefix: Optional[str] = None,
    metadata_field: Optional[str] = None,
    metadata_value: Optional[str] = None,
    limit: Optional[int] = Query(default=None, gt=0),
    db: AsyncSession = Depends(get_db),
):
    ledger = TransactionEntryLedger(db)
    return await ledger.find(LedgerFilter(
        date_from=date_from,
        date_to=date_to,
        status=entry_status,
        source=source,
        source_id=source_id,
        student_id=student_id,
        account_code_prefix=account_code_prefix,
        metadata_field=metadata_field,
        metadata_value=metadata_value,
        limit=limit,
    ))

@router.get("/entries/{reference}", response_model=TransactionEntryResponse)
async def get_entry(reference: str, db: AsyncSession = Depends(get_db)):
    ledger = TransactionEntryLedger(db)
    entry = await ledger.find_by_reference(reference)
    if not entry:
        raise EntryNotFoundError(reference)
    return entry

@router.delete("/entries/{entry_id}", response_model=TransactionEntryResponse)
async def delete_entry(entry_id: UUID, db: AsyncSession = Depends(get_db)):
    ledger = TransactionEntryLedger(db)
    return await ledger.soft_delete(entry_id)

# Accruals, payments, expenses

@router.post("/accruals", response_model=AccrualResult)
async def create_accrual(accrual: AccrualCreate, db: AsyncSession = Depends(get_db)):
    service = AccrualService(db)
    entry, created = await service.create_accrual(accrual.student_id, accrual.residence_id, accrual.month, accrual.year)
    return AccrualResult(created=created, entry=TransactionEntryResponse.model_validate(entry))

@router.post("/residences/{residence_id}/accruals", response_model=ResidenceAccrualResult)
async def accrue_residence(residence_id: str, run: ResidenceAccrualCreate, db: AsyncSession = Depends(get_db)):
    service = AccrualService(db)
    return await service.accrue_residence(residence_id, run.month, run.year)

@router.post("/payments", response_model=PaymentResult, status_code=status.HTTP_201_CREATED)
async def record_payment(payment: PaymentCreate, db: AsyncSession = Depends(get_db)):
    allocator = PaymentAllocator(db)
    return await allocator.record_payment(payment)

@router.post("/expenses", response_model=TransactionEntryResponse, status_code=status.HTTP_201_CREATED)
async def record_expense(expense: ExpenseCreate, db: AsyncSession = Depends(get_db)):
    service = ExpenseService(db)
    return await service.record_expense(expense)

# Reports

@router.get("/reports/account-balances", response_model=List[AccountBalance])
async def account_balances(as_of: date, db: AsyncSession = Depends(get_db)):
    return await BalanceAggregator(db).account_balances_as_of(as_of)

@router.get("/reports/balance-sheet", response_model=BalanceSheet)
async def balance_sheet(as_of: date, db: AsyncSession = Depends(get_db)):
    return await BalanceAggregator(db).balance_sheet_as_of(as_of)

@router.get("/reports/trial-balance", response_model=TrialBalance)
async def trial_balance(as_of: date, db: AsyncSession = Depends(get_db)):
    return await BalanceAggregator(db).trial_balance(as_of)

@router.get("/reports/income-statement", response_model=IncomeStatement)
async def income_statement(
    month: int = Query(..., ge=1, le=12),
    year: int = Query(..., ge=2000, le=2100),
    db: AsyncSession = Depends(get_db),
):
    return await BalanceAggregator(db).income_statement(month, year)

@router.get("/reports/cash-flow", response_model=CashFlowStatement)
async def cash_flow(
    month: int = Query(..., ge=1, le=12),
    year: int = Query(..., ge=2000, le=2100),
    db: AsyncSession = Depends(get_db),
):
    return await BalanceAggregator(db).cash_flow_statement(month, year)

# Reconciliation

@router.post("/reconciliation/month-settled", response_model=ReconciliationReport)
async def backfill_month_settled(dry_run: bool = False, db: AsyncSession = Depends(get_db)):
    service = ReconciliationService(db)
    return await service.backfill_month_settled(dry_run=dry_run)

@router.get("/reconciliation/integrity", response_model=IntegrityReport)
async def verify_integrity(db: AsyncSession = Depends(get_db)):
    service = ReconciliationService(db)
    return await service.verify_integrity()
