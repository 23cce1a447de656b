
from uuid import UUID
from decimal import Decimal
from typing import Annotated, Optional, List, Dict, Any, Literal, Union
from datetime import date, datetime
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from housing_ledger.models import (
    AccountType,
    AllocationType,
    EntrySource,
    EntryStatus,
    PaymentComponent,
    PaymentMethod,
    ResolutionStrategy,
)

MONTH_KEY_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"

# Account Schemas
class AccountCreate(BaseModel):
    """
    Schema for registering an account in the chart of accounts.
    """
    code: str = Field(..., min_length=1, max_length=64)
    name: str
    type: AccountType

class AccountResponse(BaseModel):
    code: str
    name: str
    type: AccountType
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class ReceivableAccount(BaseModel):
    """
    Outcome of receivable resolution for one student.
    """
    kind: Literal["GeneralReceivable", "StudentReceivable"]
    code: str
    name: str

    @property
    def allocation_type(self) -> AllocationType:
        if self.kind == "StudentReceivable":
            return AllocationType.STUDENT_SPECIFIC
        return AllocationType.GENERAL

# Metadata Schemas
class _MetadataBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    extra: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

class AccrualMetadata(_MetadataBase):
    kind: Literal["accrual"] = "accrual"
    student_id: str
    student_name: Optional[str] = None
    residence_id: Optional[str] = None
    accrual_month: int = Field(..., ge=1, le=12)
    accrual_year: int
    type: str = "monthly"

class PaymentMetadata(_MetadataBase):
    kind: Literal["payment"] = "payment"
    student_id: str
    student_name: Optional[str] = None
    month_settled: Optional[str] = Field(default=None, pattern=MONTH_KEY_PATTERN)
    payment_type: Optional[PaymentComponent] = None
    allocation_type: Optional[AllocationType] = None
    payment_id: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    original_ar_transaction: Optional[str] = Field(default=None, alias="originalARTransaction")

class ExpenseMetadata(_MetadataBase):
    kind: Literal["expense"] = "expense"
    vendor_id: str

class ManualMetadata(_MetadataBase):
    kind: Literal["manual"] = "manual"
    student_id: Optional[str] = None

EntryMetadata = Annotated[
    Union[AccrualMetadata, PaymentMetadata, ExpenseMetadata, ManualMetadata],
    Field(discriminator="kind"),
]

# Ledger Entry Schemas
class LineItemCreate(BaseModel):
    """
    One debit or credit line. Name and type default to the chart's values.
    """
    account_code: str
    account_name: Optional[str] = None
    account_type: Optional[AccountType] = None
    debit: Decimal = Field(default=Decimal("0"), ge=0)
    credit: Decimal = Field(default=Decimal("0"), ge=0)
    description: Optional[str] = None
    component: Optional[PaymentComponent] = None

class LineItemResponse(BaseModel):
    account_code: str
    account_name: str
    account_type: AccountType
    debit: Decimal
    credit: Decimal
    description: Optional[str] = None
    component: Optional[PaymentComponent] = None

    class Config:
        from_attributes = True

class AccountLineResponse(LineItemResponse):
    """
    A line as seen from one account's ledger, with its entry's date.
    """
    entry_id: UUID
    date: date
    status: EntryStatus

class TransactionEntryCreate(BaseModel):
    """
    A balanced double-entry record to post. transaction_id is generated
    when omitted.
    """
    transaction_id: Optional[str] = None
    date: date
    description: Optional[str] = None
    reference: Optional[str] = None
    source: str = EntrySource.MANUAL.value
    source_id: Optional[str] = None
    entries: List[LineItemCreate]
    metadata: Optional[EntryMetadata] = None

class TransactionEntryResponse(BaseModel):
    id: UUID
    transaction_id: str
    date: date
    description: Optional[str] = None
    reference: Optional[str] = None
    source: str
    source_id: Optional[str] = None
    status: EntryStatus
    total_debit: Decimal
    total_credit: Decimal
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("metadata_json", "metadata"))
    created_at: Optional[datetime] = None
    entries: List[LineItemResponse] = Field(default_factory=list, validation_alias=AliasChoices("lines", "entries"))

    class Config:
        from_attributes = True

class LedgerFilter(BaseModel):
    """
    Query for TransactionEntryLedger.find(). status=None matches every status.
    """
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    status: Optional[EntryStatus] = EntryStatus.POSTED
    source: Optional[str] = None
    source_id: Optional[str] = None
    student_id: Optional[str] = None
    account_code_prefix: Optional[str] = None
    metadata_field: Optional[str] = None
    metadata_value: Optional[str] = None
    month_settled_missing: bool = False
    limit: Optional[int] = Field(default=None, gt=0)

# Residence / Student Schemas
class RoomCreate(BaseModel):
    name: str
    price: Optional[Decimal] = Field(default=None, ge=0)

class ResidenceCreate(BaseModel):
    id: str
    name: str
    admin_fee: Decimal = Field(default=Decimal("0"), ge=0)
    rooms: List[RoomCreate] = []

class RoomResponse(BaseModel):
    name: str
    price: Optional[Decimal] = None

    class Config:
        from_attributes = True

class ResidenceResponse(BaseModel):
    id: str
    name: str
    admin_fee: Decimal
    rooms: List[RoomResponse] = []

    class Config:
        from_attributes = True

class StudentCreate(BaseModel):
    id: str
    name: str
    residence_id: Optional[str] = None
    room_name: Optional[str] = None
    lease_start: Optional[date] = None
    lease_end: Optional[date] = None

class StudentResponse(StudentCreate):
    class Config:
        from_attributes = True

# Accrual Schemas
class AccrualCreate(BaseModel):
    student_id: str
    residence_id: str
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=2100)

class AccrualResult(BaseModel):
    created: bool
    entry: TransactionEntryResponse

class ResidenceAccrualCreate(BaseModel):
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=2100)

class AccrualFailure(BaseModel):
    student_id: str
    detail: str

class ResidenceAccrualResult(BaseModel):
    residence_id: str
    month: str
    created: List[str] = []
    skipped: List[str] = []
    failed: List[AccrualFailure] = []

# Payment Schemas
class PaymentCreate(BaseModel):
    """
    A cash or bank receipt from a student, to be allocated FIFO.
    """
    student_id: str
    amount: Decimal = Field(..., gt=0)
    method: PaymentMethod = PaymentMethod.CASH
    date: date
    require_outstanding: bool = False
    payment_id: Optional[str] = None

    @field_validator('amount')
    def amount_must_have_cents(cls, v):
        if v != v.quantize(Decimal("0.01")):
            raise ValueError('Amount must not have fractions of a cent')
        return v

class AllocationLine(BaseModel):
    month: str
    component: PaymentComponent
    amount_applied: Decimal
    entry_id: UUID

class PaymentResult(BaseModel):
    payment_id: str
    student_id: str
    amount: Decimal
    receivable_account: str
    allocation_type: AllocationType
    allocations: List[AllocationLine] = []
    overpayment: Decimal = Decimal("0.00")
    overpayment_month: Optional[str] = None
    overpayment_entry_id: Optional[UUID] = None

# Expense Schemas
class ExpenseCreate(BaseModel):
    vendor_id: str
    account_code: str
    amount: Decimal = Field(..., gt=0)
    date: date
    description: Optional[str] = None
    paid: bool = False
    reference: Optional[str] = None

# Report Schemas
class AccountBalance(BaseModel):
    account_code: str
    account_name: str
    account_type: AccountType
    debit_total: Decimal
    credit_total: Decimal
    balance: Decimal

class BalanceSheet(BaseModel):
    as_of: date
    assets: List[AccountBalance] = []
    liabilities: List[AccountBalance] = []
    equity: List[AccountBalance] = []
    total_assets: Decimal
    total_liabilities: Decimal
    total_equity: Decimal
    retained_earnings: Decimal
    discrepancy: Decimal
    is_balanced: bool

class TrialBalance(BaseModel):
    as_of: date
    accounts: List[AccountBalance] = []
    total_debit: Decimal
    total_credit: Decimal
    difference: Decimal
    is_balanced: bool

class IncomeStatement(BaseModel):
    month: int
    year: int
    period_start: date
    period_end: date
    income: List[AccountBalance] = []
    expenses: List[AccountBalance] = []
    total_income: Decimal
    total_expenses: Decimal
    net_income: Decimal

class CashFlowLine(BaseModel):
    source: str
    amount: Decimal
    entry_count: int

class CashFlowStatement(BaseModel):
    month: int
    year: int
    period_start: date
    period_end: date
    cash_accounts: List[str]
    opening_cash: Decimal
    inflows: List[CashFlowLine] = []
    outflows: List[CashFlowLine] = []
    total_inflows: Decimal
    total_outflows: Decimal
    net_change: Decimal
    closing_cash: Decimal

class ComponentBalance(BaseModel):
    owed: Decimal = Decimal("0.00")
    paid: Decimal = Decimal("0.00")

    @property
    def outstanding(self) -> Decimal:
        return max(Decimal("0.00"), self.owed - self.paid)

class ComponentBalanceResponse(BaseModel):
    owed: Decimal
    paid: Decimal
    outstanding: Decimal

class MonthlyObligation(BaseModel):
    """
    Owed vs paid for one student and billing month, per component.
    """
    month: str
    components: Dict[PaymentComponent, ComponentBalanceResponse]
    total_owed: Decimal
    total_paid: Decimal
    total_outstanding: Decimal
    fully_settled: bool
    accrual_entry_ids: List[UUID] = []

    def outstanding_for(self, component: PaymentComponent) -> Decimal:
        balance = self.components.get(component)
        return balance.outstanding if balance else Decimal("0.00")

class StudentOutstanding(BaseModel):
    student_id: str
    as_of_month: str
    months: List[MonthlyObligation] = []
    total_outstanding: Decimal
    unattributed_paid: Decimal = Decimal("0.00")

# Reconciliation Schemas
class ReconciliationRepair(BaseModel):
    entry_id: UUID
    transaction_id: str
    month_settled: str
    strategy: ResolutionStrategy

class ReconciliationFailure(BaseModel):
    entry_id: UUID
    transaction_id: str
    error: str

class ReconciliationReport(BaseModel):
    dry_run: bool = False
    scanned: int = 0
    resolved: int = 0
    by_strategy: Dict[ResolutionStrategy, int] = {}
    repairs: List[ReconciliationRepair] = []
    failed: List[ReconciliationFailure] = []

class IntegrityFinding(BaseModel):
    entry_id: UUID
    transaction_id: str
    issue: Literal["unbalanced", "totals_mismatch", "unknown_account"]
    detail: str

class IntegrityReport(BaseModel):
    scanned: int
    findings: List[IntegrityFinding] = []

    @property
    def is_clean(self) -> bool:
        return not self.findings
