
import enum
import uuid
from sqlalchemy import (
    Column,
    Date,
    String,
    Enum,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    JSON,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import relationship, declarative_base

Base = declarative_base()

def _values(enum_cls):
    return [member.value for member in enum_cls]

class AccountType(str, enum.Enum):
    ASSET = "Asset"
    LIABILITY = "Liability"
    EQUITY = "Equity"
    INCOME = "Income"
    EXPENSE = "Expense"

class AccountKind(str, enum.Enum):
    GENERAL_RECEIVABLE = "GeneralReceivable"
    STUDENT_RECEIVABLE = "StudentReceivable"

class EntryStatus(str, enum.Enum):
    POSTED = "posted"
    DELETED = "deleted"

class EntrySource(str, enum.Enum):
    RENTAL_ACCRUAL = "rental_accrual"
    PAYMENT = "payment"
    EXPENSE = "expense"
    PETTY_CASH = "petty_cash"
    MANUAL = "manual"

class PaymentComponent(str, enum.Enum):
    RENT = "rent"
    ADMIN = "admin"
    DEPOSIT = "deposit"
    UTILITIES = "utilities"
    OTHER = "other"

# Order in which a payment settles the components of one month.
COMPONENT_PRIORITY = [
    PaymentComponent.RENT,
    PaymentComponent.ADMIN,
    PaymentComponent.DEPOSIT,
    PaymentComponent.UTILITIES,
    PaymentComponent.OTHER,
]

class AllocationType(str, enum.Enum):
    GENERAL = "general"
    STUDENT_SPECIFIC = "student_specific"

class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"
    ONLINE = "online"

class ResolutionStrategy(str, enum.Enum):
    REFERENCE = "reference"
    FIFO = "fifo"
    FALLBACK = "fallback"

class Account(Base):
    """
    A chart-of-accounts entry. Every ledger line references one by code.
    Codes starting with 1100 are reserved for Accounts Receivable, either the
    general account (1100) or a per-student sub-account (1100-<studentId>).
    """
    __tablename__ = "accounts"
    __mapper_args__ = {"eager_defaults": True}

    code = Column(String(64), primary_key=True)
    name = Column(String, nullable=False)
    type = Column(Enum(AccountType, native_enum=False, values_callable=_values), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    lines = relationship("LineItem", back_populates="account")

class TransactionEntry(Base):
    """
    One balanced double-entry record. Never physically deleted; the only
    post-posting mutations are the soft-delete status and the monthSettled
    metadata backfill.

    student_id, accrual_year, accrual_month, month_settled and payment_type
    are indexed copies of metadata_json, kept in step by apply_metadata().
    """
    __tablename__ = "transaction_entries"
    __table_args__ = (
        Index(
            "uq_rental_accrual_student_month",
            "source",
            "student_id",
            "accrual_year",
            "accrual_month",
            unique=True,
            postgresql_where=text("status = 'posted' AND source = 'rental_accrual'"),
            sqlite_where=text("status = 'posted' AND source = 'rental_accrual'"),
        ),
    )
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_id = Column(String(64), unique=True, index=True, nullable=False)
    date = Column(Date, nullable=False, index=True)
    description = Column(String)
    reference = Column(String)
    source = Column(String(32), nullable=False, index=True)
    source_id = Column(String(64), nullable=True)
    status = Column(
        Enum(EntryStatus, native_enum=False, values_callable=_values),
        default=EntryStatus.POSTED,
        nullable=False,
    )
    total_debit = Column(Numeric(precision=20, scale=4), nullable=False)
    total_credit = Column(Numeric(precision=20, scale=4), nullable=False)
    metadata_json = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    student_id = Column(String(64), nullable=True, index=True)
    accrual_year = Column(Integer, nullable=True)
    accrual_month = Column(Integer, nullable=True)
    month_settled = Column(String(7), nullable=True, index=True)
    payment_type = Column(String(16), nullable=True)

    lines = relationship(
        "LineItem",
        back_populates="entry",
        order_by="LineItem.position",
        cascade="all, delete-orphan",
    )

    def apply_metadata(self, metadata: dict):
        self.metadata_json = dict(metadata)
        self.student_id = metadata.get("studentId")
        self.accrual_year = metadata.get("accrualYear")
        self.accrual_month = metadata.get("accrualMonth")
        self.month_settled = metadata.get("monthSettled")
        self.payment_type = metadata.get("paymentType")

    def __repr__(self):
        return f"<TransactionEntry(transaction_id='{self.transaction_id}', source='{self.source}', total={self.total_debit})>"

class LineItem(Base):
    """
    A single debit or credit line of a TransactionEntry. Exactly one of
    debit/credit is non-zero.
    """
    __tablename__ = "line_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(Uuid, ForeignKey("transaction_entries.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    account_code = Column(String(64), ForeignKey("accounts.code"), nullable=False, index=True)
    account_name = Column(String, nullable=False)
    account_type = Column(Enum(AccountType, native_enum=False, values_callable=_values), nullable=False)
    debit = Column(Numeric(precision=20, scale=4), nullable=False, default=0)
    credit = Column(Numeric(precision=20, scale=4), nullable=False, default=0)
    description = Column(String)
    component = Column(String(16), nullable=True)

    entry = relationship("TransactionEntry", back_populates="lines")
    account = relationship("Account", back_populates="lines")

class Residence(Base):
    __tablename__ = "residences"

    id = Column(String(64), primary_key=True)
    name = Column(String, nullable=False)
    admin_fee = Column(Numeric(precision=20, scale=4), nullable=False, default=0)

    rooms = relationship("Room", back_populates="residence", cascade="all, delete-orphan")

class Room(Base):
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, autoincrement=True)
    residence_id = Column(String(64), ForeignKey("residences.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(precision=20, scale=4), nullable=True)

    residence = relationship("Residence", back_populates="rooms")

class Student(Base):
    """
    A tenant with an allocated room. Room pricing is always looked up through
    the residence's room table.
    """
    __tablename__ = "students"

    id = Column(String(64), primary_key=True)
    name = Column(String, nullable=False)
    residence_id = Column(String(64), ForeignKey("residences.id"), nullable=True, index=True)
    room_name = Column(String, nullable=True)
    lease_start = Column(Date, nullable=True)
    lease_end = Column(Date, nullable=True)
