from typing import Any, Dict, Optional

from fastapi import HTTPException

class LedgerError(HTTPException):
    """
    Base ledger exception. `detail` is the operator-facing message and already
    names the accounts, amounts, student and date involved; `context` carries
    the same facts in structured form.
    """
    def __init__(self, status_code: int, detail: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(status_code=status_code, detail=detail)
        self.context = context or {}

class UnbalancedEntryError(LedgerError):
    def __init__(self, total_debit, total_credit, account_codes, description=None):
        super().__init__(
            status_code=400,
            detail=(
                f"Unbalanced entry: debits {total_debit} != credits {total_credit} "
                f"(accounts: {', '.join(account_codes)}; description: {description!r})"
            ),
            context={
                "total_debit": str(total_debit),
                "total_credit": str(total_credit),
                "account_codes": list(account_codes),
                "description": description,
            },
        )

class InvalidEntryError(LedgerError):
    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(status_code=400, detail=detail, context=context)

class AccountNotFoundError(LedgerError):
    def __init__(self, account_code: str):
        super().__init__(
            status_code=404,
            detail=f"Account not found: {account_code}",
            context={"account_code": account_code},
        )

class DuplicateAccountError(LedgerError):
    def __init__(self, account_code: str):
        super().__init__(
            status_code=409,
            detail=f"Account with code '{account_code}' already exists",
            context={"account_code": account_code},
        )

class MissingPricingError(LedgerError):
    def __init__(self, student_id: str, residence_id: str, room_name: Optional[str], month: int, year: int):
        super().__init__(
            status_code=422,
            detail=(
                f"No room price for student {student_id} in residence {residence_id} "
                f"(room: {room_name or 'unallocated'}) for {year}-{month:02d}"
            ),
            context={
                "student_id": student_id,
                "residence_id": residence_id,
                "room": room_name,
                "month": month,
                "year": year,
            },
        )

class NoOutstandingBalanceError(LedgerError):
    def __init__(self, student_id: str, amount, payment_date):
        super().__init__(
            status_code=409,
            detail=f"No outstanding balance for student {student_id} to allocate {amount} paid on {payment_date}",
            context={"student_id": student_id, "amount": str(amount), "date": str(payment_date)},
        )

class EntryNotFoundError(LedgerError):
    def __init__(self, entry_id):
        super().__init__(
            status_code=404,
            detail=f"Transaction entry not found: {entry_id}",
            context={"entry_id": str(entry_id)},
        )

class StudentNotFoundError(LedgerError):
    def __init__(self, student_id: str):
        super().__init__(
            status_code=404,
            detail=f"Student not found: {student_id}",
            context={"student_id": student_id},
        )

class ResidenceNotFoundError(LedgerError):
    def __init__(self, residence_id: str):
        super().__init__(
            status_code=404,
            detail=f"Residence not found: {residence_id}",
            context={"residence_id": residence_id},
        )

class DuplicateTransactionError(LedgerError):
    def __init__(self, transaction_id: str):
        super().__init__(
            status_code=409,
            detail=f"Transaction entry '{transaction_id}' already exists",
            context={"transaction_id": transaction_id},
        )
