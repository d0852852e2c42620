"""Credit ledger error taxonomy."""

from __future__ import annotations

from typing import Any, Dict, Optional


class CreditServiceError(Exception):
    """Base class for ledger failures surfaced to callers."""

    code = "credit_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidAmountError(CreditServiceError):
    code = "invalid_amount"


class InvalidKindError(CreditServiceError):
    code = "invalid_kind"


class InvalidPaginationError(CreditServiceError):
    code = "invalid_pagination"


class InsufficientCreditsError(CreditServiceError):
    """Debit exceeds the balance. Callers must stop consuming, not retry."""

    code = "insufficient_credits"
    status_code = 402

    def __init__(self, balance: Any, required: Any):
        super().__init__(f"Insufficient credits. Current balance: {balance}, Required: {required}")
        self.balance = balance
        self.required = required


class BalanceNotFoundError(CreditServiceError):
    code = "balance_not_found"
    status_code = 404


class UserNotFoundError(CreditServiceError):
    code = "user_not_found"
    status_code = 404


class GuestSessionNotFoundError(CreditServiceError):
    code = "guest_session_not_found"
    status_code = 404


class PlanNotFoundError(CreditServiceError):
    code = "plan_not_found"
    status_code = 404


class PlanInactiveError(CreditServiceError):
    code = "plan_inactive"


class AlreadyBonusedError(CreditServiceError):
    code = "already_bonused"
    status_code = 409


class AlreadyAllocatedThisMonthError(CreditServiceError):
    code = "already_allocated_this_month"
    status_code = 409


class LedgerStorageError(CreditServiceError):
    code = "storage_failure"
    status_code = 500


class PurchaseReconciliationError(CreditServiceError):
    """Purchase row was written but its credit step failed; needs manual reconciliation."""

    code = "purchase_reconciliation_required"
    status_code = 500

    def __init__(self, purchase_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Purchase {purchase_id} was recorded but credits were not applied."
        )
        self.purchase_id = purchase_id

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["purchase_id"] = self.purchase_id
        return detail
