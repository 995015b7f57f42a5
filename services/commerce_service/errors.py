"""Commerce error taxonomy.

Business rule violations are returned to the caller with no partial state
change. Gateway errors leave local state consistent and eligible for later
reconciliation. Ledger errors are fatal and abort the surrounding transaction.
"""

import uuid
from typing import Optional


class CommerceError(Exception):
    """Base exception for commerce operations."""

    code = "commerce_error"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class NotFoundError(CommerceError):
    code = "not_found"


class BusinessRuleViolation(CommerceError):
    code = "business_rule_violation"


class SoldOutError(BusinessRuleViolation):
    """Raised when a line cannot be reserved; the whole order is rejected."""

    code = "sold_out"

    def __init__(self, product_id: uuid.UUID, product_name: str, requested: int):
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested
        super().__init__(f"{product_name} is sold out or has insufficient stock")


class InvalidTransitionError(BusinessRuleViolation):
    code = "invalid_transition"


class InvoiceAlreadyPaidError(BusinessRuleViolation):
    code = "invoice_already_paid"


class VoucherError(BusinessRuleViolation):
    code = "invalid_voucher"


class InsufficientWalletBalanceError(BusinessRuleViolation):
    code = "insufficient_wallet_balance"


class ExternalGatewayError(CommerceError):
    """Timeout, non-2xx or unparseable response from an external collaborator."""

    code = "external_gateway_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Optional[dict] = None,
    ):
        self.status_code = status_code
        self.response_data = response_data or {}
        super().__init__(message)


class LedgerError(CommerceError):
    code = "ledger_error"


class LedgerImbalanceError(LedgerError):
    code = "ledger_imbalance"


class AccountResolutionError(LedgerError):
    code = "account_unresolved"
