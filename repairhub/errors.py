"""Marketplace error taxonomy.

Services raise these; the lifecycle coordinator catches them and hands callers
an OperationResult carrying the stable ``code`` instead of an exception.
"""

import enum


class ErrorCode(str, enum.Enum):
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    JOB_NOT_FOUND = "job_not_found"
    JOB_NOT_ACCEPTING_BIDS = "job_not_accepting_bids"
    BID_NOT_FOUND = "bid_not_found"
    BID_NOT_PENDING = "bid_not_pending"
    DUPLICATE_PENDING_BID = "duplicate_pending_bid"
    CHANGE_ORDER_NOT_FOUND = "change_order_not_found"
    CHANGE_ORDER_NOT_PENDING = "change_order_not_pending"
    CHANGE_ORDER_ALREADY_EXISTS = "change_order_already_exists"
    PAYMENT_AUTHORIZATION_FAILED = "payment_authorization_failed"
    PAYMENT_ALREADY_CAPTURED = "payment_already_captured"
    ESCROW_NOT_FOUND = "escrow_not_found"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    NOT_JOB_PARTY = "not_job_party"
    INVALID_AMOUNT = "invalid_amount"


class MarketplaceError(Exception):
    code: ErrorCode = ErrorCode.INVALID_STATE_TRANSITION
    http_status: int = 409
    # When True the coordinator commits the aggregate before reporting the error
    # (e.g. a declined payment must still be recorded as failed).
    persist_changes: bool = False

    def __init__(self, message: str | None = None, **details: object) -> None:
        self.message = message or self.code.value.replace("_", " ").capitalize()
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body: dict = {"code": self.code.value, "message": self.message}
        if self.details:
            body["details"] = {
                k: v if v is None or isinstance(v, (bool, int, str)) else str(v)
                for k, v in self.details.items()
            }
        return body


class InvalidStateTransition(MarketplaceError):
    code = ErrorCode.INVALID_STATE_TRANSITION


class JobNotAcceptingBids(InvalidStateTransition):
    code = ErrorCode.JOB_NOT_ACCEPTING_BIDS


class JobNotFound(MarketplaceError):
    code = ErrorCode.JOB_NOT_FOUND
    http_status = 404


class BidNotFound(MarketplaceError):
    code = ErrorCode.BID_NOT_FOUND
    http_status = 404


class BidNotPending(MarketplaceError):
    code = ErrorCode.BID_NOT_PENDING


class DuplicatePendingBid(MarketplaceError):
    code = ErrorCode.DUPLICATE_PENDING_BID


class ChangeOrderNotFound(MarketplaceError):
    code = ErrorCode.CHANGE_ORDER_NOT_FOUND
    http_status = 404


class ChangeOrderNotPending(MarketplaceError):
    code = ErrorCode.CHANGE_ORDER_NOT_PENDING


class ChangeOrderAlreadyExists(MarketplaceError):
    code = ErrorCode.CHANGE_ORDER_ALREADY_EXISTS


class PaymentAuthorizationFailed(MarketplaceError):
    code = ErrorCode.PAYMENT_AUTHORIZATION_FAILED
    http_status = 402
    persist_changes = True

    def __init__(self, message: str | None = None, retryable: bool = False, **details: object) -> None:
        self.retryable = retryable
        super().__init__(message, retryable=retryable, **details)


class PaymentAlreadyCaptured(MarketplaceError):
    code = ErrorCode.PAYMENT_ALREADY_CAPTURED


class EscrowNotFound(MarketplaceError):
    code = ErrorCode.ESCROW_NOT_FOUND
    http_status = 404


class ConcurrentModification(MarketplaceError):
    code = ErrorCode.CONCURRENT_MODIFICATION


class NotJobParty(MarketplaceError):
    code = ErrorCode.NOT_JOB_PARTY
    http_status = 403


class InvalidAmount(MarketplaceError):
    code = ErrorCode.INVALID_AMOUNT
    http_status = 422
