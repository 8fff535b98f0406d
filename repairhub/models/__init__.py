"""Import every model so string relationships resolve on first use."""

from repairhub.models.bid import Bid, BidStatus
from repairhub.models.change_order import ChangeOrder, ChangeOrderLineItem, ChangeOrderStatus
from repairhub.models.escrow import EscrowStatus, EscrowTransaction
from repairhub.models.job import (
    OPEN_FOR_BIDS,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    CancellationReason,
    Job,
    JobStatus,
)
from repairhub.models.notification import DeliveryStatus, NotificationDelivery
from repairhub.models.timeline import JobTimelineEntry

__all__ = [
    "Bid",
    "BidStatus",
    "CancellationReason",
    "ChangeOrder",
    "ChangeOrderLineItem",
    "ChangeOrderStatus",
    "DeliveryStatus",
    "EscrowStatus",
    "EscrowTransaction",
    "Job",
    "JobStatus",
    "JobTimelineEntry",
    "NotificationDelivery",
    "OPEN_FOR_BIDS",
    "TERMINAL_STATUSES",
    "VALID_TRANSITIONS",
]
