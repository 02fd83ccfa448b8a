import re
from enum import Enum


class EventCategory(str, Enum):
    ALLOCATE = "allocate"
    RELEASE = "release"
    UNRECOGNIZED = "unrecognized"


class PurchaseEvent(str, Enum):
    APPROVED = "purchase_approved"
    COMPLETE = "purchase_complete"
    CANCELED = "purchase_canceled"
    CANCELLED = "purchase_cancelled"
    REFUNDED = "purchase_refunded"
    CHARGEBACK = "purchase_chargeback"


class Outcome(str, Enum):
    ALLOCATED = "allocated"
    ALREADY_ALLOCATED = "already_allocated"
    POOL_EXHAUSTED = "pool_exhausted"
    TRANSACTION_CANCELLED = "transaction_cancelled"
    RELEASED = "released"
    NOTHING_TO_RELEASE = "nothing_to_release"
    IGNORED = "ignored"


RELEASE_OUTCOMES = (Outcome.RELEASED.value, Outcome.NOTHING_TO_RELEASE.value)

event_category_map = {
    PurchaseEvent.APPROVED: EventCategory.ALLOCATE,
    PurchaseEvent.COMPLETE: EventCategory.ALLOCATE,
    PurchaseEvent.CANCELED: EventCategory.RELEASE,
    PurchaseEvent.CANCELLED: EventCategory.RELEASE,
    PurchaseEvent.REFUNDED: EventCategory.RELEASE,
    PurchaseEvent.CHARGEBACK: EventCategory.RELEASE,
}

_SEPARATORS = re.compile(r"[\s\-\.]+")


def normalize_event_type(event_type: str) -> str:
    return _SEPARATORS.sub("_", event_type.strip()).lower()


def classify_event(event_type: str) -> EventCategory:
    """
    Map a provider event string to the bucket that decides what happens to the pool.

    Unknown types are not errors; the provider adds new ones without notice.
    """
    try:
        event = PurchaseEvent(normalize_event_type(event_type))
    except ValueError:
        return EventCategory.UNRECOGNIZED
    return event_category_map[event]
