import pytest

from account_pool.events import EventCategory, classify_event


@pytest.mark.parametrize(
    "event_type",
    ["PURCHASE_APPROVED", "PURCHASE_COMPLETE", "purchase approved", "purchase-complete", " Purchase_Approved "],
)
def test_allocation_events(event_type):
    assert classify_event(event_type) == EventCategory.ALLOCATE


@pytest.mark.parametrize(
    "event_type",
    ["PURCHASE_CANCELED", "PURCHASE_CANCELLED", "PURCHASE_REFUNDED", "PURCHASE_CHARGEBACK", "purchase refunded"],
)
def test_release_events(event_type):
    assert classify_event(event_type) == EventCategory.RELEASE


@pytest.mark.parametrize("event_type", ["PURCHASE_DELAYED", "SUBSCRIPTION_CANCELLATION", "CLUB_FIRST_ACCESS", ""])
def test_unknown_events_are_not_errors(event_type):
    assert classify_event(event_type) == EventCategory.UNRECOGNIZED
