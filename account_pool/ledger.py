"""Notification ledger and idempotency guard.

Every authenticated, well-formed notification gets a row keyed by the
provider's notification id. The primary key is the arbiter for concurrent
deliveries of the same id: the loser of the insert race sees an
``IntegrityError`` and is treated as a duplicate, never as a fault.
"""

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from account_pool.events import RELEASE_OUTCOMES, Outcome
from account_pool.logging_config import get_logger
from account_pool.models import NotificationRecord
from account_pool.schemas import WebhookEnvelope

logger = get_logger(__name__)


@dataclass
class LedgerEntry:
    record: NotificationRecord
    duplicate: bool = False
    retried: bool = False


class NotificationLedger:
    def __init__(self, source: str):
        self.source = source

    def begin(self, db: Session, envelope: WebhookEnvelope, payload: dict[str, Any]) -> LedgerEntry:
        """
        Insert the record for a first sighting, or resolve an existing one.

        An existing record that was never marked processed belongs to an
        attempt that did not finish (e.g. pool exhausted); it is taken over
        with a conditional update so only one retry can reprocess it.
        """
        record = NotificationRecord(
            id=envelope.id,
            source=self.source,
            event_type=envelope.event,
            transaction_id=envelope.transaction_id,
            payload=payload,
            processed=False,
            attempts=1,
        )
        db.add(record)
        try:
            db.flush()
            return LedgerEntry(record=record)
        except IntegrityError:
            db.rollback()

        result = db.execute(
            update(NotificationRecord)
            .where(NotificationRecord.id == envelope.id)
            .where(NotificationRecord.processed.is_(False))
            .values(attempts=NotificationRecord.attempts + 1)
        )
        existing = db.get(NotificationRecord, envelope.id, populate_existing=True)
        if result.rowcount == 1:
            logger.info(
                "Reprocessing unfinished notification id=%s attempts=%s last_outcome=%s",
                existing.id,
                existing.attempts,
                existing.outcome,
            )
            return LedgerEntry(record=existing, retried=True)
        logger.info(
            "Duplicate notification id=%s event=%s outcome=%s",
            existing.id,
            existing.event_type,
            existing.outcome,
        )
        return LedgerEntry(record=existing, duplicate=True)

    def complete(self, db: Session, record: NotificationRecord, outcome: Outcome, processed: bool = True) -> None:
        # committed by the caller together with the account mutation
        record.outcome = outcome.value
        record.processed = processed
        db.add(record)

    def has_processed_release(self, db: Session, transaction_id: str) -> bool:
        stmt = (
            select(NotificationRecord.id)
            .where(NotificationRecord.transaction_id == transaction_id)
            .where(NotificationRecord.processed.is_(True))
            .where(NotificationRecord.outcome.in_(RELEASE_OUTCOMES))
            .limit(1)
        )
        return db.execute(stmt).first() is not None
