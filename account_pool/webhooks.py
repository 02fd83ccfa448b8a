from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from account_pool.allocator import (
    AccountAllocator,
    AccountReleaser,
    ClaimConflict,
    IssuedCredentials,
    account_for_transaction,
)
from account_pool.events import EventCategory, Outcome, classify_event
from account_pool.ledger import NotificationLedger
from account_pool.logging_config import get_logger
from account_pool.models import NotificationRecord
from account_pool.schemas import WebhookEnvelope, WebhookResponse

logger = get_logger(__name__)

outcome_messages = {
    Outcome.ALLOCATED: "account assigned",
    Outcome.ALREADY_ALLOCATED: "transaction already has an account",
    Outcome.POOL_EXHAUSTED: "no accounts available, retry later",
    Outcome.TRANSACTION_CANCELLED: "transaction was cancelled before approval",
    Outcome.RELEASED: "account released",
    Outcome.NOTHING_TO_RELEASE: "no account held by this transaction",
    Outcome.IGNORED: "event received but not processed",
}


@dataclass
class CredentialDelivery:
    buyer_email: str
    username: str
    password: str


@dataclass
class ProcessingResult:
    status_code: int
    body: WebhookResponse
    credentials: Optional[CredentialDelivery] = None


class NotificationProcessor:
    """
    Runs one notification through ledger, classification and pool mutation.

    The ledger row and the account mutation commit in one transaction, so a
    storage fault leaves neither behind and the provider's retry starts over.
    """

    def __init__(self, ledger: NotificationLedger, allocator: AccountAllocator, releaser: AccountReleaser):
        self.ledger = ledger
        self.allocator = allocator
        self.releaser = releaser

    def process(self, db: Session, envelope: WebhookEnvelope, payload: dict[str, Any]) -> ProcessingResult:
        try:
            try:
                return self._process_once(db, envelope, payload)
            except ClaimConflict as exc:
                # the winner is committed now; the retry sees it as already allocated
                db.rollback()
                logger.info("Concurrent claim for transaction_id=%s, retrying notification id=%s", exc.transaction_id, envelope.id)
            try:
                return self._process_once(db, envelope, payload)
            except ClaimConflict:
                db.rollback()
                return self._settle_conflict(db, envelope, payload)
        except SQLAlchemyError:
            db.rollback()
            raise

    def _process_once(self, db: Session, envelope: WebhookEnvelope, payload: dict[str, Any]) -> ProcessingResult:
        category = classify_event(envelope.event)
        credentials = None
        if category == EventCategory.ALLOCATE:
            credentials = self.allocator.issue_credentials()

        entry = self.ledger.begin(db, envelope, payload)
        record = entry.record
        if entry.duplicate:
            db.rollback()
            return self._duplicate_result(record)

        logger.info(
            "Processing notification id=%s event=%s category=%s transaction_id=%s",
            envelope.id,
            envelope.event,
            category.value,
            envelope.transaction_id,
        )
        if category == EventCategory.ALLOCATE:
            return self._allocate(db, envelope, record, credentials)
        if category == EventCategory.RELEASE:
            return self._release(db, envelope, record)

        self.ledger.complete(db, record, Outcome.IGNORED)
        db.commit()
        return self._result(200, Outcome.IGNORED)

    def _settle_conflict(self, db: Session, envelope: WebhookEnvelope, payload: dict[str, Any]) -> ProcessingResult:
        """
        Record a notification whose transaction id is held by an account the
        ownership check does not see as occupied (e.g. a suspended row).
        """
        entry = self.ledger.begin(db, envelope, payload)
        if entry.duplicate:
            db.rollback()
            return self._duplicate_result(entry.record)
        holder = account_for_transaction(db, envelope.transaction_id)
        logger.warning(
            "Transaction id=%s still bound to account_id=%s status=%s; notification id=%s not granted",
            envelope.transaction_id,
            holder.id if holder else None,
            holder.status if holder else None,
            envelope.id,
        )
        self.ledger.complete(db, entry.record, Outcome.ALREADY_ALLOCATED)
        db.commit()
        return self._result(
            200,
            Outcome.ALREADY_ALLOCATED,
            account_id=holder.id if holder else None,
            username=holder.username if holder else None,
        )

    def _duplicate_result(self, record: NotificationRecord) -> ProcessingResult:
        return ProcessingResult(
            status_code=200,
            body=WebhookResponse(
                success=True,
                message="notification already processed",
                outcome=record.outcome,
                duplicate=True,
            ),
        )

    def _allocate(
        self,
        db: Session,
        envelope: WebhookEnvelope,
        record: NotificationRecord,
        credentials: Optional[IssuedCredentials] = None,
    ) -> ProcessingResult:
        buyer = envelope.buyer
        result = self.allocator.allocate(
            db,
            buyer_email=buyer.email,
            buyer_name=buyer.name,
            transaction_id=envelope.transaction_id,
            notification_id=envelope.id,
            credentials=credentials,
        )
        if result.outcome == Outcome.POOL_EXHAUSTED:
            # left unprocessed so the provider's retry of this id claims again
            self.ledger.complete(db, record, result.outcome, processed=False)
            db.commit()
            return self._result(503, result.outcome, success=False)

        self.ledger.complete(db, record, result.outcome)
        db.commit()
        credentials = None
        if result.outcome == Outcome.ALLOCATED:
            credentials = CredentialDelivery(buyer.email, result.username, result.password)
        return self._result(200, result.outcome, account_id=result.account_id, username=result.username, credentials=credentials)

    def _release(self, db: Session, envelope: WebhookEnvelope, record: NotificationRecord) -> ProcessingResult:
        result = self.releaser.release(db, envelope.transaction_id, notification_id=envelope.id)
        self.ledger.complete(db, record, result.outcome)
        db.commit()
        return self._result(200, result.outcome, account_id=result.account_id)

    def _result(
        self,
        status_code: int,
        outcome: Outcome,
        success: bool = True,
        account_id: Optional[int] = None,
        username: Optional[str] = None,
        credentials: Optional[CredentialDelivery] = None,
    ) -> ProcessingResult:
        body = WebhookResponse(
            success=success,
            message=outcome_messages[outcome],
            outcome=outcome.value,
            account_id=account_id,
            username=username,
        )
        return ProcessingResult(status_code=status_code, body=body, credentials=credentials)
