"""Atomic claim and release of pooled accounts.

All mutual exclusion lives in the database. A claim is one conditional
UPDATE that selects and flips a single available row; a release is one
conditional UPDATE keyed on the owning transaction. Neither reads a row and
writes it back in a separate statement.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from account_pool.config import Settings
from account_pool.events import Outcome
from account_pool.ledger import NotificationLedger
from account_pool.logging_config import get_logger
from account_pool.models import Account, AccountStatus
from account_pool.schemas import PoolStats

logger = get_logger(__name__)

PASSWORD_CHARSET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789!@#$%^&*"


class ClaimConflict(Exception):
    """Another claim for the same transaction committed first."""

    def __init__(self, transaction_id: str):
        super().__init__(f"transaction {transaction_id} already owns an account")
        self.transaction_id = transaction_id


@dataclass
class AllocationResult:
    outcome: Outcome
    account_id: Optional[int] = None
    username: Optional[str] = None
    # plaintext is only ever set on a fresh claim and is never persisted
    password: Optional[str] = None


@dataclass
class IssuedCredentials:
    password: str
    password_hash: str


@dataclass
class ReleaseResult:
    outcome: Outcome
    account_id: Optional[int] = None


def generate_password(length: int) -> str:
    return "".join(secrets.choice(PASSWORD_CHARSET) for _ in range(length))


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def verify_password(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode(), hashed.encode())


def account_for_transaction(db: Session, transaction_id: str):
    """Whichever account carries the transaction id, whatever its status."""
    return db.execute(
        select(Account.id, Account.username, Account.status).where(Account.transaction_id == transaction_id)
    ).first()


def count_available(db: Session) -> int:
    stmt = select(func.count()).select_from(Account).where(Account.status == AccountStatus.AVAILABLE.value)
    return db.execute(stmt).scalar_one()


class AccountAllocator:
    def __init__(self, settings: Settings, ledger: Optional[NotificationLedger] = None):
        self.occupancy = timedelta(days=settings.occupancy_days)
        self.password_length = settings.password_length
        self.password_hash_rounds = settings.password_hash_rounds
        self.low_pool_threshold = settings.low_pool_threshold
        self.claim_attempts = max(1, settings.claim_attempts)
        self.ledger = ledger if settings.reject_cancelled_transactions else None

    def issue_credentials(self) -> IssuedCredentials:
        """
        Generate and hash a one-time password.

        Must run before the write transaction opens; hashing never happens
        under the database lock.
        """
        password = generate_password(self.password_length)
        return IssuedCredentials(password=password, password_hash=hash_password(password, self.password_hash_rounds))

    def owned_account(self, db: Session, transaction_id: str):
        return db.execute(
            select(Account.id, Account.username)
            .where(Account.transaction_id == transaction_id)
            .where(Account.status == AccountStatus.OCCUPIED.value)
        ).first()

    def allocate(
        self,
        db: Session,
        buyer_email: str,
        buyer_name: str,
        transaction_id: str,
        notification_id: str,
        credentials: Optional[IssuedCredentials] = None,
    ) -> AllocationResult:
        """
        Claim one available account for the purchase, or report why not.

        Raises ClaimConflict when another account already carries the
        transaction id (a concurrent claim committed first); the caller must
        roll back and retry.
        """
        owned = self.owned_account(db, transaction_id)
        if owned:
            logger.info(
                "Transaction already owns an account transaction_id=%s account_id=%s",
                transaction_id,
                owned.id,
            )
            return AllocationResult(Outcome.ALREADY_ALLOCATED, account_id=owned.id, username=owned.username)

        if self.ledger and self.ledger.has_processed_release(db, transaction_id):
            logger.warning(
                "Refusing allocation for cancelled transaction transaction_id=%s notification_id=%s",
                transaction_id,
                notification_id,
            )
            return AllocationResult(Outcome.TRANSACTION_CANCELLED)

        credentials = credentials or self.issue_credentials()

        for attempt in range(1, self.claim_attempts + 1):
            now = datetime.now(timezone.utc)
            try:
                row = db.execute(
                    self._claim_statement(
                        buyer_email=buyer_email,
                        buyer_name=buyer_name,
                        transaction_id=transaction_id,
                        notification_id=notification_id,
                        password_hash=credentials.password_hash,
                        now=now,
                    )
                ).first()
            except IntegrityError as exc:
                raise ClaimConflict(transaction_id) from exc
            if row:
                logger.info(
                    "Allocated account account_id=%s username=%s transaction_id=%s notification_id=%s",
                    row.id,
                    row.username,
                    transaction_id,
                    notification_id,
                )
                self._warn_if_low(db)
                return AllocationResult(
                    Outcome.ALLOCATED, account_id=row.id, username=row.username, password=credentials.password
                )
            if count_available(db) == 0:
                break
            logger.info(
                "Claim candidate taken by a concurrent writer transaction_id=%s attempt=%s",
                transaction_id,
                attempt,
            )

        logger.warning("Account pool exhausted transaction_id=%s notification_id=%s", transaction_id, notification_id)
        return AllocationResult(Outcome.POOL_EXHAUSTED)

    def _claim_statement(self, *, buyer_email, buyer_name, transaction_id, notification_id, password_hash, now):
        candidate = (
            select(Account.id)
            .where(Account.status == AccountStatus.AVAILABLE.value)
            .order_by(Account.created_at, Account.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        # the status predicate is re-checked on the row the subquery picked
        return (
            update(Account)
            .where(Account.id == candidate)
            .where(Account.status == AccountStatus.AVAILABLE.value)
            .values(
                status=AccountStatus.OCCUPIED.value,
                buyer_email=buyer_email,
                buyer_name=buyer_name,
                transaction_id=transaction_id,
                notification_id=notification_id,
                password_hash=password_hash,
                assigned_at=now,
                expires_at=now + self.occupancy,
            )
            .returning(Account.id, Account.username)
            .execution_options(synchronize_session=False)
        )

    def _warn_if_low(self, db: Session) -> None:
        remaining = count_available(db)
        if remaining < self.low_pool_threshold:
            logger.warning("Account pool running low available=%s threshold=%s", remaining, self.low_pool_threshold)


class AccountReleaser:
    def release(self, db: Session, transaction_id: str, notification_id: Optional[str] = None) -> ReleaseResult:
        """
        Return the account owned by the transaction to the pool.

        Releasing a transaction with no occupied account is a no-op.
        """
        row = db.execute(
            update(Account)
            .where(Account.transaction_id == transaction_id)
            .where(Account.status == AccountStatus.OCCUPIED.value)
            .values(
                status=AccountStatus.AVAILABLE.value,
                buyer_email=None,
                buyer_name=None,
                transaction_id=None,
                notification_id=None,
                password_hash=None,
                assigned_at=None,
                expires_at=None,
            )
            .returning(Account.id)
            .execution_options(synchronize_session=False)
        ).first()
        if row is None:
            logger.info(
                "Nothing to release transaction_id=%s notification_id=%s",
                transaction_id,
                notification_id,
            )
            return ReleaseResult(Outcome.NOTHING_TO_RELEASE)
        logger.info(
            "Released account account_id=%s transaction_id=%s notification_id=%s",
            row.id,
            transaction_id,
            notification_id,
        )
        return ReleaseResult(Outcome.RELEASED, account_id=row.id)


def pool_stats(db: Session) -> PoolStats:
    counts = dict(db.execute(select(Account.status, func.count()).group_by(Account.status)).all())
    last_assigned_at = db.execute(select(func.max(Account.assigned_at))).scalar()
    return PoolStats(
        available=counts.get(AccountStatus.AVAILABLE.value, 0),
        occupied=counts.get(AccountStatus.OCCUPIED.value, 0),
        suspended=counts.get(AccountStatus.SUSPENDED.value, 0),
        total=sum(counts.values()),
        last_assigned_at=last_assigned_at,
    )
