from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, UniqueConstraint
from sqlalchemy.sql import func

from account_pool.database import Base


class AccountStatus(str, Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    SUSPENDED = "suspended"


class Account(Base):
    __tablename__ = "accounts"
    id = Column(Integer, primary_key=True)
    username = Column(String, unique=True, nullable=False)
    email = Column(String, nullable=False)
    password_hash = Column(String, nullable=True)
    status = Column(String, nullable=False, default=AccountStatus.AVAILABLE.value, index=True)
    # buyer/transaction fields are set iff status == occupied
    buyer_email = Column(String, nullable=True)
    buyer_name = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)
    notification_id = Column(String, nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    # release clears transaction_id, so only occupied rows ever carry one
    __table_args__ = (UniqueConstraint("transaction_id", name="uq_accounts_transaction"),)


class NotificationRecord(Base):
    __tablename__ = "notification_records"
    id = Column(String, primary_key=True)  # provider notification id
    source = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    transaction_id = Column(String, nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    outcome = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
