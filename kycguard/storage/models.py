"""
SQLAlchemy models for roles, KYC profiles and the audit ledger.

Aggregates are stored as a JSON document plus a ``version`` column. Every
write is a compare-and-swap on that column, which is how concurrent
administrators are kept from overwriting each other. A few fields are
copied out of the document into indexed columns for querying.

The audit table is APPEND-ONLY. Each entry stores the SHA-256 hash of
(previous_hash || canonical_json(entry)), so a retroactive edit to any
row breaks the chain.
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all kycguard tables."""
    pass


class RoleDB(Base):
    """Role definitions keyed by their immutable slug."""

    __tablename__ = "roles"

    key = Column(String(64), primary_key=True, comment="Role name")
    version = Column(Integer, nullable=False, comment="Optimistic concurrency version")
    document = Column(JSON, nullable=False, comment="Serialized Role")
    hierarchy = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_role_hierarchy", "hierarchy"),
    )

    def __repr__(self) -> str:
        return f"<Role key={self.key} v={self.version}>"


class KycProfileDB(Base):
    """Subscriber KYC profiles, one per user identity."""

    __tablename__ = "kyc_profiles"

    key = Column(String(36), primary_key=True, comment="Profile UUID")
    version = Column(Integer, nullable=False, comment="Optimistic concurrency version")
    document = Column(JSON, nullable=False, comment="Serialized KycProfile")
    user_id = Column(String(100), nullable=False, unique=True, index=True)
    kyc_status = Column(String(20), nullable=False, index=True)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<KycProfile key={self.key} status={self.kyc_status} v={self.version}>"


class AuditEntryDB(Base):
    """
    A single entry in the audit ledger — one published domain event.

    No rows are ever updated or deleted.
    """

    __tablename__ = "audit_entries"

    sequence_number = Column(
        Integer, primary_key=True, autoincrement=False,
        comment="Monotonically increasing sequence number, starting at 1",
    )
    event_id = Column(String(36), nullable=False, unique=True)
    previous_hash = Column(String(64), nullable=False)
    entry_hash = Column(String(64), nullable=False, unique=True)
    event_type = Column(String(50), nullable=False, index=True)
    aggregate_id = Column(String(100), nullable=False, index=True)
    actor_subject = Column(String(100), nullable=False)
    actor_role = Column(String(64), nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    payload = Column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_audit_type_occurred", "event_type", "occurred_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEntry seq={self.sequence_number} "
            f"type={self.event_type} hash={self.entry_hash[:12]}...>"
        )
