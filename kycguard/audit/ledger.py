"""
Audit Ledger — Append-only, hash-chained record of domain events.

This service is the persistent audit sink of the core:
- Append events with automatic hash chain computation
- Verify the integrity of the full hash chain
- Query entries by type, aggregate, or recency

Only INSERT is ever issued against the table. A deactivated profile or a
deleted role therefore keeps its full history here.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from kycguard.audit.events import DomainEvent, EventSink
from kycguard.storage.models import AuditEntryDB, Base

logger = logging.getLogger(__name__)


GENESIS_HASH = "0" * 64  # The "previous hash" of the first entry in the chain
APPEND_ATTEMPTS = 5


def _utc_naive(moment: datetime) -> datetime:
    # SQLite drops tzinfo on read; hash the UTC wall-clock value.
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.replace(tzinfo=None)


class LedgerIntegrityError(Exception):
    """Raised when the hash chain cannot be extended consistently."""


class AuditLedger:
    """
    Audit Ledger Service.

    Usage:
        ledger = AuditLedger(make_engine(database_url))
        ledger.initialize()
        ledger.append(event)
        ok, count, message = ledger.verify_chain()
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=self.engine)
        self._append_lock = threading.Lock()

    def initialize(self) -> None:
        """Create the ledger table if it does not exist."""
        Base.metadata.create_all(self.engine, tables=[AuditEntryDB.__table__])

    def append(self, event: DomainEvent) -> AuditEntryDB:
        """
        Append a domain event to the ledger.

        This is the ONLY write operation. There is no update, no delete.
        Appends through one ledger are serialized; a writer on another
        connection that takes the tail first makes the insert fail on the
        unique sequence number, and the tail is re-read and the entry
        rebuilt. ``LedgerIntegrityError`` means the tail kept moving.
        """
        with self._append_lock:
            for attempt in range(1, APPEND_ATTEMPTS + 1):
                with self.SessionLocal() as session:
                    new_seq, previous_hash = self._tail(session)
                    entry = self._build_entry(event, new_seq, previous_hash)
                    session.add(entry)
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        logger.warning(
                            "Audit append lost seq=%d to another writer (attempt %d/%d)",
                            new_seq, attempt, APPEND_ATTEMPTS,
                        )
                        continue
                    session.refresh(entry)

                    logger.info(
                        "Audit entry appended: seq=%d type=%s hash=%s",
                        new_seq, entry.event_type, entry.entry_hash[:16],
                    )
                    return entry

        logger.error(
            "Audit append abandoned: event=%s type=%s", event.id, event.event_type.value,
        )
        raise LedgerIntegrityError(
            f"Could not extend the hash chain with event {event.id} "
            f"after {APPEND_ATTEMPTS} attempts"
        )

    def _tail(self, session: Session) -> tuple[int, str]:
        """Next sequence number and the hash it must chain from."""
        last_entry = session.execute(
            select(AuditEntryDB)
            .order_by(AuditEntryDB.sequence_number.desc())
            .limit(1)
        ).scalar_one_or_none()
        if last_entry is None:
            return 1, GENESIS_HASH
        return last_entry.sequence_number + 1, last_entry.entry_hash

    def _build_entry(
        self, event: DomainEvent, sequence_number: int, previous_hash: str
    ) -> AuditEntryDB:
        payload = json.loads(json.dumps(event.payload, default=str))
        entry_hash = self._compute_hash(
            sequence_number=sequence_number,
            previous_hash=previous_hash,
            event_id=str(event.id),
            event_type=event.event_type.value,
            aggregate_id=event.aggregate_id,
            actor_subject=event.actor_subject,
            actor_role=event.actor_role,
            occurred_at=event.occurred_at,
            payload=payload,
        )
        return AuditEntryDB(
            sequence_number=sequence_number,
            event_id=str(event.id),
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            event_type=event.event_type.value,
            aggregate_id=event.aggregate_id,
            actor_subject=event.actor_subject,
            actor_role=event.actor_role,
            occurred_at=event.occurred_at,
            payload=payload,
        )

    def verify_chain(self) -> tuple[bool, int, str]:
        """
        Verify the integrity of the entire hash chain.

        Returns:
            Tuple of (is_valid, entries_verified, message).
        """
        with self.SessionLocal() as session:
            entries = session.execute(
                select(AuditEntryDB).order_by(AuditEntryDB.sequence_number.asc())
            ).scalars().all()

            if not entries:
                return True, 0, "Ledger is empty"

            if entries[0].previous_hash != GENESIS_HASH:
                return False, 0, "First entry does not chain from the genesis hash"

            for i, entry in enumerate(entries):
                if entry.sequence_number != i + 1:
                    return (
                        False, i,
                        f"Sequence gap: expected {i + 1}, found {entry.sequence_number}",
                    )

                expected_hash = self._compute_hash(
                    sequence_number=entry.sequence_number,
                    previous_hash=entry.previous_hash,
                    event_id=entry.event_id,
                    event_type=entry.event_type,
                    aggregate_id=entry.aggregate_id,
                    actor_subject=entry.actor_subject,
                    actor_role=entry.actor_role,
                    occurred_at=entry.occurred_at,
                    payload=entry.payload,
                )
                if entry.entry_hash != expected_hash:
                    return (
                        False, i,
                        f"Hash mismatch at sequence {entry.sequence_number}: "
                        f"stored={entry.entry_hash[:16]}... "
                        f"computed={expected_hash[:16]}...",
                    )

                if i > 0 and entry.previous_hash != entries[i - 1].entry_hash:
                    return (
                        False, i,
                        f"Chain break at sequence {entry.sequence_number}: "
                        f"previous_hash does not match prior entry's hash",
                    )

            return True, len(entries), f"Chain verified: {len(entries)} entries, integrity intact"

    def get_latest_entries(self, limit: int = 50) -> list[AuditEntryDB]:
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(AuditEntryDB)
                    .order_by(AuditEntryDB.sequence_number.desc())
                    .limit(limit)
                ).scalars().all()
            )

    def get_entries_by_type(self, event_type: str, limit: int = 100) -> list[AuditEntryDB]:
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(AuditEntryDB)
                    .where(AuditEntryDB.event_type == event_type)
                    .order_by(AuditEntryDB.sequence_number.desc())
                    .limit(limit)
                ).scalars().all()
            )

    def get_entries_for_aggregate(self, aggregate_id: str) -> list[AuditEntryDB]:
        """Full history of one profile or role, oldest first."""
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(AuditEntryDB)
                    .where(AuditEntryDB.aggregate_id == str(aggregate_id))
                    .order_by(AuditEntryDB.sequence_number.asc())
                ).scalars().all()
            )

    def get_entry_count(self) -> int:
        with self.SessionLocal() as session:
            result = session.execute(select(func.count()).select_from(AuditEntryDB))
            return result.scalar() or 0

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _compute_hash(
        sequence_number: int,
        previous_hash: str,
        event_id: str,
        event_type: str,
        aggregate_id: str,
        actor_subject: str,
        actor_role: str | None,
        occurred_at: datetime,
        payload: dict[str, Any],
    ) -> str:
        """Hash = SHA-256(previous_hash || canonical_json(entry_fields))."""
        hashable = {
            "sequence_number": sequence_number,
            "previous_hash": previous_hash,
            "event_id": event_id,
            "event_type": event_type,
            "aggregate_id": aggregate_id,
            "actor_subject": actor_subject,
            "actor_role": actor_role,
            "occurred_at": _utc_naive(occurred_at).isoformat(),
            "payload": payload,
        }
        canonical = json.dumps(hashable, sort_keys=True, default=str)
        return hashlib.sha256((previous_hash + canonical).encode("utf-8")).hexdigest()


class AuditLedgerSink(EventSink):
    """Adapts the AuditLedger to the event publisher."""

    def __init__(self, ledger: AuditLedger) -> None:
        self.ledger = ledger

    def publish(self, event: DomainEvent) -> None:
        self.ledger.append(event)
