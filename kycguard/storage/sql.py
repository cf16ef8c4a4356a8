"""
SQLAlchemy-backed aggregate store.

The compare-and-swap is a single ``UPDATE ... WHERE key = :key AND
version = :expected``; zero affected rows means another writer got there
first. Inserts rely on the primary key to reject duplicates.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine, delete, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from kycguard.errors import VersionConflict
from kycguard.storage.base import A, AggregateStore
from kycguard.storage.models import Base

logger = logging.getLogger(__name__)


def make_engine(database_url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across sessions."""
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, echo=False)


def initialize_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


class SqlAlchemyStore(AggregateStore[A]):
    """
    Aggregate store over one of the tables in ``kycguard.storage.models``.

    Usage:
        engine = make_engine("sqlite:///:memory:")
        initialize_schema(engine)
        roles = SqlAlchemyStore(engine, RoleDB, Role, key_of=lambda r: r.name)
    """

    def __init__(self, engine: Engine, table: type, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.engine = engine
        self.table = table
        self.SessionLocal = sessionmaker(bind=engine)

    def find(self, key: Any) -> A | None:
        with self.SessionLocal() as session:
            row = session.get(self.table, str(key))
            if row is None:
                return None
            return self._to_model(row)

    def save(self, aggregate: A, expected_version: int) -> A:
        key = str(self.key_of(aggregate))
        stored = self._stamp(aggregate, expected_version + 1)
        values = {
            "version": stored.version,
            "document": stored.model_dump(mode="json"),
            "updated_at": datetime.now(timezone.utc),
            **self.index_of(stored),
        }

        with self.SessionLocal() as session:
            if expected_version == 0:
                session.add(self.table(key=key, **values))
                try:
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    raise VersionConflict(
                        f"{self.model.__name__} {key} already exists"
                    ) from exc
            else:
                result = session.execute(
                    update(self.table)
                    .where(self.table.key == key, self.table.version == expected_version)
                    .values(**values)
                )
                if result.rowcount == 0:
                    session.rollback()
                    self._raise_missing_or_conflict(session, key, expected_version)
                session.commit()

        logger.debug("Saved %s %s v%d", self.model.__name__, key, stored.version)
        return stored

    def delete(self, key: Any, expected_version: int) -> None:
        key = str(key)
        with self.SessionLocal() as session:
            result = session.execute(
                delete(self.table)
                .where(self.table.key == key, self.table.version == expected_version)
            )
            if result.rowcount == 0:
                session.rollback()
                self._raise_missing_or_conflict(session, key, expected_version)
            session.commit()

    def query(self, **filters: Any) -> list[A]:
        stmt = select(self.table)
        for name, value in filters.items():
            stmt = stmt.where(getattr(self.table, name) == value)
        with self.SessionLocal() as session:
            rows = session.execute(stmt.order_by(self.table.key)).scalars().all()
            return [self._to_model(row) for row in rows]

    # ── Internal ────────────────────────────────────────────────

    def _to_model(self, row: Any) -> A:
        return self.model.model_validate(row.document)

    def _raise_missing_or_conflict(self, session: Any, key: str, expected_version: int) -> None:
        current = session.get(self.table, key)
        if current is None:
            raise self.not_found(f"{self.model.__name__} {key} not found")
        raise VersionConflict(
            f"{self.model.__name__} {key} is at version {current.version}, "
            f"expected {expected_version}"
        )
