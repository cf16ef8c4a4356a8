"""
Aggregate store contract.

A store loads and saves whole aggregates (roles, profiles). ``save`` takes
the version the caller read; if storage has moved on since, it raises
``VersionConflict`` and writes nothing. Version 0 means "not yet stored",
so saving with ``expected_version=0`` is an insert.

Stores also own a table of per-aggregate locks. Services hold the lock
for one key while they load, check and save, so two writers in the same
process serialize on the same profile or role instead of racing.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Generic, Iterator, TypeVar

from pydantic import BaseModel

from kycguard.errors import NotFound

A = TypeVar("A", bound=BaseModel)


class _Slot:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class AggregateLocks:
    """
    ``threading.Lock`` per aggregate key, created on first use.

    Each entry counts the threads holding or waiting on it and is dropped
    when the last one leaves, so the table only holds keys in use.
    """

    def __init__(self) -> None:
        self._slots: dict[str, _Slot] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)

    @contextmanager
    def hold(self, key: Any) -> Iterator[None]:
        name = str(key)
        with self._guard:
            slot = self._slots.get(name)
            if slot is None:
                slot = self._slots[name] = _Slot()
            slot.holders += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._guard:
                slot.holders -= 1
                if slot.holders == 0:
                    del self._slots[name]


class AggregateStore(ABC, Generic[A]):
    """Versioned key/document storage for one aggregate type."""

    def __init__(
        self,
        model: type[A],
        key_of: Callable[[A], Any],
        index_of: Callable[[A], dict[str, Any]] | None = None,
        not_found: type[NotFound] = NotFound,
    ) -> None:
        self.model = model
        self.key_of = key_of
        self.index_of = index_of or (lambda aggregate: {})
        self.not_found = not_found
        self.locks = AggregateLocks()

    def load(self, key: Any) -> A:
        aggregate = self.find(key)
        if aggregate is None:
            raise self.not_found(f"{self.model.__name__} {key} not found")
        return aggregate

    @abstractmethod
    def find(self, key: Any) -> A | None:
        """Return the stored aggregate or None."""

    @abstractmethod
    def save(self, aggregate: A, expected_version: int) -> A:
        """Compare-and-swap write; returns the aggregate with its new version."""

    @abstractmethod
    def delete(self, key: Any, expected_version: int) -> None:
        """Remove an aggregate if its version still matches."""

    @abstractmethod
    def query(self, **filters: Any) -> list[A]:
        """Return aggregates whose index fields equal every filter value."""

    def list_all(self) -> list[A]:
        return self.query()

    def _stamp(self, aggregate: A, version: int) -> A:
        return aggregate.model_copy(update={"version": version})
