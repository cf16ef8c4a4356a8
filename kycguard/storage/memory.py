"""In-process aggregate store."""

from __future__ import annotations

import logging
import threading
from typing import Any

from kycguard.errors import VersionConflict
from kycguard.storage.base import A, AggregateStore

logger = logging.getLogger(__name__)


class InMemoryStore(AggregateStore[A]):
    """Dictionary-backed store with the same compare-and-swap contract as SQL."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._items: dict[str, A] = {}
        self._mutex = threading.Lock()

    def find(self, key: Any) -> A | None:
        with self._mutex:
            return self._items.get(str(key))

    def save(self, aggregate: A, expected_version: int) -> A:
        key = str(self.key_of(aggregate))
        with self._mutex:
            current = self._items.get(key)
            if expected_version == 0:
                if current is not None:
                    raise VersionConflict(f"{self.model.__name__} {key} already exists")
            else:
                if current is None:
                    raise self.not_found(f"{self.model.__name__} {key} not found")
                if current.version != expected_version:
                    raise VersionConflict(
                        f"{self.model.__name__} {key} is at version {current.version}, "
                        f"expected {expected_version}"
                    )
            stored = self._stamp(aggregate, expected_version + 1)
            self._items[key] = stored

        logger.debug("Saved %s %s v%d", self.model.__name__, key, stored.version)
        return stored

    def delete(self, key: Any, expected_version: int) -> None:
        key = str(key)
        with self._mutex:
            current = self._items.get(key)
            if current is None:
                raise self.not_found(f"{self.model.__name__} {key} not found")
            if current.version != expected_version:
                raise VersionConflict(
                    f"{self.model.__name__} {key} is at version {current.version}, "
                    f"expected {expected_version}"
                )
            del self._items[key]

    def query(self, **filters: Any) -> list[A]:
        with self._mutex:
            items = list(self._items.values())
        return [
            item for item in items
            if all(self.index_of(item).get(name) == value for name, value in filters.items())
        ]
