from __future__ import annotations

import pytest

from kycguard.audit.events import InMemoryEventSink
from kycguard.bootstrap import build_core
from kycguard.config import KycGuardSettings
from kycguard.storage.sql import initialize_schema, make_engine


@pytest.fixture
def sink():
    return InMemoryEventSink()


@pytest.fixture
def core(sink):
    return build_core(KycGuardSettings(storage_backend="memory"), sinks=[sink])


@pytest.fixture
def engine():
    engine = make_engine("sqlite:///:memory:")
    initialize_schema(engine)
    yield engine
    engine.dispose()
