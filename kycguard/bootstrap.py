"""
kycguard — Wiring of a complete authorization and KYC core.

    core = build_core()
    core.evaluator.can(principal, "kyc:manage")
    core.status_machine.transition(profile_id, "approved", principal)

``build_core`` reads ``KycGuardSettings``, picks the storage backend,
seeds the built-in roles and connects every component to one event
publisher. With the SQL backend, the hash-chained audit ledger is
attached as a sink so every state change is recorded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

import structlog
from sqlalchemy.engine import Engine

from kycguard.access.catalog import RoleCatalog, seed_builtin_roles
from kycguard.access.permissions import PermissionEvaluator
from kycguard.access.role_admin import RoleAdministration
from kycguard.audit.events import EventPublisher, EventSink
from kycguard.audit.ledger import AuditLedger, AuditLedgerSink
from kycguard.config import KycGuardSettings, settings as default_settings
from kycguard.domain.schema import KycProfile, Role
from kycguard.kyc.completion import ProfileCompletionCalculator
from kycguard.kyc.profiles import KycProfileService
from kycguard.kyc.status_machine import KycStatusMachine
from kycguard.kyc.verification import DocumentVerificationLedger
from kycguard.storage.base import AggregateStore
from kycguard.storage.sql import initialize_schema, make_engine
from kycguard.storage.stores import (
    memory_profile_store,
    memory_role_store,
    sql_profile_store,
    sql_role_store,
)


def configure_logging(config: KycGuardSettings | None = None) -> None:
    """Configure structured logging."""
    config = config or default_settings
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass
class KycCore:
    """Every component of a running core, sharing one store pair and publisher."""

    settings: KycGuardSettings
    role_store: AggregateStore[Role]
    profile_store: AggregateStore[KycProfile]
    publisher: EventPublisher
    catalog: RoleCatalog
    evaluator: PermissionEvaluator
    role_admin: RoleAdministration
    status_machine: KycStatusMachine
    verification: DocumentVerificationLedger
    completion: ProfileCompletionCalculator
    profiles: KycProfileService
    engine: Engine | None = None
    ledger: AuditLedger | None = None
    extra_sinks: list[EventSink] = field(default_factory=list)


def build_core(
    config: KycGuardSettings | None = None,
    sinks: Iterable[EventSink] = (),
    engine: Engine | None = None,
) -> KycCore:
    """
    Assemble a core from settings.

    Args:
        config: Settings to use (defaults to the environment-loaded ones).
        sinks: Additional event sinks, e.g. a notification adapter.
        engine: An existing SQLAlchemy engine for the SQL backend.

    Returns:
        A KycCore with built-in roles seeded.
    """
    config = config or default_settings
    log = structlog.get_logger()
    log.info(
        "kycguard.bootstrap.starting",
        storage_backend=config.storage_backend,
        role_cache_ttl_seconds=config.role_cache_ttl_seconds,
    )

    extra_sinks = list(sinks)
    publisher = EventPublisher(extra_sinks)
    ledger = None

    if config.storage_backend == "sql":
        engine = engine or make_engine(config.database_url)
        initialize_schema(engine)
        role_store = sql_role_store(engine)
        profile_store = sql_profile_store(engine)
        ledger = AuditLedger(engine)
        ledger.initialize()
        publisher.subscribe(AuditLedgerSink(ledger))
        log.info("kycguard.bootstrap.ledger_ready", entries=ledger.get_entry_count())
    elif config.storage_backend == "memory":
        role_store = memory_role_store()
        profile_store = memory_profile_store()
    else:
        raise ValueError(f"Unknown storage backend: {config.storage_backend!r}")

    seeded = seed_builtin_roles(role_store)
    log.info("kycguard.bootstrap.roles_seeded", created=seeded)

    catalog = RoleCatalog(role_store, cache_ttl_seconds=config.role_cache_ttl_seconds)
    evaluator = PermissionEvaluator(
        catalog, kyc_admin_min_hierarchy=config.kyc_admin_min_hierarchy,
    )
    status_machine = KycStatusMachine(
        profile_store, evaluator, publisher, validity_days=config.kyc_validity_days,
    )
    completion = ProfileCompletionCalculator()

    core = KycCore(
        settings=config,
        role_store=role_store,
        profile_store=profile_store,
        publisher=publisher,
        catalog=catalog,
        evaluator=evaluator,
        role_admin=RoleAdministration(catalog, evaluator, publisher),
        status_machine=status_machine,
        verification=DocumentVerificationLedger(profile_store, evaluator, publisher),
        completion=completion,
        profiles=KycProfileService(
            profile_store,
            evaluator,
            status_machine,
            completion,
            publisher,
            high_risk_threshold=config.high_risk_threshold,
        ),
        engine=engine,
        ledger=ledger,
        extra_sinks=extra_sinks,
    )
    log.info("kycguard.bootstrap.ready", sinks=len(publisher.sinks))
    return core
