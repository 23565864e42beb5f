"""Explicit wiring of the engine components."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass

from generation_engine.compute.base import ExternalComputeAdapter
from generation_engine.compute.echo_adapter import EchoComputeAdapter
from generation_engine.compute.registry import AdapterRegistry
from generation_engine.config import Settings
from generation_engine.ledger.repository import CreditLedger
from generation_engine.storage.database import Database
from generation_engine.tasks.events import EventPublisher
from generation_engine.tasks.lifecycle import TaskLifecycleManager
from generation_engine.tasks.polling import PollingSupervisor
from generation_engine.tasks.pricing import CostModel, StandardCostModel
from generation_engine.tasks.reconciliation import ReconciliationSweep
from generation_engine.tasks.repository import TaskRepository
from generation_engine.tasks.worker import TaskWorker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Engine:
    """All long-lived components, built once and passed around."""

    settings: Settings
    database: Database
    ledger: CreditLedger
    repository: TaskRepository
    registry: AdapterRegistry
    manager: TaskLifecycleManager
    supervisor: PollingSupervisor
    reconciliation: ReconciliationSweep

    def worker(self) -> TaskWorker:
        return TaskWorker(
            manager=self.manager,
            supervisor=self.supervisor,
            worker_id=self.settings.worker.worker_id,
            poll_interval_seconds=self.settings.worker.poll_interval_seconds,
        )

    def close(self) -> None:
        self.supervisor.shutdown()
        self.database.close()


def echo_registry(
    work_types: tuple[str, ...],
    adapter: EchoComputeAdapter | None = None,
) -> AdapterRegistry:
    """Registry serving every work type from one in-process echo adapter."""

    shared = adapter or EchoComputeAdapter()
    return AdapterRegistry({work_type: shared for work_type in work_types})


def build_engine(
    settings: Settings,
    *,
    adapters: Mapping[str, ExternalComputeAdapter] | AdapterRegistry | None = None,
    publisher: EventPublisher | None = None,
    cost_model: CostModel | None = None,
) -> Engine:
    """Validate settings, migrate the schema and wire the components.

    Raises ``ConfigurationError`` when an enabled work type has no adapter.
    """

    settings.validate()
    if isinstance(adapters, AdapterRegistry):
        registry = adapters
    elif adapters is not None:
        registry = AdapterRegistry(adapters)
    else:
        registry = echo_registry(settings.enabled_work_types)
    registry.require(settings.enabled_work_types)

    database = Database(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    database.init_schema()
    ledger = CreditLedger(database)
    repository = TaskRepository(database)
    manager = TaskLifecycleManager(
        database=database,
        ledger=ledger,
        repository=repository,
        registry=registry,
        cost_model=cost_model or StandardCostModel(settings.pricing),
        publisher=publisher,
        supported_work_types=frozenset(settings.enabled_work_types),
    )
    supervisor = PollingSupervisor(manager=manager, registry=registry, settings=settings.polling)
    reconciliation = ReconciliationSweep(
        manager=manager,
        supervisor=supervisor,
        settings=settings.reconciliation,
    )
    logger.debug(
        "Engine ready: db=%s work_types=%s",
        settings.db_path,
        ",".join(settings.enabled_work_types),
    )
    return Engine(
        settings=settings,
        database=database,
        ledger=ledger,
        repository=repository,
        registry=registry,
        manager=manager,
        supervisor=supervisor,
        reconciliation=reconciliation,
    )


@contextmanager
def open_engine(
    settings: Settings,
    *,
    adapters: Mapping[str, ExternalComputeAdapter] | AdapterRegistry | None = None,
    publisher: EventPublisher | None = None,
    cost_model: CostModel | None = None,
) -> Iterator[Engine]:
    engine = build_engine(settings, adapters=adapters, publisher=publisher, cost_model=cost_model)
    try:
        yield engine
    finally:
        engine.close()
