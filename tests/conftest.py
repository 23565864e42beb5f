"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from generation_engine.compute.echo_adapter import EchoComputeAdapter
from generation_engine.config import PollingSettings, ReconciliationSettings, Settings
from generation_engine.engine import Engine, echo_registry, open_engine
from generation_engine.tasks.events import RecordingEventPublisher
from generation_engine.tasks.models import CostParameters, GenerationRequest


def image_request(user_id: str = "alice", **parameters: int) -> GenerationRequest:
    """1024x1024 standard image request; costs 30 credits with default pricing."""

    cost_parameters = {"width": 1024, "height": 1024, **parameters}
    return GenerationRequest(
        user_id=user_id,
        work_type="image",
        payload={"prompt": "a lighthouse at dusk"},
        cost_parameters=CostParameters(**cost_parameters),
    )


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "engine.db",
        polling=PollingSettings(interval_seconds=0.0, max_attempts=5, max_concurrent_polls=4),
        reconciliation=ReconciliationSettings(grace_seconds=0),
    )


@pytest.fixture()
def echo_adapter() -> EchoComputeAdapter:
    return EchoComputeAdapter()


@pytest.fixture()
def publisher() -> RecordingEventPublisher:
    return RecordingEventPublisher()


@pytest.fixture()
def engine(
    settings: Settings,
    echo_adapter: EchoComputeAdapter,
    publisher: RecordingEventPublisher,
) -> Iterator[Engine]:
    with open_engine(
        settings,
        adapters=echo_registry(settings.enabled_work_types, echo_adapter),
        publisher=publisher,
    ) as built:
        yield built
