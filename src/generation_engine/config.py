"""Runtime configuration for the generation engine."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BASE_COSTS: dict[str, int] = {
    "image": 10,
    "video": 40,
    "audio": 15,
    "text": 5,
    "training": 1000,
}
TIMEOUT_POLICIES = ("leave_processing", "fail_and_refund")


@dataclass(slots=True)
class PollingSettings:
    """External job polling budget."""

    interval_seconds: float = 10.0
    max_attempts: int = 60
    max_concurrent_polls: int = 8
    timeout_policy: str = "leave_processing"

    @property
    def budget_seconds(self) -> float:
        return self.interval_seconds * self.max_attempts


@dataclass(slots=True)
class PricingSettings:
    """Credit cost model parameters."""

    base_costs: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_BASE_COSTS))
    premium_multiplier: int = 2
    size_unit_pixels: int = 512 * 512
    size_unit_cost: int = 5
    free_steps: int = 20
    cost_per_extra_step: float = 0.5
    training_image_cost: int = 50
    training_steps_unit: int = 100
    training_steps_unit_cost: int = 20


@dataclass(slots=True)
class ReconciliationSettings:
    """Sweep of orphaned processing tasks."""

    grace_seconds: int = 900
    batch_size: int = 100


@dataclass(slots=True)
class WorkerSettings:
    """Pending-task worker settings."""

    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}")
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".generation_engine.db")
    sqlite_busy_timeout_ms: int = 5_000
    enabled_work_types: tuple[str, ...] = tuple(DEFAULT_BASE_COSTS)
    polling: PollingSettings = field(default_factory=PollingSettings)
    pricing: PricingSettings = field(default_factory=PricingSettings)
    reconciliation: ReconciliationSettings = field(default_factory=ReconciliationSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worker_defaults = WorkerSettings()
        return cls(
            db_path=db_path
            or Path(os.getenv("GENERATION_ENGINE_DB_PATH", ".generation_engine.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("GENERATION_ENGINE_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            enabled_work_types=_collect_work_types(),
            polling=PollingSettings(
                interval_seconds=float(
                    os.getenv("GENERATION_ENGINE_POLL_INTERVAL_SECONDS", "10.0"),
                ),
                max_attempts=int(os.getenv("GENERATION_ENGINE_POLL_MAX_ATTEMPTS", "60")),
                max_concurrent_polls=int(
                    os.getenv("GENERATION_ENGINE_MAX_CONCURRENT_POLLS", "8"),
                ),
                timeout_policy=os.getenv(
                    "GENERATION_ENGINE_TIMEOUT_POLICY",
                    "leave_processing",
                ).strip().lower(),
            ),
            pricing=PricingSettings(
                base_costs=_collect_base_costs(),
                premium_multiplier=int(os.getenv("GENERATION_ENGINE_PREMIUM_MULTIPLIER", "2")),
            ),
            reconciliation=ReconciliationSettings(
                grace_seconds=int(os.getenv("GENERATION_ENGINE_RECONCILE_GRACE_SECONDS", "900")),
                batch_size=int(os.getenv("GENERATION_ENGINE_RECONCILE_BATCH_SIZE", "100")),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("GENERATION_ENGINE_WORKER_ID", worker_defaults.worker_id),
                poll_interval_seconds=float(
                    os.getenv("GENERATION_ENGINE_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if settings are inconsistent."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("GENERATION_ENGINE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.polling.interval_seconds < 0:
            raise ValueError("GENERATION_ENGINE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.polling.max_attempts <= 0:
            raise ValueError("GENERATION_ENGINE_POLL_MAX_ATTEMPTS must be > 0.")
        if self.polling.max_concurrent_polls <= 0:
            raise ValueError("GENERATION_ENGINE_MAX_CONCURRENT_POLLS must be > 0.")
        if self.polling.timeout_policy not in TIMEOUT_POLICIES:
            raise ValueError(
                "GENERATION_ENGINE_TIMEOUT_POLICY must be one of "
                f"{', '.join(TIMEOUT_POLICIES)}, got {self.polling.timeout_policy!r}.",
            )
        if self.reconciliation.grace_seconds < 0:
            raise ValueError("GENERATION_ENGINE_RECONCILE_GRACE_SECONDS must be >= 0.")
        if not self.enabled_work_types:
            raise ValueError("At least one work type must be enabled.")
        for work_type in self.enabled_work_types:
            if work_type not in self.pricing.base_costs:
                raise ValueError(f"No base cost configured for work type {work_type!r}.")
        for work_type, cost in self.pricing.base_costs.items():
            if cost < 0:
                raise ValueError(f"Base cost must be >= 0: {work_type!r} -> {cost}")
        if self.pricing.premium_multiplier < 1:
            raise ValueError("GENERATION_ENGINE_PREMIUM_MULTIPLIER must be >= 1.")


def _collect_work_types() -> tuple[str, ...]:
    raw = os.getenv("GENERATION_ENGINE_WORK_TYPES", "").strip()
    if not raw:
        return tuple(DEFAULT_BASE_COSTS)
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip().lower()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _collect_base_costs() -> dict[str, int]:
    """Parse ``GENERATION_ENGINE_BASE_COSTS`` overrides.

    Format: ``work_type:cost`` entries separated by ``,``, for example
    ``image:12,video:50``. Unlisted work types keep their defaults.
    """

    costs = dict(DEFAULT_BASE_COSTS)
    raw = os.getenv("GENERATION_ENGINE_BASE_COSTS", "").strip()
    if not raw:
        return costs

    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(
                "Invalid GENERATION_ENGINE_BASE_COSTS entry: "
                f"{token!r}. Expected format '<work_type>:<cost>'.",
            )
        work_type, cost_raw = (value.strip() for value in token.rsplit(":", 1))
        try:
            costs[work_type.lower()] = int(cost_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid GENERATION_ENGINE_BASE_COSTS value for {work_type!r}: {cost_raw!r}",
            ) from error
    return costs
