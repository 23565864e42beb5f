"""Domain models for generation tasks."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING, TaskStatus.CANCELLED}),
    TaskStatus.PROCESSING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def is_legal_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class WorkType(str, Enum):
    """Kinds of externally executed work."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    TEXT = "text"
    TRAINING = "training"


class Tier(str, Enum):
    """Cost tier of the requested model/workflow."""

    STANDARD = "standard"
    PREMIUM = "premium"


@dataclass(frozen=True, slots=True)
class CostParameters:
    """Cost-relevant subset of request parameters."""

    width: int | None = None
    height: int | None = None
    steps: int | None = None
    batch: int | None = None
    image_count: int | None = None
    training_steps: int | None = None

    def to_dict(self) -> dict[str, int]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    """Immutable request attached to a task.

    ``work_type`` is kept as the raw string given by the caller so validation
    can report unknown types instead of failing at construction.
    """

    user_id: str
    work_type: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    cost_parameters: CostParameters = field(default_factory=CostParameters)
    tier: str = Tier.STANDARD.value

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))
        if isinstance(self.work_type, WorkType):
            object.__setattr__(self, "work_type", self.work_type.value)
        if isinstance(self.tier, Tier):
            object.__setattr__(self, "tier", self.tier.value)

    def to_json(self) -> str:
        return json.dumps(
            {
                "user_id": self.user_id,
                "work_type": self.work_type,
                "payload": dict(self.payload),
                "cost_parameters": self.cost_parameters.to_dict(),
                "tier": self.tier,
            },
            ensure_ascii=False,
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> GenerationRequest:
        data = json.loads(raw)
        return cls(
            user_id=data["user_id"],
            work_type=data["work_type"],
            payload=data.get("payload") or {},
            cost_parameters=CostParameters(**(data.get("cost_parameters") or {})),
            tier=data.get("tier", Tier.STANDARD.value),
        )


@dataclass(slots=True)
class GenerationResponse:
    """Result payload recorded on completion."""

    outputs: list[Any] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    processing_ms: int | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "outputs": self.outputs,
                "metadata": self.metadata,
                "processing_ms": self.processing_ms,
            },
            ensure_ascii=False,
            sort_keys=True,
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> GenerationResponse:
        data = json.loads(raw)
        return cls(
            outputs=list(data.get("outputs") or []),
            metadata=dict(data.get("metadata") or {}),
            processing_ms=data.get("processing_ms"),
        )


@dataclass(slots=True)
class GenerationTaskView:
    """Readable task record; the durable contract for dashboards and audit."""

    task_id: str
    user_id: str
    request: GenerationRequest
    status: TaskStatus
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    charged_amount: int | None
    external_job_id: str | None
    result: GenerationResponse | None
    error_detail: str | None
    updated_at: datetime
    projected_cost: int | None = None

    @property
    def work_type(self) -> str:
        return self.request.work_type


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: GenerationTaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class TaskFilter:
    """Options for listing a user's tasks."""

    statuses: tuple[TaskStatus, ...] = ()
    work_type: str | None = None
    limit: int = 50
    offset: int = 0
