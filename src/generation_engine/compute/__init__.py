"""External compute service adapters."""

from generation_engine.compute.base import (
    ComputeUnavailable,
    ExternalComputeAdapter,
    JobResults,
    JobState,
    JobStatus,
)
from generation_engine.compute.echo_adapter import EchoComputeAdapter
from generation_engine.compute.registry import AdapterRegistry

__all__ = [
    "AdapterRegistry",
    "ComputeUnavailable",
    "EchoComputeAdapter",
    "ExternalComputeAdapter",
    "JobResults",
    "JobState",
    "JobStatus",
]
