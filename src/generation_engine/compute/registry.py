"""Work type to compute adapter lookup, built once at startup."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from generation_engine.compute.base import ExternalComputeAdapter
from generation_engine.errors import ConfigurationError


class AdapterRegistry:
    """Explicit table of adapters keyed by work type."""

    def __init__(self, adapters: Mapping[str, ExternalComputeAdapter] | None = None) -> None:
        self._adapters: dict[str, ExternalComputeAdapter] = {}
        for work_type, adapter in (adapters or {}).items():
            self.register(work_type, adapter)

    def register(self, work_type: str, adapter: ExternalComputeAdapter) -> None:
        key = str(getattr(work_type, "value", work_type))
        if key in self._adapters:
            raise ConfigurationError(
                f"Adapter already registered for work type {key!r}",
                details={"work_type": key},
            )
        self._adapters[key] = adapter

    def get(self, work_type: str) -> ExternalComputeAdapter:
        adapter = self._adapters.get(work_type)
        if adapter is None:
            raise ConfigurationError(
                f"No compute adapter registered for work type {work_type!r}",
                details={"work_type": work_type},
            )
        return adapter

    def supports(self, work_type: str) -> bool:
        return work_type in self._adapters

    def __contains__(self, work_type: object) -> bool:
        return work_type in self._adapters

    @property
    def work_types(self) -> tuple[str, ...]:
        return tuple(sorted(self._adapters))

    def require(self, work_types: Iterable[str]) -> None:
        """Fail fast when any enabled work type has no adapter."""

        missing = sorted(work_type for work_type in work_types if work_type not in self._adapters)
        if missing:
            raise ConfigurationError(
                f"No compute adapter registered for: {', '.join(missing)}",
                details={"missing": missing},
            )
