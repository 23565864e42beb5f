"""Credit cost estimation for generation requests."""

from __future__ import annotations

import math
from typing import Protocol

from generation_engine.config import PricingSettings
from generation_engine.tasks.models import GenerationRequest, Tier, WorkType


class CostModel(Protocol):
    """Pluggable cost function used by the lifecycle manager."""

    def estimate(self, request: GenerationRequest, *, discount_percent: int = 0) -> int:
        """Return the projected cost in whole credits."""


class StandardCostModel:
    """Base cost per work type plus size/steps scaling.

    Generation work: ``base + ceil(pixels / size_unit) * size_unit_cost +
    max(0, steps - free_steps) * cost_per_extra_step``, times ``batch``.
    Training work: ``base + image_count * training_image_cost +
    floor(training_steps / steps_unit) * steps_unit_cost``.
    Premium tier multiplies the base cost. The discount is applied last and
    the total is rounded up to whole credits before discounting, down after.
    """

    def __init__(self, settings: PricingSettings | None = None) -> None:
        self.settings = settings or PricingSettings()

    def estimate(self, request: GenerationRequest, *, discount_percent: int = 0) -> int:
        if not 0 <= discount_percent <= 100:
            raise ValueError(f"Discount must be within 0..100, got {discount_percent}")
        if request.work_type == WorkType.TRAINING.value:
            total = self._training_cost(request)
        else:
            total = self._generation_cost(request)
        if discount_percent > 0:
            total = math.floor(total * (100 - discount_percent) / 100)
        return max(0, total)

    def _base_cost(self, request: GenerationRequest) -> int:
        base = self.settings.base_costs.get(request.work_type)
        if base is None:
            raise ValueError(f"No base cost configured for work type {request.work_type!r}")
        if request.tier == Tier.PREMIUM.value:
            base *= self.settings.premium_multiplier
        return base

    def _generation_cost(self, request: GenerationRequest) -> int:
        parameters = request.cost_parameters
        cost: float = self._base_cost(request)
        if parameters.width and parameters.height:
            units = math.ceil(parameters.width * parameters.height / self.settings.size_unit_pixels)
            cost += units * self.settings.size_unit_cost
        if parameters.steps:
            extra_steps = max(0, parameters.steps - self.settings.free_steps)
            cost += extra_steps * self.settings.cost_per_extra_step
        return math.ceil(cost) * (parameters.batch or 1)

    def _training_cost(self, request: GenerationRequest) -> int:
        parameters = request.cost_parameters
        cost = self._base_cost(request)
        cost += (parameters.image_count or 0) * self.settings.training_image_cost
        if parameters.training_steps:
            cost += (
                parameters.training_steps // self.settings.training_steps_unit
            ) * self.settings.training_steps_unit_cost
        return cost
