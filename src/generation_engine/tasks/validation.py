"""Pure request validation run before anything is persisted or charged."""

from __future__ import annotations

from collections.abc import Container

from generation_engine.errors import ValidationError
from generation_engine.tasks.models import GenerationRequest, Tier, WorkType

# (field, minimum, maximum)
PARAMETER_RANGES: tuple[tuple[str, int, int], ...] = (
    ("width", 256, 2048),
    ("height", 256, 2048),
    ("steps", 1, 150),
    ("batch", 1, 4),
    ("image_count", 1, 50),
    ("training_steps", 100, 10_000),
)
KNOWN_WORK_TYPES = frozenset(work_type.value for work_type in WorkType)
KNOWN_TIERS = frozenset(tier.value for tier in Tier)


def collect_request_errors(
    request: GenerationRequest,
    *,
    supported_work_types: Container[str] = KNOWN_WORK_TYPES,
) -> list[str]:
    """Return every problem found in ``request``; empty when valid."""

    errors: list[str] = []
    if not isinstance(request.user_id, str) or not request.user_id.strip():
        errors.append("User ID is required")

    if request.work_type not in KNOWN_WORK_TYPES:
        errors.append(f"Unknown work type: {request.work_type!r}")
    elif request.work_type not in supported_work_types:
        errors.append(f"Work type {request.work_type!r} is not enabled")

    if request.tier not in KNOWN_TIERS:
        errors.append(f"Unknown tier: {request.tier!r}")

    parameters = request.cost_parameters
    for name, minimum, maximum in PARAMETER_RANGES:
        value = getattr(parameters, name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{name.replace('_', ' ').capitalize()} must be an integer")
            continue
        if not minimum <= value <= maximum:
            errors.append(
                f"{name.replace('_', ' ').capitalize()} must be between {minimum} and {maximum}",
            )

    if request.work_type == WorkType.TRAINING.value and parameters.image_count is None:
        errors.append("Image count is required for training")
    return errors


def validate_request(
    request: GenerationRequest,
    *,
    supported_work_types: Container[str] = KNOWN_WORK_TYPES,
) -> None:
    """Raise :class:`ValidationError` listing every problem in ``request``."""

    errors = collect_request_errors(request, supported_work_types=supported_work_types)
    if errors:
        raise ValidationError(errors)
