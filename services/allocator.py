"""
Variant set validation and deterministic participant bucketing.

Everything here is a pure function of its arguments: no database, no cache and no
locks, so any number of API workers can bucket concurrently and a participant
always lands in the same variant of the same experiment.
"""
import hashlib
import math
from typing import Iterable, Protocol

from services.errors import ValidationError

MIN_VARIANTS = 2
# Bucket resolution: values are spread over [0, 100) in steps of 1/BUCKET_SCALE
BUCKET_SCALE = 10_000


class VariantLike(Protocol):
    name: str
    percentage: float


class _Excluded:
    """Marker for a participant outside the experiment's traffic slice."""

    def __repr__(self):
        return "EXCLUDED"

    def __bool__(self):
        return False


EXCLUDED = _Excluded()


def validate_variant_set(variants: Iterable[VariantLike]) -> None:
    """Raise ValidationError unless the variants form a usable split of 100%."""
    variants = list(variants)
    if len(variants) < MIN_VARIANTS:
        raise ValidationError(f"An experiment needs at least {MIN_VARIANTS} variants, got {len(variants)}.")

    seen: set[str] = set()
    for v in variants:
        name = (v.name or "").strip()
        if not name:
            raise ValidationError("Variant names must not be empty.")
        if name in seen:
            raise ValidationError(f"Duplicate variant name '{name}'.")
        seen.add(name)
        if v.percentage is None or v.percentage < 0:
            raise ValidationError(f"Variant '{name}' has a negative percentage ({v.percentage}).")
        if v.percentage > 100:
            raise ValidationError(f"Variant '{name}' percentage {v.percentage} exceeds 100.")

    # exact match, no rounding tolerance
    total = math.fsum(v.percentage for v in variants)
    if total != 100:
        raise ValidationError(f"Variant percentages must sum to exactly 100, got {total:g}.")


def validate_traffic_percentage(traffic_percentage: float) -> None:
    if traffic_percentage is None or not 1 <= traffic_percentage <= 100:
        raise ValidationError(f"Traffic percentage must be between 1 and 100, got {traffic_percentage}.")


def bucket_value(experiment_id, participant_id: str) -> float:
    """Stable value in [0, 100) derived from the (experiment, participant) pair."""
    digest = hashlib.sha256(f"{experiment_id}:{participant_id}".encode("utf-8")).digest()
    return (int.from_bytes(digest[:8], "big") % (100 * BUCKET_SCALE)) / BUCKET_SCALE


def assign_variant(experiment_id, participant_id: str, variants: list[VariantLike], traffic_percentage: float):
    """
    Return the variant name for this participant, or EXCLUDED when the participant
    falls outside the traffic slice.

    The bucket value is first compared to traffic_percentage, then rescaled to
    [0, 100) and matched against the cumulative variant ranges in declared order.
    """
    value = bucket_value(experiment_id, participant_id)
    if value >= traffic_percentage:
        return EXCLUDED

    scaled = value / traffic_percentage * 100
    cumulative = 0.0
    last_eligible = None
    for v in variants:
        if v.percentage <= 0:
            continue
        cumulative += v.percentage
        last_eligible = v.name
        if scaled < cumulative:
            return v.name

    # float accumulation can leave scaled a hair above the final bound
    return last_eligible if last_eligible is not None else EXCLUDED
