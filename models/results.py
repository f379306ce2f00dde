from pydantic import BaseModel, Field
from datetime import datetime


class VariantCounters(BaseModel):
    """Aggregated counts for one variant, as stored."""
    participants: int = 0
    conversions: int = 0


class VariantResult(BaseModel):
    """Detailed statistics for a single variant."""
    name: str
    participants: int
    conversions: int
    conversion_rate: float  # conversions / participants * 100, one decimal


class TreatmentComparison(BaseModel):
    variant: str
    conversion_rate: float
    relative_lift: float


class Comparison(BaseModel):
    """
    Control against treatment. needs_more_data is a minimum sample size gate,
    it does not claim statistical significance.
    """
    control_variant: str
    control_conversion_rate: float
    treatment_variant: str
    treatment_conversion_rate: float
    relative_lift: float
    needs_more_data: bool
    treatments: list[TreatmentComparison] = Field(default_factory=list)


class ExperimentResultsSummary(BaseModel):
    """Schema returned by GET /experiments/{id}/results."""
    experiment_id: int
    experiment_name: str
    status: str
    total_participants: int
    report_generated_at: datetime
    variants: list[VariantResult]
    comparison: Comparison
