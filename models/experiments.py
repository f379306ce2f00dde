from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

# --- Pydantic Models for Requests/Responses ---


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class VariantSpec(BaseModel):
    """Defines a variant and its share of the experiment's traffic."""
    name: str = Field(..., min_length=1, description="Unique name within the experiment (e.g., 'Control').")
    description: str | None = None
    percentage: float = Field(..., ge=0, le=100, description="Share of included traffic (e.g., 50.0).")


class ExperimentCreate(BaseModel):
    """Schema for creating a new experiment via POST /experiments."""
    name: str = Field(..., min_length=1)
    description: str | None = None
    variants: list[VariantSpec]
    traffic_percentage: float = Field(default=100.0, ge=1, le=100, description="Share of eligible participants included at all.")


class StatusUpdate(BaseModel):
    """Body of PATCH /experiments/{id}."""
    status: ExperimentStatus


class ExperimentAction(BaseModel):
    """A transition currently allowed from the experiment's status."""
    action: str
    target: ExperimentStatus


class VariantResponse(BaseModel):
    name: str
    description: str | None = None
    percentage: float

    class Config:
        from_attributes = True


class ExperimentResponse(BaseModel):
    """Schema for an experiment definition and its lifecycle state."""
    id: int
    name: str
    description: str | None = None
    status: ExperimentStatus
    traffic_percentage: float
    participant_count: int = 0
    created_at: datetime
    variants: list[VariantResponse]
    available_actions: list[ExperimentAction] = Field(default_factory=list)

    class Config:
        from_attributes = True


class ExperimentListResponse(BaseModel):
    experiments: list[ExperimentResponse]


class ExperimentAssignmentResponse(BaseModel):
    """Schema returned by GET /experiments/{id}/assignment/{participant_id}."""
    experiment_id: int
    participant_id: str
    variant_name: str | None = None
    excluded: bool
