from pydantic import BaseModel, Field
from datetime import datetime, timezone


class ParticipationCreate(BaseModel):
    """Schema for reporting a participant outcome via POST /events."""
    experiment_id: int
    participant_id: str = Field(..., min_length=1)
    variant_name: str = Field(..., min_length=1)
    converted: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class IngestResponse(BaseModel):
    """Outcome of a synchronous ingestion: 'ok' or 'duplicate_ignored'."""
    status: str
    experiment_id: int
    participant_id: str


class AsyncIngestResponse(BaseModel):
    status: str
    task_id: str
