from fastapi import APIRouter, status
from sqlalchemy.orm import Session
from models.events import ParticipationCreate, IngestResponse, AsyncIngestResponse
from services import aggregator
from api.depends import CLIENT_AUTH, DB_DEPENDENCY

from celery_tasks.participation_tasks import ingest_participation
import logging

logger = logging.getLogger(__name__)

events_router = APIRouter(
    prefix="/events",
    tags=["events"],
    dependencies=[CLIENT_AUTH]
)


# POST /events
@events_router.post("", response_model=IngestResponse, status_code=status.HTTP_200_OK)
def ingest_outcome_route(
    event_data: ParticipationCreate,
    db: Session = DB_DEPENDENCY
):
    """
    Record a participation/conversion outcome and report the result to the sender.
    Redelivering the same outcome is safe and answers 'duplicate_ignored'.
    """
    outcome = aggregator.ingest(db, event_data)
    return IngestResponse(
        status=outcome.value,
        experiment_id=event_data.experiment_id,
        participant_id=event_data.participant_id,
    )


# POST /events/async
@events_router.post("/async", response_model=AsyncIngestResponse, status_code=status.HTTP_202_ACCEPTED)
def enqueue_outcome_route(event_data: ParticipationCreate):
    """
    Hand the outcome to a Celery worker and return immediately. The task id can be
    polled on the result backend to learn whether the outcome was accepted.
    """
    # Celery payloads must be JSON serializable, datetimes travel as ISO strings
    task = ingest_participation.delay(event_data.model_dump(mode="json"))
    logger.debug("ingest_participation task queued: %s", task.id)
    return AsyncIngestResponse(status="queued", task_id=task.id)
