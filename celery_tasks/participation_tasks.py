from celery_config import celery_app
from data.database import SessionLocal
from models.events import ParticipationCreate
from services import aggregator
from services.errors import TransientStoreError, ConflictError, ValidationError
from typing import Any
import logging

logger = logging.getLogger(__name__)

# Exponential backoff between attempts, capped, for failures that may clear on their own
MAX_RETRIES = 3
RETRY_BACKOFF_MAX = 60


@celery_app.task(
    bind=True,
    autoretry_for=(TransientStoreError, ConflictError),
    max_retries=MAX_RETRIES,
    retry_backoff=True,
    retry_backoff_max=RETRY_BACKOFF_MAX,
    retry_jitter=True,
)
def ingest_participation(self, payload: dict[str, Any]) -> str:
    """
    Apply one upstream outcome event off the request path.

    The aggregator is idempotent, so redeliveries and retries are safe. Rejected
    events are re-raised so the task ends in FAILURE and the producer can see why.
    """
    record = ParticipationCreate.model_validate(payload)
    db = SessionLocal()
    try:
        outcome = aggregator.ingest(db, record)
        logger.info("Task %s[%s]: participant %s on EID %d -> %s.",
                    self.name, self.request.id, record.participant_id, record.experiment_id, outcome.value)
        return outcome.value
    except ValidationError as exc:
        logger.error("Task %s[%s]: outcome rejected: %s", self.name, self.request.id, exc.message)
        raise
    except (TransientStoreError, ConflictError) as exc:
        logger.warning("Task %s[%s]: %s, retry %d/%d.",
                       self.name, self.request.id, exc.message, self.request.retries + 1, MAX_RETRIES)
        raise
    finally:
        db.close()
