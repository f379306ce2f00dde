from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from data.database import Experiment, VariantCounter, Participation
from models.events import ParticipationCreate
from models.experiments import ExperimentStatus
from models.results import VariantCounters
from services.lifecycle import get_experiment
from services.errors import ValidationError, ConflictError, store_transaction
from enum import Enum
import logging

logger = logging.getLogger(__name__)

# Define the maximum number of times to retry after losing a first-insert race
MAX_RETRIES = 3

# Paused experiments still take late deliveries of outcomes that happened while running
ACCEPTING_STATUSES = {ExperimentStatus.RUNNING.value, ExperimentStatus.PAUSED.value}


class IngestOutcome(str, Enum):
    OK = "ok"
    DUPLICATE_IGNORED = "duplicate_ignored"


def _increment_counters(db: Session, experiment_id: int, variant_name: str, participants: int, conversions: int):
    """Atomic SQL-side increment, concurrent writers never overwrite each other."""
    db.query(VariantCounter).filter(
        VariantCounter.experiment_id == experiment_id,
        VariantCounter.variant_name == variant_name,
    ).update({
        VariantCounter.participants: VariantCounter.participants + participants,
        VariantCounter.conversions: VariantCounter.conversions + conversions,
    }, synchronize_session=False)


def _claim_accepting(db: Session, experiment_id: int, participants: int):
    """
    Bump participant_count only while the experiment still accepts outcomes.

    The status check travels with the write, so an outcome racing a complete
    (or a delete) cannot land after it.
    """
    claimed = db.query(Experiment).filter(
        Experiment.id == experiment_id,
        Experiment.status.in_(ACCEPTING_STATUSES),
    ).update({Experiment.participant_count: Experiment.participant_count + participants}, synchronize_session=False)

    if claimed == 0:
        logger.warning("RACE DETECTED: EID %d stopped accepting outcomes during ingest.", experiment_id)
        raise ValidationError(f"Experiment ID {experiment_id} no longer accepts outcomes.")


def _validate_target(db: Session, record: ParticipationCreate) -> Experiment:
    experiment = db.query(Experiment).filter(Experiment.id == record.experiment_id).one_or_none()
    if not experiment:
        raise ValidationError(f"Unknown experiment ID {record.experiment_id}.")
    if experiment.status not in ACCEPTING_STATUSES:
        raise ValidationError(f"Experiment ID {record.experiment_id} is {experiment.status} and does not accept outcomes.")
    if record.variant_name not in {v.name for v in experiment.variants}:
        raise ValidationError(f"Unknown variant '{record.variant_name}' for experiment ID {record.experiment_id}.")
    return experiment


def _apply(db: Session, record: ParticipationCreate) -> IngestOutcome:
    _validate_target(db, record)

    existing = db.query(Participation).filter(
        Participation.experiment_id == record.experiment_id,
        Participation.participant_id == record.participant_id,
    ).one_or_none()

    if existing is None:
        db.add(Participation(
            experiment_id=record.experiment_id,
            participant_id=record.participant_id,
            variant_name=record.variant_name,
            converted=record.converted,
            recorded_at=record.timestamp,
        ))
        db.flush()  # raises IntegrityError here if a concurrent ingest inserted first

        _claim_accepting(db, record.experiment_id, participants=1)
        _increment_counters(db, record.experiment_id, record.variant_name,
                            participants=1, conversions=1 if record.converted else 0)
        db.commit()
        logger.info("Participant %s counted for %s (EID %d), converted=%s.",
                    record.participant_id, record.variant_name, record.experiment_id, record.converted)
        return IngestOutcome.OK

    if existing.variant_name != record.variant_name:
        raise ValidationError(
            f"Participant {record.participant_id} is already counted under variant "
            f"'{existing.variant_name}' for experiment ID {record.experiment_id}."
        )

    if record.converted and not existing.converted:
        # compare-and-set on the flag, only one redelivery may add the conversion
        flipped = db.query(Participation).filter(
            Participation.id == existing.id,
            Participation.converted.is_(False),
        ).update({Participation.converted: True}, synchronize_session=False)

        if flipped:
            _claim_accepting(db, record.experiment_id, participants=0)
            _increment_counters(db, record.experiment_id, record.variant_name, participants=0, conversions=1)
            db.commit()
            logger.info("Participant %s converted on %s (EID %d).",
                        record.participant_id, record.variant_name, record.experiment_id)
            return IngestOutcome.OK

    db.rollback()
    logger.debug("Duplicate outcome for participant %s (EID %d) ignored.", record.participant_id, record.experiment_id)
    return IngestOutcome.DUPLICATE_IGNORED


def ingest(db: Session, record: ParticipationCreate) -> IngestOutcome:
    """
    Record one participation/conversion outcome.

    Deliveries are at-least-once: a participant is counted once per experiment,
    a later converted=True over a stored False adds the conversion, any other
    repeat is reported as DUPLICATE_IGNORED and leaves counters untouched.
    """
    for attempt in range(MAX_RETRIES):
        try:
            with store_transaction(db, "ingest outcome"):
                return _apply(db, record)
        except IntegrityError:
            # The next pass reads the participation written by the competing request
            logger.warning("RACE DETECTED: IntegrityError on participant %s (EID %d). Retrying (Attempt %d/%d)...",
                           record.participant_id, record.experiment_id, attempt + 2, MAX_RETRIES)

    logger.warning("Failed to ingest outcome for participant %s after %d attempts.", record.participant_id, MAX_RETRIES)
    raise ConflictError(f"Outcome for participant {record.participant_id} could not be applied, retry delivery.")


def snapshot(db: Session, experiment_id: int) -> dict[str, VariantCounters]:
    """Per-variant counters in declared variant order, as of the call."""
    with store_transaction(db, "read counters"):
        experiment = get_experiment(db, experiment_id)
        rows = db.query(
            VariantCounter.variant_name,
            VariantCounter.participants,
            VariantCounter.conversions,
        ).filter(VariantCounter.experiment_id == experiment_id).all()

    stored = {name: VariantCounters(participants=participants, conversions=conversions)
              for name, participants, conversions in rows}
    return {v.name: stored.get(v.name, VariantCounters()) for v in experiment.variants}
