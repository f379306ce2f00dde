from sqlalchemy.orm import Session
from data.database import Experiment, Variant, VariantCounter, Participation
from models.experiments import ExperimentCreate, ExperimentResponse, ExperimentAction, ExperimentStatus
from services.allocator import validate_variant_set, validate_traffic_percentage
from services.cache import CacheClient
from services.errors import NotFoundError, InvalidTransitionError, ConflictError, store_transaction
import logging

logger = logging.getLogger(__name__)

# Allowed moves, status -> {action: target status}. Consulted both to accept or
# reject a transition and to tell the admin console which buttons to offer.
TRANSITIONS: dict[ExperimentStatus, dict[str, ExperimentStatus]] = {
    ExperimentStatus.DRAFT: {"start": ExperimentStatus.RUNNING},
    ExperimentStatus.RUNNING: {"pause": ExperimentStatus.PAUSED, "complete": ExperimentStatus.COMPLETED},
    ExperimentStatus.PAUSED: {"resume": ExperimentStatus.RUNNING, "complete": ExperimentStatus.COMPLETED},
    ExperimentStatus.COMPLETED: {},
}


def available_actions(status: ExperimentStatus | str) -> list[ExperimentAction]:
    return [
        ExperimentAction(action=action, target=target)
        for action, target in TRANSITIONS[ExperimentStatus(status)].items()
    ]


def check_transition(current: ExperimentStatus | str, target: ExperimentStatus | str) -> str:
    """Return the action name for current -> target or raise InvalidTransitionError."""
    current, target = ExperimentStatus(current), ExperimentStatus(target)
    for action, allowed_target in TRANSITIONS[current].items():
        if allowed_target == target:
            return action
    raise InvalidTransitionError(f"Cannot move experiment from '{current.value}' to '{target.value}'.")


def describe(experiment: Experiment) -> ExperimentResponse:
    response = ExperimentResponse.model_validate(experiment)
    response.available_actions = available_actions(response.status)
    return response


# --- Experiment Creation ---
def create_new_experiment(db: Session, experiment_data: ExperimentCreate) -> Experiment:
    """Validate the definition, then persist experiment, variants and zeroed counters in one commit."""
    # Nothing is written unless the whole definition is valid
    validate_traffic_percentage(experiment_data.traffic_percentage)
    validate_variant_set(experiment_data.variants)

    with store_transaction(db, "create experiment"):
        db_experiment = Experiment(
            name=experiment_data.name,
            description=experiment_data.description,
            status=ExperimentStatus.DRAFT.value,
            traffic_percentage=experiment_data.traffic_percentage,
            participant_count=0,
        )
        db.add(db_experiment)
        db.flush()  # Flush to get the experiment ID before committing

        for position, v in enumerate(experiment_data.variants):
            name = v.name.strip()
            db.add(Variant(
                experiment_id=db_experiment.id,
                name=name,
                description=v.description,
                percentage=v.percentage,
                position=position,
            ))
            db.add(VariantCounter(experiment_id=db_experiment.id, variant_name=name, participants=0, conversions=0))

        db.commit()
    db.refresh(db_experiment)
    logger.info("create new experiment %s success with experiment id: %d", experiment_data.name, db_experiment.id)
    return db_experiment


def get_experiment(db: Session, experiment_id: int) -> Experiment:
    with store_transaction(db, "read experiment"):
        experiment = db.query(Experiment).filter(Experiment.id == experiment_id).one_or_none()
    if not experiment:
        logger.info("Experiment ID %d not found.", experiment_id)
        raise NotFoundError(f"Experiment ID {experiment_id} not found.")
    return experiment


def list_experiments(db: Session, status: ExperimentStatus | None = None) -> list[Experiment]:
    with store_transaction(db, "list experiments"):
        query = db.query(Experiment)
        if status:
            query = query.filter(Experiment.status == ExperimentStatus(status).value)
        return query.order_by(Experiment.created_at.desc(), Experiment.id.desc()).all()


def transition(db: Session, cache: CacheClient, experiment_id: int, target: ExperimentStatus | str) -> Experiment:
    """
    Move an experiment to target status.

    The write is a compare-and-set on the status read just before, so of two
    racing requests only one can succeed; the loser gets ConflictError.
    """
    experiment = get_experiment(db, experiment_id)
    current = ExperimentStatus(experiment.status)
    action = check_transition(current, target)
    target = ExperimentStatus(target)

    with store_transaction(db, f"{action} experiment"):
        updated = db.query(Experiment).filter(
            Experiment.id == experiment_id,
            Experiment.status == current.value,
        ).update({Experiment.status: target.value}, synchronize_session=False)

        if updated == 0:
            logger.warning("RACE DETECTED: status of EID %d changed concurrently, %s rejected.", experiment_id, action)
            raise ConflictError(f"Experiment ID {experiment_id} was modified concurrently, reload and retry.")

        db.commit()

    cache.invalidate_experiment(experiment_id)
    db.refresh(experiment)
    logger.info("Experiment %d %s: %s -> %s", experiment_id, action, current.value, target.value)
    return experiment


def delete_experiment(db: Session, cache: CacheClient, experiment_id: int) -> None:
    """Remove the experiment with its variants, counters and participations."""
    experiment = get_experiment(db, experiment_id)

    with store_transaction(db, "delete experiment"):
        db.query(Participation).filter(Participation.experiment_id == experiment_id).delete(synchronize_session=False)
        db.query(VariantCounter).filter(VariantCounter.experiment_id == experiment_id).delete(synchronize_session=False)
        db.delete(experiment)
        db.commit()

    cache.invalidate_experiment(experiment_id)
    logger.info("Experiment %d deleted.", experiment_id)
