from sqlalchemy.orm import Session
from data.database import Experiment
from models.experiments import ExperimentAssignmentResponse, ExperimentStatus
from services.allocator import assign_variant, EXCLUDED
from services.cache import CacheClient
from services.lifecycle import get_experiment
import logging

logger = logging.getLogger(__name__)


def get_experiment_definition(db: Session, cache: CacheClient, experiment_id: int) -> Experiment:
    """ Get experiment definition, from cache first """
    experiment = cache.get_experiment(experiment_id=experiment_id)
    if not experiment:
        experiment = get_experiment(db, experiment_id)
        cache.set_experiment(experiment=experiment)
        logger.debug("get_experiment_definition %d cache miss", experiment_id)
    else:
        logger.debug("get_experiment_definition %d cache hit", experiment_id)

    return experiment


def get_assignment(db: Session, cache: CacheClient, experiment_id: int, participant_id: str) -> ExperimentAssignmentResponse:
    """
    Bucket a participant. Assignment is recomputed from the definition on every
    call and is sticky without storing anything. Only running experiments assign,
    in any other status every participant is reported as excluded.
    """
    experiment = get_experiment_definition(db=db, cache=cache, experiment_id=experiment_id)

    variant = EXCLUDED
    if experiment.status == ExperimentStatus.RUNNING.value:
        variant = assign_variant(experiment.id, participant_id, experiment.variants, experiment.traffic_percentage)

    excluded = variant is EXCLUDED
    logger.info("Participant %s on EID %d: %s", participant_id, experiment_id, "excluded" if excluded else variant)
    return ExperimentAssignmentResponse(
        experiment_id=experiment_id,
        participant_id=participant_id,
        variant_name=None if excluded else variant,
        excluded=excluded,
    )
