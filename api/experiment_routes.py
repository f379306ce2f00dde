from fastapi import APIRouter, Response, status
from sqlalchemy.orm import Session

from models.experiments import (
    ExperimentCreate,
    ExperimentResponse,
    ExperimentListResponse,
    ExperimentAssignmentResponse,
    ExperimentStatus,
    StatusUpdate,
)
from models.results import ExperimentResultsSummary
from services import assignment, lifecycle, statistics
from services.cache import CacheClient
from api.depends import CLIENT_AUTH, DB_DEPENDENCY, CACHE_CLIENT

import logging

logger = logging.getLogger(__name__)

experiment_router = APIRouter(
    prefix="/experiments",
    tags=["experiments"],
    dependencies=[CLIENT_AUTH],  # CLIENT_AUTH is applied to all routes in this router
)


# POST /experiments
@experiment_router.post(
    "",
    response_model=ExperimentResponse,
    status_code=status.HTTP_201_CREATED
)
def create_experiment_route(
    experiment_data: ExperimentCreate,
    db: Session = DB_DEPENDENCY
):
    """Create a new experiment in draft with variants and traffic allocation."""
    return lifecycle.describe(lifecycle.create_new_experiment(db, experiment_data))


# GET /experiments
@experiment_router.get("", response_model=ExperimentListResponse)
def list_experiments_route(
    db: Session = DB_DEPENDENCY,
    status: ExperimentStatus | None = None
):
    """List experiments, newest first, with status and participant count."""
    experiments = lifecycle.list_experiments(db, status=status)
    return ExperimentListResponse(experiments=[lifecycle.describe(e) for e in experiments])


# GET /experiments/{experiment_id}
@experiment_router.get("/{experiment_id}", response_model=ExperimentResponse)
def get_experiment_route(
    experiment_id: int,
    db: Session = DB_DEPENDENCY
):
    return lifecycle.describe(lifecycle.get_experiment(db, experiment_id))


# PATCH /experiments/{experiment_id}
@experiment_router.patch("/{experiment_id}", response_model=ExperimentResponse)
def update_experiment_status_route(
    experiment_id: int,
    update: StatusUpdate,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT
):
    """Start, pause, resume or complete an experiment. Only status can change."""
    return lifecycle.describe(lifecycle.transition(db, cache, experiment_id, update.status))


# DELETE /experiments/{experiment_id}
@experiment_router.delete("/{experiment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_experiment_route(
    experiment_id: int,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT
):
    lifecycle.delete_experiment(db, cache, experiment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# GET /experiments/{experiment_id}/assignment/{participant_id}
@experiment_router.get("/{experiment_id}/assignment/{participant_id}", response_model=ExperimentAssignmentResponse)
def get_participant_assignment_route(
    experiment_id: int,
    participant_id: str,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT
):
    """Deterministic variant for this participant, or excluded."""
    return assignment.get_assignment(db, cache, experiment_id, participant_id)


# GET /experiments/{experiment_id}/results
@experiment_router.get("/{experiment_id}/results", response_model=ExperimentResultsSummary)
def get_experiment_results_route(
    experiment_id: int,
    db: Session = DB_DEPENDENCY
):
    """Per-variant conversion rates with the control/treatment comparison."""
    return statistics.summarize(db, experiment_id)
