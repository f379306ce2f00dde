"""
Error taxonomy shared by every experimentation service.

Each error carries a machine-checkable ``kind`` and the HTTP status the API layer
answers with. Retry policy belongs to callers:

- ``validation_error``, ``invalid_transition``, ``not_found``: never retried.
- ``conflict``: lost a compare-and-set race, safe to retry once.
- ``transient_store_error``: persistence unavailable, retry with bounded backoff.
"""
from contextlib import contextmanager
from sqlalchemy.exc import OperationalError
import logging

logger = logging.getLogger(__name__)


class ExperimentServiceError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"status": "failed", "kind": self.kind, "error": self.message}


class ValidationError(ExperimentServiceError):
    kind = "validation_error"
    status_code = 422


class InvalidTransitionError(ExperimentServiceError):
    kind = "invalid_transition"
    status_code = 409


class ConflictError(ExperimentServiceError):
    kind = "conflict"
    status_code = 409


class NotFoundError(ExperimentServiceError):
    kind = "not_found"
    status_code = 404


class TransientStoreError(ExperimentServiceError):
    kind = "transient_store_error"
    status_code = 503


ERRORS_BY_KIND: dict[str, type[ExperimentServiceError]] = {
    cls.kind: cls
    for cls in (ValidationError, InvalidTransitionError, ConflictError, NotFoundError, TransientStoreError)
}


@contextmanager
def store_transaction(db, operation: str):
    """
    Roll the session back on any failure so no partial write stays visible, and
    report an unreachable database as TransientStoreError.
    """
    try:
        yield
    except OperationalError as e:
        db.rollback()
        logger.error("Store unavailable during %s: %s", operation, e)
        raise TransientStoreError(f"Experiment store unavailable during {operation}, retry later.") from e
    except Exception:
        db.rollback()
        raise
