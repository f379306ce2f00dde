import logging
import time
from typing import Any, Callable

import httpx

from config import config
from models.experiments import ExperimentCreate, ExperimentStatus
from models.events import ParticipationCreate

logger = logging.getLogger(__name__)

RETRYABLE_KIND = "transient_store_error"
CONFLICT_KIND = "conflict"


class ExperimentsApiError(Exception):
    """Structured failure from the experimentation API, ready to show to an admin."""

    def __init__(self, kind: str, message: str, status_code: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind in (RETRYABLE_KIND, CONFLICT_KIND)


class ExperimentsApiClient:
    """
    Admin console transport for the experimentation endpoints.

    The base URL is injected, nothing reads a global address. Transient store
    failures are retried with capped exponential backoff, a lost compare-and-set
    race is retried once, anything else is raised to the caller as is.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @classmethod
    def from_config(cls, **kwargs) -> "ExperimentsApiClient":
        return cls(
            base_url=config.admin_api_base_url,
            token=config.admin_api_token,
            max_retries=config.admin_api_max_retries,
            **kwargs,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        self.client.close()

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)

    @staticmethod
    def _to_error(response: httpx.Response) -> ExperimentsApiError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        kind = body.get("kind") or ("transient_store_error" if response.status_code >= 500 else "error")
        message = body.get("error") or body.get("detail") or "Request failed"
        return ExperimentsApiError(kind=kind, message=str(message), status_code=response.status_code)

    def _request(self, method: str, path: str, **kwargs) -> Any:
        conflict_retried = False
        attempt = 0
        while True:
            try:
                response = self.client.request(method, path, **kwargs)
            except httpx.TransportError as e:
                error = ExperimentsApiError(kind=RETRYABLE_KIND, message=f"Experimentation API unreachable: {e}")
            else:
                if response.is_success:
                    if response.status_code == 204 or not response.content:
                        return None
                    return response.json()
                error = self._to_error(response)

            if error.kind == CONFLICT_KIND and not conflict_retried:
                conflict_retried = True
                logger.warning("%s %s lost a concurrent update, retrying once.", method, path)
                continue

            if error.kind == RETRYABLE_KIND and attempt < self.max_retries:
                delay = self._backoff(attempt)
                attempt += 1
                logger.warning("%s %s failed (%s), retry %d/%d in %.1fs.",
                               method, path, error.message, attempt, self.max_retries, delay)
                self._sleep(delay)
                continue

            logger.error("%s %s failed with %s: %s", method, path, error.kind, error.message)
            raise error

    # --- Experiments ---

    def list_experiments(self, status: ExperimentStatus | str | None = None) -> list[dict]:
        params = {"status": ExperimentStatus(status).value} if status else None
        return self._request("GET", "/experiments", params=params)["experiments"]

    def get_experiment(self, experiment_id: int) -> dict:
        return self._request("GET", f"/experiments/{experiment_id}")

    def create_experiment(self, experiment: ExperimentCreate) -> dict:
        return self._request("POST", "/experiments", json=experiment.model_dump(mode="json"))

    def update_status(self, experiment_id: int, status: ExperimentStatus | str) -> dict:
        return self._request("PATCH", f"/experiments/{experiment_id}", json={"status": ExperimentStatus(status).value})

    def delete_experiment(self, experiment_id: int) -> None:
        self._request("DELETE", f"/experiments/{experiment_id}")

    def get_assignment(self, experiment_id: int, participant_id: str) -> dict:
        return self._request("GET", f"/experiments/{experiment_id}/assignment/{participant_id}")

    def get_results(self, experiment_id: int) -> dict:
        return self._request("GET", f"/experiments/{experiment_id}/results")

    # --- Outcomes ---

    def record_outcome(self, outcome: ParticipationCreate) -> str:
        return self._request("POST", "/events", json=outcome.model_dump(mode="json"))["status"]
