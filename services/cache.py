import logging
from data.database import Experiment
from config import config

logger = logging.getLogger(__name__)

# --- Configuration Constants ---
EXPERIMENT_CACHE_TTL = 60  # seconds; status changes and deletes invalidate explicitly

# --- Valkey/Redis Backend Implementations ---


class _MockValkeyBackend:
    """Simulates the low-level Valkey/Redis client (in-memory)."""
    def __init__(self):
        self._cache = {}

    def get(self, key: str) -> str | None:
        logger.debug("cache mock get: %s", key)
        return self._cache.get(key)

    def set(self, key: str, value: str, ex: int):
        # 'ex' is ignored, entries live until deleted
        logger.debug("cache mock set: %s", key)
        self._cache[key] = value

    def delete(self, key: str):
        logger.debug("cache mock delete: %s", key)
        self._cache.pop(key, None)


class RealValkeyBackend:
    """Real implementation using redis-py client (compatible with Valkey)."""
    def __init__(self, host: str, port: int, db: int = 0, password: str | None = None):
        import redis

        try:
            self.client = redis.Redis(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=True,
                socket_timeout=2.0
            )
            self.client.ping()
        except Exception as e:
            logger.error("Failed to connect to Valkey/Redis: %s", e)
            raise

    # Cache failures degrade to a database read, they never fail the request
    def get(self, key: str) -> str | None:
        try:
            logger.debug("cache valkey get: %s", key)
            return self.client.get(key)
        except Exception as e:
            logger.error("Valkey GET error for key %s: %s", key, e)
            return None

    def set(self, key: str, value: str, ex: int):
        try:
            logger.debug("cache valkey set: %s", key)
            self.client.set(key, value, ex=ex)
        except Exception as e:
            logger.error("Valkey SET error for key %s: %s", key, e)

    def delete(self, key: str):
        try:
            logger.debug("cache valkey delete: %s", key)
            self.client.delete(key)
        except Exception as e:
            logger.error("Valkey DELETE error for key %s: %s", key, e)


# --- Dedicated Cache Client Class ---

class CacheClient:
    """Read-through cache of experiment definitions used by the assignment path."""

    def __init__(self, backend):
        self.backend = backend
        logger.debug("CacheClient backend: %s", self.backend)

    @staticmethod
    def experiment_key(experiment_id: int) -> str:
        return f"exp:{experiment_id}"

    def get_experiment(self, experiment_id: int) -> Experiment | None:
        json_str = self.backend.get(self.experiment_key(experiment_id))
        if json_str:
            logger.debug("cache hit for experiment %d", experiment_id)
            return Experiment.from_json(json_str=json_str)

        return None

    def set_experiment(self, experiment: Experiment):
        # Participations and counters change on every event, only the definition is cached
        json_str = experiment.to_json(exclude_relationships_key=["participations", "counters"])
        self.backend.set(self.experiment_key(experiment.id), json_str, ex=EXPERIMENT_CACHE_TTL)
        logger.debug("Experiment %d cached.", experiment.id)

    def invalidate_experiment(self, experiment_id: int):
        self.backend.delete(self.experiment_key(experiment_id))
        logger.debug("Experiment %d evicted from cache.", experiment_id)


# --- Initialize Backend and Default Client ---
valkey_host = config.valkey_host
valkey_port = config.valkey_port

logger.info("valkey_host: %s, port: %d", valkey_host, valkey_port)

if valkey_host:
    try:
        VALKEY_BACKEND = RealValkeyBackend(host=valkey_host, port=valkey_port)
    except Exception:
        logger.info("Falling back to Mock Valkey Backend due to connection failure.")
        VALKEY_BACKEND = _MockValkeyBackend()
else:
    logger.info("VALKEY_HOST not set. Using Mock Valkey Backend.")
    VALKEY_BACKEND = _MockValkeyBackend()

_DEFAULT_CACHE_CLIENT = CacheClient(backend=VALKEY_BACKEND)


def get_cache_client():
    return _DEFAULT_CACHE_CLIENT


def get_mock_cache_client():
    return CacheClient(backend=_MockValkeyBackend())
