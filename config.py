import os
import log
from dotenv import load_dotenv

# Load .env file into environment
load_dotenv()


def _split_tokens(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [token.strip() for token in raw.split(",") if token.strip()]


class Config:
    def __init__(self):
        self.valkey_host = os.getenv("VALKEY_HOST", "localhost")
        self.valkey_port = int(os.getenv("VALKEY_PORT", 6379))
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./experimentation.db")
        self.log_level = os.getenv("LOG_LEVEL", default="INFO")
        self.valid_tokens = _split_tokens(os.getenv("VALID_TOKENS"))
        self.celery_broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1" )
        self.celery_backend_url = os.getenv("CELERY_BACKEND_URL", "redis://localhost:6379/1" )

        # Base address of this service as seen by the admin console client
        self.admin_api_base_url = os.getenv("ADMIN_API_BASE_URL", "http://localhost:8000")
        self.admin_api_token = os.getenv("ADMIN_API_TOKEN", "")
        self.admin_api_max_retries = int(os.getenv("ADMIN_API_MAX_RETRIES", 3))

        # Call setup_logging when the application starts
        log.setup_logging(self.log_level)

    def __repr__(self):
        return f"<Settings host={self.valkey_host} port={self.valkey_port} loglevel={self.log_level}, broker_url:{self.celery_broker_url}, backend_url:{self.celery_backend_url}, admin_api:{self.admin_api_base_url}>"

config = Config()
