import logging
import os
import sys
from middleware import RequestIDMiddleware

LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(request_id)s] - %(name)s - %(message)s'


class ContextualFilter(logging.Filter):
    """Stamps every record with the request ID of the HTTP call that produced it."""
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = RequestIDMiddleware.request_id_context().get()
        return True


def setup_logging(log_level: str = "INFO", log_filename: str | None = None):
    """
    Configure the root logger with a console handler and, when a filename is
    available, a file handler. Celery workers and the API process share this setup.
    """
    log_filename = log_filename or os.getenv("LOG_FILE", "experiments_admin.log")
    log_filter = ContextualFilter()
    formatter = logging.Formatter(LOG_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_filename:
        handlers.append(logging.FileHandler(log_filename, mode='a'))

    for handler in handlers:
        handler.addFilter(log_filter)
        handler.setFormatter(formatter)

    # basicConfig is a no-op once the root logger has handlers
    logging.basicConfig(level=logging.getLevelName(log_level.upper()), handlers=handlers)
