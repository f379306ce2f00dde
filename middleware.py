from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from contextvars import ContextVar

import logging
import time
import uuid

# Request ID of the call currently being served, "N/A" outside a request
request_id_context: ContextVar[str] = ContextVar("request_id", default="N/A")

logger = logging.getLogger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    @classmethod
    def request_id_context(cls):
        return request_id_context

    async def dispatch(self, request: Request, call_next):
        # Honour an upstream ID so admin console retries can be correlated
        new_request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        token = request_id_context.set(new_request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = new_request_id
            logger.debug("%s %s -> %d in %.1fms", request.method, request.url.path,
                         response.status_code, (time.perf_counter() - started) * 1000)
        except Exception:
            logger.exception("Unhandled error during %s %s.", request.method, request.url.path)
            raise
        finally:
            request_id_context.reset(token)

        return response
