from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

# Internal imports
from config import config
from data.database import create_tables
from api.experiment_routes import experiment_router
from api.events_routes import events_router
from services.errors import ExperimentServiceError, ValidationError, TransientStoreError

import contextlib
import logging
import middleware

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Code before 'yield' runs on startup, code after it on shutdown.
    """
    try:
        logger.info("Application starting up with %s", config)
        create_tables()
        logger.info("Database tables initialized successfully.")
    except Exception as e:
        logger.error(f"Failed to initialize database tables: {e}")
        raise

    yield

    logger.info("Application shutting down: Closing resources...")


# --- FastAPI App Initialization ---
app = FastAPI(
    lifespan=lifespan,
    title="Lost & Found Admin Experimentation API",
    version="1.0.0",
    description="A/B testing for the lost-and-found admin console: lifecycle, assignment, outcomes and results."
)

app.add_middleware(middleware.RequestIDMiddleware)


# --- Error Rendering ---

@app.exception_handler(ExperimentServiceError)
async def experiment_service_error_handler(request: Request, exc: ExperimentServiceError):
    logger.info("%s %s failed with %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(content=exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def store_unavailable_handler(request: Request, exc: OperationalError):
    # Reads outside store_transaction, e.g. lazy loads while rendering a response
    logger.error("%s %s: store unavailable: %s", request.method, request.url.path, exc)
    error = TransientStoreError("Experiment store unavailable, retry later.")
    return JSONResponse(content=error.to_dict(), status_code=error.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{location}: {err.get('msg')}" if location else err.get("msg"))
    error = ValidationError("; ".join(messages) or "Invalid request.")
    return JSONResponse(content=error.to_dict(), status_code=error.status_code)


# --- API Endpoints ---

@app.get("/health")
def health_check():
    return JSONResponse(content={"status": "healthy"}, status_code=status.HTTP_200_OK)


app.include_router(experiment_router)
app.include_router(events_router)
