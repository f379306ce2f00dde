import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from data.database import Base, get_db
from main import app
from services.cache import get_cache_client, get_mock_cache_client
from celery_config import celery_app
from celery_tasks import participation_tasks
from config import config

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
config.valid_tokens = ["fake-client-token"]
AUTH_HEADERS = {"Authorization": "Bearer fake-client-token"}

engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.create_all(bind=engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db

# One in-memory cache for the whole run so invalidation is observable across requests
MOCK_CACHE_CLIENT = get_mock_cache_client()
app.dependency_overrides[get_cache_client] = lambda: MOCK_CACHE_CLIENT

# Run Celery tasks in-process against the test database
celery_app.conf.task_always_eager = True
participation_tasks.SessionLocal = TestingSessionLocal


@pytest.fixture(autouse=True, scope="session")
def setup_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def cache_client():
    return MOCK_CACHE_CLIENT


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def headers():
    return dict(AUTH_HEADERS)


@pytest.fixture
def create_experiment(client, headers):
    """Factory creating an experiment through the API, optionally moved to a status."""
    def _create(name="Matching Algorithm V2", variants=None, traffic_percentage=100, status=None):
        payload = {
            "name": name,
            "description": "What are we testing?",
            "variants": variants or [
                {"name": "Control", "description": "Original experience", "percentage": 50},
                {"name": "Treatment", "description": "New experience", "percentage": 50},
            ],
            "traffic_percentage": traffic_percentage,
        }
        response = client.post("/experiments", json=payload, headers=headers)
        assert response.status_code == 201, response.text
        experiment = response.json()

        path = {"running": ["running"], "paused": ["running", "paused"], "completed": ["running", "completed"]}
        for target in path.get(status, []):
            moved = client.patch(f"/experiments/{experiment['id']}", json={"status": target}, headers=headers)
            assert moved.status_code == 200, moved.text
            experiment = moved.json()
        return experiment

    return _create


@pytest.fixture
def session_factory():
    return TestingSessionLocal
