import os
import tempfile

# CRITICAL: Set environment variables BEFORE any backoffice imports
# These must be set before backoffice.config.settings is loaded
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), "test_backoffice.db")
os.environ["SECRET_KEY"] = "test-secret-key-1234567890"
os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///{_TEST_DB_PATH}"
os.environ["ENVIRONMENT"] = "test"
os.environ["API_V1_STR"] = "/api"  # Ensure /api prefix is used in tests

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

# Now import backoffice modules - they will use the test DATABASE_URL
from backoffice.api import deps
from backoffice.database import Base, get_db, engine as app_engine
from backoffice.main import app
from backoffice.models import RoleName

# Use the same engine that the app uses
TEST_ENGINE = app_engine

TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=TEST_ENGINE, future=True
)


def override_get_db():
    """Test database session that uses the test engine."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


# Override the ORIGINAL function from the database module
app.dependency_overrides[get_db] = override_get_db


def stub_user(role_name: RoleName, *, user_id: int = 1):
    """Create a stub user with the given role for testing."""

    class StubUser:
        def __init__(self):
            self.id = user_id
            self.email = f"{role_name.value}@test.com"
            self.name = role_name.value.title()
            self.active = True
            self.role = type("Role", (), {"name": role_name})()

    return StubUser()


@pytest.fixture(scope="function", autouse=True)
def setup_test_database():
    """
    Create all tables before each test and clean up after.
    Also restores dependency overrides so role switches don't leak between tests.
    """
    original_overrides = dict(app.dependency_overrides)

    Base.metadata.drop_all(bind=TEST_ENGINE)
    Base.metadata.create_all(bind=TEST_ENGINE)

    yield

    app.dependency_overrides.clear()
    app.dependency_overrides.update(original_overrides)

    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db_session():
    """Database session for direct service calls in tests."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def as_role():
    """Switch the authenticated user for API calls, e.g. ``as_role(RoleName.finance)``."""

    def _as(role_name: RoleName):
        user = stub_user(role_name)
        app.dependency_overrides[deps.get_current_user] = lambda: user
        app.dependency_overrides[deps.get_current_user_optional] = lambda: user
        return user

    return _as
