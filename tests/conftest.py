"""Shared fixtures: an in-memory SQLite database and a FastAPI test client."""

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from homiio import models  # noqa: F401
from homiio.database import Base, get_db
from homiio.main import app, get_current_profile_id

PROFILE_ID = "profile-1"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine, "connect")
    def _no_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def session(session_factory) -> Iterator[Session]:
    with session_factory() as session:
        yield session


@pytest.fixture
def profile_id() -> str:
    return PROFILE_ID


@pytest.fixture
def client(session_factory, profile_id) -> Iterator[TestClient]:
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    async def override_profile():
        return profile_id

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_profile_id] = override_profile
    # Not entered as a context manager, so the startup hook never touches DATABASE_URL
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_address():
    """Factory for raw address input; keyword overrides replace fields."""

    def build(**overrides) -> dict:
        fields = {
            "street": "Calle Mayor",
            "number": "12",
            "city": "Madrid",
            "postal_code": "28013",
            "country": "España",
            "coordinates": [-3.7079, 40.4155],
        }
        fields.update(overrides)
        return fields

    return build
