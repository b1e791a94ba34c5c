import os

# Must be set before anything imports shelter_sync.config – it shrinks retry
# back-off and keeps background services from starting.
os.environ["TESTING"] = "1"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from helpers.sync_helpers import CENTER_URL  # noqa: E402
from helpers.sync_helpers import asgi_client_factory  # noqa: E402
from helpers.sync_helpers import build_node_app  # noqa: E402
from helpers.sync_helpers import seed_shelters  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import shelter_sync.database as _db_mod  # noqa: E402
from shelter_sync.database import Base  # noqa: E402
from shelter_sync.database import initialize_database  # noqa: E402
from shelter_sync.database import make_engine  # noqa: E402
from shelter_sync.database import make_sessionmaker  # noqa: E402
from shelter_sync.events.event_bus import event_bus  # noqa: E402
from shelter_sync.services.object_store import LocalObjectStore  # noqa: E402


def _memory_factory():
    # One shared connection per node: in-memory SQLite lives only as long as it.
    engine = make_engine("sqlite:///:memory:", poolclass=StaticPool)
    initialize_database(engine)
    return engine, make_sessionmaker(engine)


@pytest.fixture
def edge_factory(monkeypatch):
    """Session factory of the node under test (also the process default)."""

    engine, factory = _memory_factory()
    monkeypatch.setattr(_db_mod, "default_session_factory", factory)
    seed_shelters(factory, 1, 2)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(edge_factory):
    """Plain session on the edge database; tests commit explicitly."""

    session = edge_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def center_factory():
    engine, factory = _memory_factory()
    seed_shelters(factory, 1, 2)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def edge_store(tmp_path):
    return LocalObjectStore(str(tmp_path / "edge-media"))


@pytest.fixture
def center_store(tmp_path):
    return LocalObjectStore(str(tmp_path / "center-media"))


@pytest.fixture
def center_app(center_factory, center_store):
    return build_node_app(center_factory, center_store)


@pytest.fixture
def to_center(center_app):
    """Client factory whose requests land on the in-process center node."""

    return asgi_client_factory(center_app)


@pytest.fixture
def edge_app(edge_factory, edge_store, to_center):
    return build_node_app(edge_factory, edge_store, client_factory=to_center)


@pytest.fixture
def client(edge_app):
    """TestClient for the edge node whose peer is the in-process center."""

    return TestClient(edge_app)


@pytest.fixture
def center_client(center_app):
    return TestClient(center_app)


@pytest.fixture(autouse=True)
def _isolate_event_bus():
    saved = {k: set(v) for k, v in event_bus._subscribers.items()}
    yield
    event_bus._subscribers.clear()
    event_bus._subscribers.update(saved)


__all__ = ["CENTER_URL"]
