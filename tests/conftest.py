# tests/conftest.py
import pytest

from tests.helpers.chat_fakes import FakeChatBackend, FakeClock, FakeTransport
from topicchat.core.crypto import reset_key_cache
from topicchat.services.event_bus import EventBus


@pytest.fixture(autouse=True)
def _fresh_key_cache():
    reset_key_cache()
    yield
    reset_key_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def backend() -> FakeChatBackend:
    backend = FakeChatBackend()
    backend.add_author("user-1", "Alice")
    backend.add_author("user-2", "Bob")
    return backend


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def no_encryption(monkeypatch):
    """Run with message encryption disabled."""
    from topicchat.core.config import settings

    monkeypatch.setattr(settings, "message_encryption_key", "")
    reset_key_cache()
    yield
    reset_key_cache()


@pytest.fixture
def db_engine():
    """Fresh in-memory database with every chat table created."""
    import topicchat.models  # noqa: F401
    from topicchat.database import Base, create_db_engine

    engine = create_db_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from sqlalchemy.orm import sessionmaker

    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()
