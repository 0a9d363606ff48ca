import pytest

from app.db import InMemoryDB
from app.services.auth_service import AuthService, DeviceIdentity
from app.services.sessions import TransferSessionManager
from app.services.store import InMemorySessionStore
from tests.fakes import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database():
    return InMemoryDB()


@pytest.fixture
def store(database):
    return InMemorySessionStore(database)


@pytest.fixture
def auth(database):
    return AuthService(database)


@pytest.fixture
def alice(auth):
    """Alice's desktop, already signed in."""
    return DeviceIdentity(auth, auth.sign_in("alice", "password123"))


@pytest.fixture
def phone(auth):
    """A second device with no session yet."""
    return DeviceIdentity(auth)


@pytest.fixture
def manager(store, alice, clock):
    return TransferSessionManager(store, identity=alice, clock=clock, backoff_ms=0)


@pytest.fixture
def consumer_manager(store, clock):
    return TransferSessionManager(store, clock=clock, backoff_ms=0)
