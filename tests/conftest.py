import pytest

from auth import AuthService
from database import KeyValueStore, LocalStore
from repositories import Repositories


@pytest.fixture
def store(tmp_path):
    store = LocalStore(str(tmp_path / "data"))
    assert store.initialize()
    return store


@pytest.fixture
def repos(store):
    return Repositories(store)


@pytest.fixture
def session_store(tmp_path):
    return KeyValueStore(str(tmp_path / "settings" / "session.json"))


@pytest.fixture
def auth(repos, session_store):
    return AuthService(repos.users, session_store)
