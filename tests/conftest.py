import pytest

from threadline.cache import ChatStore
from threadline.client import ApiError

from .fakes import FakeApi, FakeClock, MemoryStorage


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def store(storage, clock):
    store = ChatStore(storage=storage, clock=clock)
    store.hydrated = True
    return store


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def server_error():
    return ApiError("POST /chat returned 500", status_code=500)
