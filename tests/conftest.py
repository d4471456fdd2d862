import httpx
import pytest

from kidspoints_api import (
    APIConfig,
    ApiClient,
    EventBus,
    MemoryStorage,
    StaticConnectivityProbe,
    TokenStore,
)

from .helpers import BASE_URL, FakeBackend, SleepRecorder


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def storage():
    return MemoryStorage({"access_token": "a1", "refresh_token": "r1", "user_data": '{"id": 1}'})


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def make_client(backend, storage, sleeps, events):
    def factory(**config_overrides) -> ApiClient:
        online = config_overrides.pop("online", True)
        config = APIConfig(base_url=BASE_URL, **config_overrides)
        return ApiClient(
            config,
            token_store=TokenStore(storage),
            connectivity=StaticConnectivityProbe(online=online),
            events=events,
            transport=httpx.MockTransport(backend),
            sleep=sleeps,
        )

    return factory
