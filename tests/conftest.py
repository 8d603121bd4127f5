import pytest

from fakes import FakeCredentials, FakeGenaiClient, GatewayFactory, make_settings
from lumina.dispatcher import ModeDispatcher
from lumina.history_store import HistoryStore
from lumina.history_sync import HistorySynchronizer, LocalHistoryBackend


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def store(settings):
    return HistoryStore(settings.history_db_path)


@pytest.fixture
def history(store):
    return HistorySynchronizer(LocalHistoryBackend(store))


@pytest.fixture
def fake_client():
    return FakeGenaiClient(done_after=2)


@pytest.fixture
def gateway_factory(fake_client, settings):
    return GatewayFactory(fake_client, settings)


@pytest.fixture
def credentials():
    return FakeCredentials(selected=True)


@pytest.fixture
def dispatcher(settings, history, gateway_factory, credentials):
    return ModeDispatcher(settings, history, gateway_factory=gateway_factory, credentials=credentials)
