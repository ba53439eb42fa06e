import pytest

from xec_engine.command import SSHOptions
from xec_engine.connection_pool import ConnectionPool
from xec_engine.events import EventEmitter

from fakes import FakeConnector, RecordingSleep


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def pool(connector, events):
    return ConnectionPool(connect=connector, idle_timeout=60.0, events=events)


@pytest.fixture
def ssh_options():
    return SSHOptions(host="10.0.0.5", username="deploy", password="s3cret")


@pytest.fixture
def sleep():
    return RecordingSleep()
