import pytest
import pytest_asyncio

from chatbridge.config import Config
from chatbridge.database.repository import Repository
from chatbridge.session import BridgeCoordinator

from .fakes import Clock, FakeConsumer, FakeUpstream


@pytest_asyncio.fixture
async def repo(tmp_path):
    repository = Repository(tmp_path / "test.db")
    await repository.connect()
    yield repository
    await repository.close()


@pytest.fixture
def config(tmp_path):
    return Config(
        tg_api_id=12345,
        tg_api_hash="test-hash",
        data_dir=tmp_path,
        reconnect_delay=0.01,
        backfill_timeout=0.2,
        contact_sync_delay=0,
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def consumer():
    return FakeConsumer()


@pytest_asyncio.fixture
async def coordinator(config, repo, upstream, clock, consumer):
    bridge = BridgeCoordinator(config, repo, upstream, clock=clock)
    await bridge.attach_consumer(consumer)
    yield bridge
    await bridge.close()
