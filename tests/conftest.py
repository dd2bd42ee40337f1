"""
Shared pytest fixtures for parlay tests.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from parlay.services.record_store import RecordStore
from tests.factories import make_config, make_fill, make_market_info, make_placement, make_position


@pytest.fixture
def mock_config():
    """Mock ConfigManager that always answers with the caller's default."""
    return make_config()


@pytest.fixture
def mock_event_bus():
    """Mock EventBus for unit tests."""
    bus = MagicMock()
    bus.is_connected = True
    bus.publish = AsyncMock()
    return bus


@pytest.fixture
def mock_metrics():
    return MagicMock()


@pytest.fixture
def mock_store():
    """Mock RecordStore; update_* echo the record back like the real store."""
    store = MagicMock()
    store.is_connected = True
    store.get_position = AsyncMock(return_value=make_position())
    store.get_bet = AsyncMock(return_value=None)
    store.get_bets_for_position = AsyncMock(return_value=[])
    store.get_bets_for_condition = AsyncMock(return_value=[])
    store.get_market = AsyncMock(return_value=None)
    store.update_bet = AsyncMock(side_effect=lambda bet, expected_status=None: bet)
    store.update_position = AsyncMock(
        side_effect=lambda position, expected_status=None: position
    )
    store.adjust_chain_total = AsyncMock(return_value=0)
    store.record_fee_collection = AsyncMock()
    store.get_credentials = AsyncMock(return_value=None)
    store.save_credentials = AsyncMock()
    return store


@pytest.fixture
def mock_clob_client():
    client = MagicMock()
    client.place_fak_buy = AsyncMock(return_value=make_placement())
    client.get_order = AsyncMock(return_value=make_fill())
    client.cancel_order = AsyncMock(return_value=True)
    return client


@pytest.fixture
def mock_credentials(mock_clob_client):
    credentials = MagicMock()
    credentials.client_for = AsyncMock(return_value=mock_clob_client)
    credentials.private_key_for = MagicMock(return_value="0x" + "11" * 32)
    credentials.close = AsyncMock()
    return credentials


@pytest.fixture
def mock_gamma_client():
    client = MagicMock()
    client.connect = AsyncMock()
    client.close = AsyncMock()
    client.get_market_info = AsyncMock(
        side_effect=lambda condition_id: make_market_info(condition_id)
    )
    return client


@pytest_asyncio.fixture
async def record_store(tmp_path):
    """Real aiosqlite RecordStore in a temporary directory."""
    store = RecordStore(db_path=str(tmp_path / "parlay.db"))
    await store.connect()
    yield store
    await store.close()
