"""Shared test configuration and fixtures."""

import logging
from unittest.mock import AsyncMock, Mock

import pytest

from fieldsync.cli import cleanup_logging
from fieldsync.config import FieldSyncConfig
from fieldsync.queue.manager import QueueManager
from fieldsync.storage.audit import AuditLog
from fieldsync.storage.cache_store import CacheStore
from fieldsync.storage.database import Database
from fieldsync.storage.queue_store import QueueStore
from sync_helpers import echo_outcomes


@pytest.fixture(scope="function", autouse=True)
def cleanup_logging_handlers():
    """Automatically cleanup logging handlers after each test to prevent ResourceWarnings."""
    yield
    cleanup_logging()


@pytest.fixture(scope="function", autouse=True)
def reset_logging():
    """Reset logging configuration after each test."""
    yield
    # Clear all handlers and reset to default
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    # Reset logging level
    root_logger.setLevel(logging.WARNING)


@pytest.fixture
def temp_config(tmp_path):
    """Create temporary config with no real waits."""
    return FieldSyncConfig(
        data_dir=tmp_path / "data",
        log_dir=tmp_path / "logs",
        api_url="http://test.local/api",
        api_token="test-token",
        http_base_delay_seconds=0,
        http_max_delay_seconds=0,
        scheduler_batch_delay_seconds=0,
        reconnect_settle_seconds=0,
        store_busy_base_delay=0.001,
        auto_sync_enabled=False,
    )


@pytest.fixture
def database(temp_config):
    """Database in the temporary data directory."""
    db = Database(temp_config)
    yield db
    db.close()


@pytest.fixture
def queue_store(database, temp_config):
    return QueueStore(database, temp_config.max_retry_attempts)


@pytest.fixture
def cache_store(database):
    return CacheStore(database)


@pytest.fixture
def audit(database):
    return AuditLog(database)


@pytest.fixture
def queue_manager(temp_config, queue_store, audit):
    return QueueManager(temp_config, queue_store, audit)


@pytest.fixture
def mock_transport():
    """Online transport whose uploads succeed for every item."""
    transport = Mock()
    transport.is_online = True
    transport.add_network_listener = Mock()
    transport.upload_batch = AsyncMock(side_effect=echo_outcomes)
    transport.download_organizations = AsyncMock(return_value=[])
    transport.download_reference_data = AsyncMock(return_value=[])
    return transport
