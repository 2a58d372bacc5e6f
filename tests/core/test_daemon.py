"""Foreground service runner tests."""

from unittest.mock import AsyncMock, Mock, patch

import pytest

from fieldsync.core.daemon import FieldSyncDaemon


@pytest.fixture
def mock_client():
    client = Mock()
    client.start = AsyncMock()
    client.stop = AsyncMock()
    client.close = Mock()
    return client


class TestFieldSyncDaemon:
    """Test service lifecycle."""

    @pytest.mark.asyncio
    async def test_serve_until_stopped(self, temp_config, mock_client):
        daemon = FieldSyncDaemon(temp_config, client_factory=lambda config: mock_client)
        mock_client.start.side_effect = lambda: daemon.stop()

        await daemon.serve()

        mock_client.start.assert_awaited_once()
        mock_client.stop.assert_awaited_once()
        mock_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_client_closed_when_start_fails(self, temp_config, mock_client):
        mock_client.start.side_effect = RuntimeError("database locked")
        daemon = FieldSyncDaemon(temp_config, client_factory=lambda config: mock_client)

        with pytest.raises(RuntimeError):
            await daemon.serve()

        mock_client.stop.assert_awaited_once()
        mock_client.close.assert_called_once()

    def test_run_refuses_second_instance(self, temp_config):
        with patch("fieldsync.core.daemon.ProcessLock") as mock_lock_class:
            mock_lock_class.return_value.acquire.return_value = False
            daemon = FieldSyncDaemon(temp_config)

            with pytest.raises(RuntimeError, match="another instance"):
                daemon.run()

    def test_run_releases_lock(self, temp_config, mock_client):
        daemon = FieldSyncDaemon(temp_config, client_factory=lambda config: mock_client)
        mock_client.start.side_effect = lambda: daemon.stop()

        with patch("fieldsync.core.daemon.ProcessLock") as mock_lock_class:
            mock_lock = mock_lock_class.return_value
            mock_lock.acquire.return_value = True

            daemon.run()

            mock_lock.release.assert_called_once()

    def test_stop_before_serve_is_noop(self, temp_config):
        FieldSyncDaemon(temp_config).stop()
