"""Network monitor tests."""

import httpx
import pytest

from fieldsync.services.network import NetworkMonitor


def monitor_with(config, handler, *, online=False):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return NetworkMonitor(config, client, initially_online=online), client


class TestSetOnline:
    """Test state transitions."""

    def test_listeners_only_on_change(self, temp_config):
        monitor = NetworkMonitor(temp_config)
        changes = []
        monitor.add_listener(lambda was, now: changes.append((was, now)))

        monitor.set_online(False)
        monitor.set_online(True)
        monitor.set_online(True)
        monitor.set_online(False)

        assert changes == [(False, True), (True, False)]

    def test_failing_listener_does_not_block_others(self, temp_config):
        monitor = NetworkMonitor(temp_config)
        seen = []

        def broken(was, now):
            raise RuntimeError("listener bug")

        monitor.add_listener(broken)
        monitor.add_listener(lambda was, now: seen.append(now))

        monitor.set_online(True)

        assert seen == [True]
        assert monitor.is_online is True

    def test_remove_listener(self, temp_config):
        monitor = NetworkMonitor(temp_config)
        seen = []
        listener = lambda was, now: seen.append(now)  # noqa: E731
        monitor.add_listener(listener)
        monitor.remove_listener(listener)
        monitor.remove_listener(listener)

        monitor.set_online(True)

        assert seen == []


class TestCheckNow:
    """Test probing the health endpoint."""

    @pytest.mark.asyncio
    async def test_healthy_server(self, temp_config):
        urls = []

        def handler(request):
            urls.append(str(request.url))
            return httpx.Response(200, json={"status": "ok"})

        monitor, client = monitor_with(temp_config, handler)
        async with client:
            assert await monitor.check_now() is True

        assert monitor.is_online is True
        assert urls == ["http://test.local/api/health"]

    @pytest.mark.asyncio
    async def test_server_error_is_offline(self, temp_config):
        monitor, client = monitor_with(
            temp_config,
            lambda request: httpx.Response(503),
            online=True,
        )
        async with client:
            assert await monitor.check_now() is False

        assert monitor.is_online is False

    @pytest.mark.asyncio
    async def test_client_error_still_reachable(self, temp_config):
        monitor, client = monitor_with(temp_config, lambda request: httpx.Response(404))
        async with client:
            assert await monitor.check_now() is True

    @pytest.mark.asyncio
    async def test_connection_error_is_offline(self, temp_config):
        def handler(request):
            raise httpx.ConnectError("no route to host", request=request)

        monitor, client = monitor_with(temp_config, handler, online=True)
        async with client:
            assert await monitor.check_now() is False

        assert monitor.is_online is False


class TestPolling:
    """Test the background poll task."""

    @pytest.mark.asyncio
    async def test_start_probes_and_stop_cancels(self, temp_config):
        monitor, client = monitor_with(temp_config, lambda request: httpx.Response(200))
        async with client:
            await monitor.start()
            assert monitor.is_online is True
            assert monitor._task is not None

            await monitor.stop()

        assert monitor._task is None

    @pytest.mark.asyncio
    async def test_stop_without_start(self, temp_config):
        await NetworkMonitor(temp_config).stop()
