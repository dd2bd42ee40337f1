"""
Unit tests for the health endpoints.

Tests:
- HealthStatusCollector combining store, event bus and component checks
- HealthServer HTTP endpoints
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiohttp import ClientSession

from parlay.core.lifecycle import HealthCheckResult, HealthStatus
from parlay.services.health import HealthServer, HealthStatusCollector


class TestHealthStatusCollector:
    @pytest.fixture
    def feed(self):
        feed = MagicMock()
        feed.name = "change_feed"
        feed.health_check = AsyncMock(
            return_value=HealthCheckResult.healthy(bet_executor={"delivered": 3, "failures": 0})
        )
        return feed

    @pytest.mark.asyncio
    async def test_all_healthy(self, mock_store, mock_event_bus, feed):
        collector = HealthStatusCollector(
            store=mock_store,
            components=[feed],
            event_bus=mock_event_bus,
            get_uptime_seconds=lambda: 3600.0,
        )

        status = await collector.get_health_status()

        assert status["status"] == "healthy"
        assert status["message"] == "OK"
        assert status["store_connected"] is True
        assert status["redis_connected"] is True
        details = status["components"]["change_feed"]["details"]
        assert details["bet_executor"]["delivered"] == 3
        assert status["issues"] == []
        assert status["uptime_seconds"] == 3600.0

    @pytest.mark.asyncio
    async def test_redis_down_is_degraded(self, mock_store, mock_event_bus, feed):
        mock_event_bus.is_connected = False
        collector = HealthStatusCollector(mock_store, [feed], mock_event_bus)

        status = await collector.get_health_status()

        assert status["status"] == "degraded"
        assert status["issues"] == ["event_bus_degraded"]
        assert status["message"] == "event_bus: Redis disconnected"

    @pytest.mark.asyncio
    async def test_stuck_feed_is_degraded(self, mock_store, mock_event_bus, feed):
        feed.health_check.return_value = HealthCheckResult.degraded("Subscriptions stuck: x")
        collector = HealthStatusCollector(mock_store, [feed], mock_event_bus)

        status = await collector.get_health_status()

        assert status["status"] == "degraded"
        assert status["issues"] == ["change_feed_degraded"]

    @pytest.mark.asyncio
    async def test_store_down_is_unhealthy(self, mock_store, mock_event_bus):
        mock_store.is_connected = False
        collector = HealthStatusCollector(mock_store, event_bus=mock_event_bus)

        status = await collector.get_health_status()

        assert status["status"] == "unhealthy"
        assert status["issues"] == ["store_unhealthy"]
        assert status["components"] == {}

    @pytest.mark.asyncio
    async def test_store_down_outranks_stuck_feed(self, mock_store, mock_event_bus, feed):
        mock_store.is_connected = False
        feed.health_check.return_value = HealthCheckResult.degraded("Subscriptions stuck: x")
        collector = HealthStatusCollector(mock_store, [feed], mock_event_bus)

        status = await collector.get_health_status()

        assert status["status"] == "unhealthy"
        assert status["issues"] == ["store_unhealthy", "change_feed_degraded"]

    @pytest.mark.asyncio
    async def test_provider_errors_are_contained(self, mock_store, mock_event_bus, feed):
        feed.health_check.side_effect = RuntimeError("boom")

        def broken_uptime():
            raise RuntimeError("no clock")

        collector = HealthStatusCollector(mock_store, [feed], mock_event_bus, broken_uptime)

        status = await collector.get_health_status()

        assert status["status"] == "degraded"
        assert status["issues"] == ["change_feed_unknown"]
        assert status["components"]["change_feed"]["message"] == "Health check failed: boom"
        assert status["uptime_seconds"] == 0.0


class TestHealthServer:
    @pytest.fixture
    def health_data(self):
        return {
            "status": "healthy",
            "store_connected": True,
            "redis_connected": True,
            "message": "All components healthy",
            "components": {},
            "issues": [],
            "uptime_seconds": 12.0,
        }

    @pytest_asyncio.fixture
    async def server(self, health_data):
        async def health_provider():
            return health_data

        def metrics_provider():
            return "# HELP parlay_uptime_seconds Uptime\nparlay_uptime_seconds 12\n"

        server = HealthServer(
            port=19191,
            health_provider=health_provider,
            metrics_provider=metrics_provider,
        )
        await server.start()
        yield server
        await server.stop()

    @pytest.mark.asyncio
    async def test_health_endpoint_returns_json(self, server, health_data):
        async with ClientSession() as session:
            async with session.get(f"http://localhost:{server.port}/health") as resp:
                assert resp.status == 200
                assert await resp.json() == health_data

    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, server):
        async with ClientSession() as session:
            async with session.get(f"http://localhost:{server.port}/metrics") as resp:
                assert resp.status == 200
                assert "parlay_uptime_seconds 12" in await resp.text()

    @pytest.mark.asyncio
    async def test_root_endpoint(self, server):
        async with ClientSession() as session:
            async with session.get(f"http://localhost:{server.port}/") as resp:
                data = await resp.json()
                assert data["service"] == "parlay"
                assert "/health" in data["endpoints"]

    @pytest.mark.asyncio
    async def test_unhealthy_returns_503(self):
        async def provider():
            return {"status": "unhealthy", "store_connected": False}

        server = HealthServer(port=19192, health_provider=provider)
        await server.start()
        try:
            async with ClientSession() as session:
                async with session.get(f"http://localhost:{server.port}/health") as resp:
                    assert resp.status == 503
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_degraded_returns_200(self):
        async def provider():
            return {"status": "degraded", "issues": ["redis_disconnected"]}

        server = HealthServer(port=19193, health_provider=provider)
        await server.start()
        try:
            async with ClientSession() as session:
                async with session.get(f"http://localhost:{server.port}/health") as resp:
                    assert resp.status == 200
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_provider_error_returns_503(self):
        async def provider():
            raise RuntimeError("collector broke")

        server = HealthServer(port=19194, health_provider=provider)
        await server.start()
        try:
            async with ClientSession() as session:
                async with session.get(f"http://localhost:{server.port}/health") as resp:
                    assert resp.status == 503
                    data = await resp.json()
                    assert data["error"] == "collector broke"
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_component_health(self):
        server = HealthServer(port=19195)
        assert (await server.health_check()).status == HealthStatus.UNHEALTHY
        await server.start()
        try:
            assert (await server.health_check()).status == HealthStatus.HEALTHY
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_liveness_answers_without_provider(self):
        server = HealthServer(port=19196)
        await server.start()
        try:
            async with ClientSession() as session:
                async with session.get(f"http://localhost:{server.port}/health/live") as resp:
                    assert resp.status == 200
                    assert (await resp.json())["alive"] is True
                async with session.get(f"http://localhost:{server.port}/health") as resp:
                    assert resp.status == 503
        finally:
            await server.stop()
