"""
HTTP health and metrics endpoints for parlay.

GET /health        readiness: the HealthStatusCollector body, 503 when unhealthy
GET /health/live   liveness: 200 while the event loop answers
GET /metrics       Prometheus exposition text
GET /              service name, version and endpoint list

/health body:
{
    "status": "healthy" | "degraded" | "unhealthy",
    "message": "change_feed: Subscriptions stuck: bet_executor",
    "store_connected": bool,
    "redis_connected": bool,
    "components": {"change_feed": {"status": ..., "details": {...}}},
    "issues": ["change_feed_degraded"],
    "uptime_seconds": float
}
"""

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Sequence

import structlog
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST

from parlay import __version__
from parlay.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus

if TYPE_CHECKING:
    from parlay.core.events import EventBus
    from parlay.services.record_store import RecordStore

log = structlog.get_logger()

ENDPOINTS = ("/health", "/health/live", "/metrics")

# Degraded still settles, so only unhealthy fails the readiness probe
UNHEALTHY_STATUS_CODE = 503

HealthProvider = Callable[[], Awaitable[dict[str, Any]]]


class HealthServer(BaseComponent):
    """aiohttp server exposing the collector and the metrics registry.

    Usage:
        server = HealthServer(
            port=9090,
            health_provider=collector.get_health_status,
            metrics_provider=metrics.get_metrics,
        )
        await server.start()
    """

    def __init__(
        self,
        port: int = 9090,
        host: str = "0.0.0.0",
        health_provider: Optional[HealthProvider] = None,
        metrics_provider: Optional[Callable[[], str]] = None,
    ) -> None:
        super().__init__(name="health_server")
        self._port = port
        self._host = host
        self._health_provider = health_provider
        self._metrics_provider = metrics_provider
        self._runner: Optional[web.AppRunner] = None
        self._log = log.bind(component="health_server")

    @property
    def port(self) -> int:
        return self._port

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._root)
        app.router.add_get("/health", self._readiness)
        app.router.add_get("/health/live", self._liveness)
        app.router.add_get("/metrics", self._metrics)
        return app

    async def _do_start(self) -> None:
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        try:
            await web.TCPSite(runner, self._host, self._port).start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        self._log.info("health_server_started", host=self._host, port=self._port)

    async def _do_stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
        self._log.info("health_server_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        if self._runner is None:
            return HealthCheckResult.unhealthy("Server not listening")
        return HealthCheckResult.healthy(port=self._port, uptime_seconds=self.uptime_seconds)

    async def _root(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"service": "parlay", "version": __version__, "endpoints": list(ENDPOINTS)}
        )

    async def _liveness(self, request: web.Request) -> web.Response:
        return web.json_response({"alive": True, "uptime_seconds": self.uptime_seconds})

    async def _readiness(self, request: web.Request) -> web.Response:
        if self._health_provider is None:
            return web.json_response(
                {"status": HealthStatus.UNKNOWN.value, "error": "No health provider configured"},
                status=UNHEALTHY_STATUS_CODE,
            )
        try:
            body = await self._health_provider()
        except Exception as e:
            self._log.error("health_provider_error", error=str(e), error_type=type(e).__name__)
            return web.json_response(
                {"status": HealthStatus.UNHEALTHY.value, "error": str(e)},
                status=UNHEALTHY_STATUS_CODE,
            )
        unhealthy = body.get("status") == HealthStatus.UNHEALTHY.value
        return web.json_response(body, status=UNHEALTHY_STATUS_CODE if unhealthy else 200)

    async def _metrics(self, request: web.Request) -> web.Response:
        if self._metrics_provider is None:
            return web.Response(text="# no metrics registry\n", content_type="text/plain")
        try:
            text = self._metrics_provider()
        except Exception as e:
            self._log.error("metrics_render_error", error=str(e))
            return web.Response(text=f"# error: {e}\n", content_type="text/plain", status=500)
        return web.Response(body=text.encode(), headers={"Content-Type": CONTENT_TYPE_LATEST})


class HealthStatusCollector:
    """Folds store, event bus and component checks into one /health body.

    Each source is checked under a name and combined with
    HealthCheckResult.combine: a disconnected store makes the service
    unhealthy, a missing event bus or a stuck feed subscription only
    degrades it. A check that raises is reported as degraded.
    """

    def __init__(
        self,
        store: "RecordStore",
        components: Sequence[BaseComponent] = (),
        event_bus: Optional["EventBus"] = None,
        get_uptime_seconds: Optional[Callable[[], float]] = None,
    ) -> None:
        self._store = store
        self._components = list(components)
        self._event_bus = event_bus
        self._get_uptime_seconds = get_uptime_seconds
        self._log = log.bind(component="health_collector")

    async def _check_components(self) -> dict[str, HealthCheckResult]:
        results: dict[str, HealthCheckResult] = {}
        for component in self._components:
            try:
                results[component.name] = await component.health_check()
            except Exception as e:
                self._log.warning("component_health_error", name=component.name, error=str(e))
                results[component.name] = HealthCheckResult.unknown(f"Health check failed: {e}")
        return results

    def _uptime(self) -> float:
        if self._get_uptime_seconds is None:
            return 0.0
        try:
            return self._get_uptime_seconds()
        except Exception as e:
            self._log.warning("uptime_error", error=str(e))
            return 0.0

    async def get_health_status(self) -> dict[str, Any]:
        store_connected = self._store.is_connected
        redis_connected = self._event_bus.is_connected if self._event_bus else False

        results = {
            "store": (
                HealthCheckResult.healthy()
                if store_connected
                else HealthCheckResult.unhealthy("Record store disconnected")
            ),
            "event_bus": (
                HealthCheckResult.healthy()
                if redis_connected
                else HealthCheckResult.degraded("Redis disconnected")
            ),
        }
        results.update(await self._check_components())
        overall = HealthCheckResult.combine(results)

        status = overall.status
        if status == HealthStatus.UNKNOWN:
            status = HealthStatus.DEGRADED

        return {
            "status": status.value,
            "message": overall.message,
            "store_connected": store_connected,
            "redis_connected": redis_connected,
            "components": {
                name: result.to_dict()
                for name, result in results.items()
                if name not in ("store", "event_bus")
            },
            "issues": [
                f"{name}_{result.status.value}"
                for name, result in results.items()
                if result.status != HealthStatus.HEALTHY
            ],
            "uptime_seconds": self._uptime(),
        }
