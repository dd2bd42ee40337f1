"""
Component lifecycle.

The change feed and the health server are components: each can be
started, stopped and asked for its health. ComponentGroup starts a set of
them in order and stops them in reverse; ParlayApp shuts down through it.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import structlog

log = structlog.get_logger()

DEFAULT_STOP_TIMEOUT_SECONDS = 10.0


class HealthStatus(str, Enum):
    """Component health status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


# UNKNOWN means the check itself failed; treated like DEGRADED
_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNKNOWN: 1,
    HealthStatus.UNHEALTHY: 2,
}


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    status: HealthStatus
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def healthy(cls, message: str = "OK", **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.HEALTHY, message=message, details=details)

    @classmethod
    def degraded(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.DEGRADED, message=message, details=details)

    @classmethod
    def unhealthy(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.UNHEALTHY, message=message, details=details)

    @classmethod
    def unknown(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.UNKNOWN, message=message, details=details)

    @classmethod
    def combine(cls, results: dict[str, "HealthCheckResult"]) -> "HealthCheckResult":
        """Fold named results into one. The most severe status wins."""
        if not results:
            return cls.unknown("Nothing to check")
        worst = max((r.status for r in results.values()), key=lambda s: s.severity)
        problems = [
            f"{name}: {result.message}"
            for name, result in results.items()
            if result.status != HealthStatus.HEALTHY
        ]
        return cls(
            status=worst,
            message="; ".join(problems) or "OK",
            details={name: result.to_dict() for name, result in results.items()},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
            "checked_at": self.checked_at.isoformat(),
        }


class BaseComponent:
    """Start/stop/health plumbing shared by long-running components.

    Subclasses override _do_start, _do_stop and _do_health_check.
    start() and stop() are idempotent, and a component that failed to
    start stays stopped.
    """

    def __init__(self, name: Optional[str] = None) -> None:
        self._name = name or self.__class__.__name__
        self._running = False
        self._started_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def uptime_seconds(self) -> float:
        if not self._started_at:
            return 0.0
        return (datetime.now(timezone.utc) - self._started_at).total_seconds()

    async def start(self) -> None:
        if self._running:
            return
        await self._do_start()
        self._running = True
        self._started_at = datetime.now(timezone.utc)

    async def stop(self) -> None:
        if not self._running:
            return
        try:
            await self._do_stop()
        finally:
            self._running = False

    async def health_check(self) -> HealthCheckResult:
        if not self._running:
            return HealthCheckResult.unhealthy(f"{self._name} not running")
        try:
            return await self._do_health_check()
        except Exception as e:
            return HealthCheckResult.unknown(f"Health check failed: {e}")

    async def _do_start(self) -> None:
        pass

    async def _do_stop(self) -> None:
        pass

    async def _do_health_check(self) -> HealthCheckResult:
        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds)


class ComponentGroup:
    """Starts components in the given order and stops them in reverse.

    Usage:
        group = ComponentGroup(change_feed, health_server)
        await group.start()
        ...
        await group.stop()
    """

    def __init__(
        self,
        *components: BaseComponent,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT_SECONDS,
    ) -> None:
        self._components = list(components)
        self._started: list[BaseComponent] = []
        self._stop_timeout = stop_timeout
        self._log = log.bind(component="component_group")

    @property
    def components(self) -> list[BaseComponent]:
        return list(self._components)

    async def start(self) -> None:
        """Start every component.

        Raises:
            Exception: Whatever a component raised while starting, after the
                components already started have been stopped again.
        """
        for component in self._components:
            try:
                await component.start()
            except Exception as e:
                self._log.error(
                    "component_start_failed",
                    name=component.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self.stop()
                raise
            self._started.append(component)
            self._log.debug("component_started", name=component.name)

    async def stop(self) -> None:
        """Stop started components, newest first.

        A component that fails or times out is logged and skipped so the
        ones started before it still get stopped.
        """
        while self._started:
            component = self._started.pop()
            try:
                await asyncio.wait_for(component.stop(), timeout=self._stop_timeout)
                self._log.debug("component_stopped", name=component.name)
            except asyncio.TimeoutError:
                self._log.error(
                    "component_stop_timeout",
                    name=component.name,
                    timeout=self._stop_timeout,
                )
            except Exception as e:
                self._log.error(
                    "component_stop_failed",
                    name=component.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def health_check(self) -> HealthCheckResult:
        results = {c.name: await c.health_check() for c in self._components}
        return HealthCheckResult.combine(results)
