"""
Parlay application lifecycle and component wiring.

Builds the record store, the exchange and chain clients, the three
settlement handlers and the change feed that drives them, then runs until
SIGTERM/SIGINT. Shutdown runs in reverse start order:
1. Stop the health server, then the change feed (ComponentGroup)
2. Record final uptime
3. Close exchange, market-info and chain clients
4. Disconnect the event bus
5. Close the record store
"""
import asyncio
import signal
from pathlib import Path
from typing import Optional

import structlog

from parlay import __version__
from parlay.core.config import ConfigManager
from parlay.core.events import EventBus
from parlay.core.lifecycle import BaseComponent, ComponentGroup, HealthCheckResult, HealthStatus
from parlay.core.logging import setup_logging
from parlay.domain.models import RecordType
from parlay.integrations.chain import (
    USDC_ADDRESS,
    KeystoreSigner,
    PermitTransfer,
    PolygonClient,
)
from parlay.integrations.polymarket import GammaClient, PolymarketSettings
from parlay.services.bet_executor import BetExecutor
from parlay.services.change_feed import ChangeFeed
from parlay.services.credentials import CredentialService
from parlay.services.fees import FeeCollector
from parlay.services.health import HealthServer, HealthStatusCollector
from parlay.services.market_resolution import MarketResolutionHandler
from parlay.services.metrics import MetricsEmitter
from parlay.services.position_termination import PositionTerminationHandler
from parlay.services.reconciliation import PayoutReconciler
from parlay.services.record_store import RecordStore

DEFAULT_HEALTH_PORT = 9090

BET_EXECUTOR_SUBSCRIPTION = "bet_executor"
MARKET_RESOLUTION_SUBSCRIPTION = "market_resolution"
POSITION_TERMINATION_SUBSCRIPTION = "position_termination"


def build_polymarket_settings(config: ConfigManager) -> PolymarketSettings:
    defaults = PolymarketSettings()
    return PolymarketSettings(
        clob_url=config.get("polymarket.clob_url", defaults.clob_url),
        gamma_url=config.get("polymarket.gamma_url", defaults.gamma_url),
        chain_id=config.get_int("polymarket.chain_id", defaults.chain_id),
        signature_type=config.get_int("polymarket.signature_type", defaults.signature_type),
        http_proxy=config.get("polymarket.http_proxy") or None,
    )


class ParlayApp(BaseComponent):
    """Main parlay application.

    Each handler is a change feed subscription:
    - bet_executor          <- bet changes (READY legs)
    - market_resolution     <- market changes (RESOLVED / CANCELLED)
    - position_termination  <- position changes (LOST / CANCELLED / FAILED)

    Usage:
        app = ParlayApp(ConfigManager(Path("config/default.toml")))
        await app.run_forever()   # until SIGTERM/SIGINT
        # or
        await app.replay()        # drain pending changes once and exit
    """

    def __init__(self, config: Optional[ConfigManager] = None) -> None:
        """Initialize the application.

        Args:
            config: Configuration; defaults to config/default.toml when present.
        """
        super().__init__(name="ParlayApp")

        if config is None:
            config_path: Optional[Path] = Path("config/default.toml")
            if not config_path.exists():
                config_path = None
            config = ConfigManager(config_path)
        self._config = config

        # Set up logging
        log_level = self._config.get("parlay.log_level", "INFO")
        log_json = self._config.get_bool("parlay.log_json", False)
        setup_logging(level=log_level, json_output=log_json)
        self._log = structlog.get_logger("parlay.app")

        self._config.validate()
        self._log.debug(
            "config_loaded",
            path=str(self._config.config_path) if self._config.config_path else None,
            settings=self._config.redacted(),
        )

        redis_url = self._config.get("redis.url", "redis://localhost:6379")
        self._event_bus = EventBus(redis_url=redis_url)
        self._metrics = MetricsEmitter()
        self._store = RecordStore(config=self._config)

        # External clients
        self._settings = build_polymarket_settings(self._config)
        self._gamma = GammaClient(self._settings)

        rpc_url = self._config.get("polygon.rpc_url", "")
        usdc_address = self._config.get("polygon.usdc_address", USDC_ADDRESS)
        self._polygon: Optional[PolygonClient] = (
            PolygonClient(rpc_url, usdc_address=usdc_address) if rpc_url else None
        )

        keystore_dir = self._config.get("signer.keystore_dir", "")
        self._signer: Optional[KeystoreSigner] = (
            KeystoreSigner(keystore_dir, self._config.get("signer.password", ""))
            if keystore_dir
            else None
        )
        self._credentials = CredentialService(self._store, self._signer, self._settings)

        platform_key = self._config.get("fees.platform_wallet_key", "")
        permit_transfer: Optional[PermitTransfer] = None
        if platform_key and self._polygon is not None:
            permit_transfer = PermitTransfer(
                self._polygon,
                platform_key,
                usdc_address=usdc_address,
                chain_id=self._settings.chain_id,
                deadline_seconds=self._config.get_int("fees.permit_deadline_seconds", 3600),
            )
        self._fee_collector = FeeCollector(
            self._config,
            self._store,
            self._credentials,
            permit_transfer=permit_transfer,
            event_bus=self._event_bus,
            metrics=self._metrics,
        )
        self._reconciler = PayoutReconciler(self._config, self._polygon, metrics=self._metrics)

        # Handlers
        self._bet_executor = BetExecutor(
            self._config,
            self._store,
            self._credentials,
            self._gamma,
            polygon_client=self._polygon,
            event_bus=self._event_bus,
            metrics=self._metrics,
        )
        self._market_resolution = MarketResolutionHandler(
            self._config,
            self._store,
            self._credentials,
            self._gamma,
            self._fee_collector,
            reconciler=self._reconciler,
            event_bus=self._event_bus,
            metrics=self._metrics,
        )
        self._position_termination = PositionTerminationHandler(
            self._store,
            self._credentials,
            event_bus=self._event_bus,
            metrics=self._metrics,
        )

        self._feed = ChangeFeed(self._store, self._config, metrics=self._metrics)
        self._feed.subscribe(
            BET_EXECUTOR_SUBSCRIPTION, RecordType.BET, self._bet_executor.handle_batch
        )
        self._feed.subscribe(
            MARKET_RESOLUTION_SUBSCRIPTION,
            RecordType.MARKET,
            self._market_resolution.handle_batch,
        )
        self._feed.subscribe(
            POSITION_TERMINATION_SUBSCRIPTION,
            RecordType.POSITION,
            self._position_termination.handle_batch,
        )

        self._health_collector = HealthStatusCollector(
            self._store,
            components=[self._feed],
            event_bus=self._event_bus,
            get_uptime_seconds=lambda: self.uptime_seconds,
        )
        self._health_server = HealthServer(
            port=self._config.get_int("health.port", DEFAULT_HEALTH_PORT),
            health_provider=self._health_collector.get_health_status,
            metrics_provider=self._metrics.get_metrics,
        )
        self._components = ComponentGroup(self._feed, self._health_server)

        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> ConfigManager:
        return self._config

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def metrics(self) -> MetricsEmitter:
        return self._metrics

    async def _connect(self) -> None:
        """Open the store and every outbound client."""
        await self._store.connect()

        # Connect to Redis event bus
        try:
            await self._event_bus.connect()
            self._log.info("event_bus_connected")
        except Exception as e:
            self._log.warning(
                "event_bus_connection_failed",
                error=str(e),
                message="Running without event bus",
            )

        await self._gamma.connect()

        if self._polygon is not None:
            try:
                await self._polygon.connect()
            except Exception as e:
                self._log.warning(
                    "polygon_connection_failed",
                    error=str(e),
                    message="Fill blocks, fees and reconciliation will fail until RPC recovers",
                )

    async def _disconnect(self) -> None:
        await self._credentials.close()
        await self._gamma.close()
        if self._polygon is not None:
            await self._polygon.close()
        if self._event_bus.is_connected:
            await self._event_bus.disconnect()
            self._log.info("event_bus_disconnected")
        await self._store.close()

    async def _do_start(self) -> None:
        self._log.info("starting_parlay", version=__version__)
        await self._connect()
        try:
            await self._components.start()
        except Exception:
            await self._disconnect()
            raise
        self._log.info(
            "parlay_started",
            subscriptions=[s.name for s in self._feed.subscriptions],
            health_port=self._health_server.port,
        )

    async def _do_stop(self) -> None:
        self._log.info("stopping_parlay")
        await self._components.stop()
        self._metrics.update_uptime(self.uptime_seconds)
        await self._disconnect()
        self._log.info("parlay_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        body = await self._health_collector.get_health_status()
        return HealthCheckResult(
            status=HealthStatus(body["status"]),
            message=body["message"],
            details={"issues": body["issues"], "uptime_seconds": self.uptime_seconds},
        )

    def request_shutdown(self) -> None:
        self._log.info("shutdown_requested")
        self._shutdown_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)
        self._log.info("signal_handlers_installed", signals=["SIGTERM", "SIGINT"])

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (ValueError, RuntimeError):
                pass

    async def run_forever(self) -> None:
        """Run the application until a shutdown signal is received."""
        await self.start()
        self._install_signal_handlers()

        try:
            # Update uptime metric periodically while waiting for shutdown
            while not self._shutdown_event.is_set():
                self._metrics.update_uptime(self.uptime_seconds)
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._remove_signal_handlers()
            await self.stop()

    async def replay(self) -> int:
        """Deliver every pending change to the handlers, then exit.

        Returns:
            Number of change records delivered.
        """
        await self._connect()
        try:
            delivered = await self._feed.drain()
        finally:
            await self._disconnect()
        stuck = [s.name for s in self._feed.subscriptions if s.last_error]
        self._log.info("replay_complete", delivered=delivered, stuck_subscriptions=stuck)
        return delivered
