"""Composition root -- wire everything together."""

from __future__ import annotations

import asyncio
import signal
import time
from typing import Any

from wabot import __version__
from wabot.config import BotConfig, load_config, validate_startup
from wabot.dispatcher import CommandDispatcher
from wabot.event_log import EventLog
from wabot.executor import PluginExecutor
from wabot.gateway import GatewayFactory, load_gateway_factory
from wabot.handlers import BuiltinHandlers
from wabot.health import HealthMonitor
from wabot.helpers import Helpers
from wabot.log import log_task_exception, logger
from wabot.plugins import PluginRegistry
from wabot.presence import Presence
from wabot.rate_limiter import SlidingWindowRateLimiter
from wabot.router import EventRouter
from wabot.session import SessionStore
from wabot.store import DocumentStore, open_store
from wabot.supervisor import ConnectionSupervisor
from wabot.tasks import TaskScheduler
from wabot.types import ConnectionState
from wabot.web.server import AdminServer


class WhatsAppBot:
    """Main application. Create, configure, run.

    Owns every component; components only hold references handed to them here.
    """

    def __init__(
        self,
        config: BotConfig | None = None,
        *,
        config_path: str | None = None,
        gateway_factory: GatewayFactory | None = None,
        store: DocumentStore | None = None,
    ) -> None:
        self.config = config or load_config(config_path)

        # Configure logging early -- before any logger.info() calls
        from wabot.log import configure as _configure_log
        _configure_log(self.config.log)

        validate_startup(self.config, require_gateway_factory=gateway_factory is None)

        self.version = __version__
        self.started_at = 0.0
        root = self.config.root_path

        el_cfg = self.config.event_log
        el_path = root / el_cfg.file if el_cfg.file else root / "events.jsonl"
        self.event_log = EventLog(el_path, enabled=el_cfg.enabled)

        self.session = SessionStore(
            self.config.session_path,
            seed=self.config.session_seed,
            seed_url=self.config.session_seed_url,
        )
        self.store = store or open_store(self.config.store_uri, self.config.database_name, root=root)
        self.scheduler = TaskScheduler(self.store, self.config, event_log=self.event_log)
        self.registry = PluginRegistry(self.config.plugins_path, self.store, self.config, self.scheduler)

        factory = gateway_factory or load_gateway_factory(self.config.gateway_factory)
        self.supervisor = ConnectionSupervisor(self.session, factory, self.config, event_log=self.event_log)
        self.helpers = Helpers(lambda: self.supervisor.gateway, self.config)

        self.executor = PluginExecutor(
            self.registry, self.store, self.config, self.helpers, event_log=self.event_log,
        )
        self.handlers = BuiltinHandlers(self.config)
        self.dispatcher = CommandDispatcher(
            self.registry, self.executor, self.config, command_gate=self.handlers.allow_command,
        )
        self.router = EventRouter(self.dispatcher, self.handlers)
        self.supervisor.set_event_handler(self.router.route)
        self.supervisor.add_listener(self._on_connection_state)

        self.presence = Presence(self.config, self.registry, self.helpers, self.scheduler)
        self.health = HealthMonitor(
            self.config, self.supervisor, self.store, self.registry,
            session=self.session, notify=self.helpers.send_to_owner,
        )

        rl = self.config.rate_limit
        self.admin = AdminServer(
            self,
            host=self.config.host,
            port=self.config.port,
            auth_token=self.config.admin_token,
            rate_limit=SlidingWindowRateLimiter(rl.requests, rl.window_seconds, enabled=rl.enabled),
        )
        self._worker: asyncio.Task[None] | None = None
        self._shutdown_event: asyncio.Event | None = None

    async def _on_connection_state(self, state: ConnectionState, supervisor: ConnectionSupervisor) -> None:
        if state is ConnectionState.CONNECTED:
            self.scheduler.attach_gateway(supervisor.gateway)
            logger.info(f"Connected as {supervisor.gateway.user_id if supervisor.gateway else '?'}")
            await self.presence.on_connected()
        elif state in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
            self.scheduler.attach_gateway(None)
            await self.presence.on_disconnected()
            if state is ConnectionState.ERROR:
                logger.critical(
                    f"Connection is down for good ({supervisor.last_disconnect_reason}); "
                    f"clean the session or re-pair, then restart"
                )

    async def start(self) -> None:
        """Bring components up in dependency order."""
        self.started_at = time.monotonic()
        await self.session.initialize()
        if not await self.store.ping():
            logger.warning("Document store is not reachable, state will not persist")
        await self.registry.load()
        await self.admin.start()
        self._worker = asyncio.create_task(self.dispatcher.run(), name="command-worker")
        self._worker.add_done_callback(log_task_exception)
        await self.supervisor.connect()
        await self.health.start()
        logger.info(
            f"{self.config.bot_name} v{self.version} started -- mode={self.config.mode}, "
            f"prefix='{self.config.prefix}', plugins={len(self.registry.descriptors())}"
        )

    async def stop(self) -> None:
        """Tear down in reverse order."""
        logger.info("Shutting down components...")
        await self.health.stop()
        await self.supervisor.stop()
        await self.presence.stop()
        self.dispatcher.stop()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.admin.stop()
        await self.scheduler.stop()
        await self.registry.flush()
        await self.store.close()
        logger.info("Shutdown complete")

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None and not self._shutdown_event.is_set():
            logger.info("Shutdown signal received, stopping gracefully...")
            self._shutdown_event.set()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, OSError):
                # Windows event loops: Ctrl+C still lands in the finally block below
                pass

        try:
            await self.start()
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            try:
                await asyncio.wait_for(self.stop(), timeout=self.config.shutdown_grace)
            except asyncio.TimeoutError:
                logger.error(f"Shutdown exceeded {self.config.shutdown_grace}s grace period, forcing exit")
                raise SystemExit(1)

    def status(self) -> dict[str, Any]:
        return {
            "connection": self.supervisor.status(),
            "plugins": self.registry.stats().to_dict(),
            "queue_depth": self.dispatcher.depth,
        }
