"""ConnectionSupervisor -- owns the gateway handle and the reconnect policy."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from wabot.gateway import GatewayClient, GatewayFactory, classify_disconnect
from wabot.log import log_task_exception, logger
from wabot.session import SessionStore
from wabot.types import ConnectionState, ConnectionUpdate, DisconnectReason, RawEvent, utcnow

StateListener = Callable[[ConnectionState, "ConnectionSupervisor"], Awaitable[None]]
EventHandler = Callable[[RawEvent, GatewayClient], Awaitable[None]]

_TERMINAL = (DisconnectReason.LOGGED_OUT, DisconnectReason.CONNECTION_REPLACED)
_ACTIVE = (ConnectionState.CONNECTING, ConnectionState.QR_READY, ConnectionState.CONNECTED)


class _AttemptSink:
    """Sink handed to one gateway client; tags every callback with its source."""

    def __init__(self, supervisor: ConnectionSupervisor, gateway: GatewayClient) -> None:
        self._supervisor = supervisor
        self._gateway = gateway

    async def handle_connection_update(self, update: ConnectionUpdate) -> None:
        await self._supervisor.handle_connection_update(update, source=self._gateway)

    async def handle_creds_update(self) -> None:
        await self._supervisor.handle_creds_update(source=self._gateway)

    async def handle_event(self, event: RawEvent) -> None:
        await self._supervisor.handle_event(event, source=self._gateway)


class ConnectionSupervisor:
    """Maintain one gateway connection.

    The supervisor is the only writer of the connection state. Listeners are
    awaited one after another under a lock, so every listener observes the
    transitions in the order they happened. Raw events are forwarded to the
    event handler in gateway delivery order.
    """

    def __init__(
        self,
        session: SessionStore,
        factory: GatewayFactory,
        config: Any,
        event_log: Any = None,
    ) -> None:
        self._session = session
        self._factory = factory
        self._config = config
        self._event_log = event_log

        self.state = ConnectionState.DISCONNECTED
        self.retry_count = 0
        self.last_successful_connect_at: datetime | None = None
        self.last_disconnect_reason: DisconnectReason | None = None
        self.qr: str | None = None
        self.consecutive_stream_errors = 0
        self.next_retry_delay: float | None = None

        self._gateway: GatewayClient | None = None
        self._save_creds: Callable[[], Awaitable[None]] | None = None
        self._listeners: list[StateListener] = []
        self._event_handler: EventHandler | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._state_lock = asyncio.Lock()
        self._stopped = False

    @property
    def gateway(self) -> GatewayClient | None:
        """The live handle, or None unless connected."""
        return self._gateway if self.state is ConnectionState.CONNECTED else None

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def set_event_handler(self, handler: EventHandler) -> None:
        self._event_handler = handler

    def backoff_delay(self) -> float:
        return min(
            self._config.retry_base_delay * (2 ** self.retry_count),
            self._config.retry_max_delay,
        )

    # ---- lifecycle ----

    async def connect(self) -> None:
        """Open a connection attempt. Failures are routed into the close policy."""
        if self._stopped:
            return
        await self._set_state(ConnectionState.CONNECTING)
        try:
            auth_state, save_creds = await self._session.load_auth_state()
            self._save_creds = save_creds
            gateway = self._factory(auth_state, save_creds, self._config)
            self._gateway = gateway
            await gateway.start(_AttemptSink(self, gateway))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Gateway connect failed: {e!r}")
            await self._handle_close(None, str(e))

    async def stop(self) -> None:
        self._stopped = True
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        gateway, self._gateway = self._gateway, None
        if gateway is not None:
            try:
                await gateway.close()
            except Exception as e:
                logger.warning(f"Gateway close error: {e}")
        if self.state is not ConnectionState.ERROR:
            await self._set_state(ConnectionState.DISCONNECTED)

    # ---- sink interface (called by the gateway client) ----

    def _is_stale(self, source: GatewayClient | None) -> bool:
        return source is not None and source is not self._gateway

    async def handle_connection_update(
        self, update: ConnectionUpdate, source: GatewayClient | None = None,
    ) -> None:
        if self._stopped or self.state is ConnectionState.ERROR:
            return
        if self._is_stale(source):
            logger.debug(f"Ignoring connection update from a replaced client: {update}")
            return
        if update.qr:
            self.qr = update.qr
            logger.info("Pairing code ready, scan it with the phone")
            await self._set_state(ConnectionState.QR_READY)
        if update.connection == "open":
            self.retry_count = 0
            self.consecutive_stream_errors = 0
            self.last_successful_connect_at = utcnow()
            self.qr = None
            await self._set_state(ConnectionState.CONNECTED)
        elif update.connection == "close":
            await self._handle_close(update.status_code, update.error)

    async def handle_creds_update(self, source: GatewayClient | None = None) -> None:
        if self._save_creds is not None and not self._is_stale(source):
            await self._save_creds()

    async def handle_event(self, event: RawEvent, source: GatewayClient | None = None) -> None:
        if self._event_handler is None or self._gateway is None or self._is_stale(source):
            return
        await self._event_handler(event, self._gateway)

    # ---- policy ----

    def _reconnect_pending(self) -> bool:
        task = self._reconnect_task
        return task is not None and not task.done() and task is not asyncio.current_task()

    async def _handle_close(self, status_code: int | None, message: str) -> None:
        if self._reconnect_pending() or self.state not in _ACTIVE:
            logger.debug(f"Ignoring close (status={status_code}) while {self.state.value}")
            return
        reason = classify_disconnect(status_code, message)
        self.last_disconnect_reason = reason
        gateway, self._gateway = self._gateway, None
        logger.warning(f"Connection closed: reason={reason.value} status={status_code} {message}".rstrip())
        if gateway is not None:
            try:
                await gateway.close()
            except Exception as e:
                logger.warning(f"Gateway close error: {e}")
        await self._set_state(ConnectionState.DISCONNECTED)

        if reason is not DisconnectReason.STREAM_ERROR:
            self.consecutive_stream_errors = 0

        if reason in _TERMINAL:
            if reason is DisconnectReason.LOGGED_OUT:
                await self._session.clean_session()
            logger.error(f"Connection stopped ({reason.value}); operator action required")
            await self._set_state(ConnectionState.ERROR)
            return

        if reason is DisconnectReason.BAD_SESSION:
            await self._session.clean_session()

        if reason is DisconnectReason.STREAM_ERROR:
            self.consecutive_stream_errors += 1
            if self.consecutive_stream_errors >= self._config.stream_error_wipe_after:
                logger.warning(f"{self.consecutive_stream_errors} consecutive stream errors, wiping session")
                await self._session.clean_session()
                self.consecutive_stream_errors = 0
            delay = 0.0
        elif reason is DisconnectReason.CONFLICT:
            delay = self._config.conflict_delay
        else:
            delay = self.backoff_delay()

        if self.retry_count >= self._config.max_retries:
            logger.error(f"Reconnect ceiling reached after {self.retry_count} attempts")
            await self._set_state(ConnectionState.ERROR)
            return

        self.retry_count += 1
        self.next_retry_delay = delay
        logger.info(f"Reconnecting in {delay:.1f}s (attempt {self.retry_count}/{self._config.max_retries})")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))
        self._reconnect_task.add_done_callback(log_task_exception)

    async def _reconnect_after(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        await self.connect()

    async def _set_state(self, new: ConnectionState) -> None:
        async with self._state_lock:
            if new is self.state and new is not ConnectionState.QR_READY:
                return
            self.state = new
            if self._event_log is not None:
                reason = self.last_disconnect_reason.value if self.last_disconnect_reason else ""
                self._event_log.log_connection(new.value, reason, self.retry_count)
            for listener in list(self._listeners):
                try:
                    await listener(new, self)
                except Exception as e:
                    logger.error(f"Connection listener failed on {new.value}: {e!r}")

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "retry_count": self.retry_count,
            "last_successful_connect_at": (
                self.last_successful_connect_at.isoformat() if self.last_successful_connect_at else None
            ),
            "last_disconnect_reason": (
                self.last_disconnect_reason.value if self.last_disconnect_reason else None
            ),
            "next_retry_delay": self.next_retry_delay,
            "user": self._gateway.user_id if self._gateway is not None else "",
        }
