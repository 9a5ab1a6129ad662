"""Gateway client interface -- the protocol library sits behind this seam.

A concrete client is produced by the `gateway_factory` callable named in
config ("module:callable"), invoked as `factory(auth_state, save_creds, config)`.
The client reports back through the sink passed to `start()`:

  sink.handle_connection_update(ConnectionUpdate)
  sink.handle_creds_update()
  sink.handle_event(RawEvent)   kinds: messages.upsert, call,
                                        groups.update, group-participants.update
"""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from typing import Any, Callable, Protocol

from wabot.types import ConnectionUpdate, DisconnectReason, RawEvent

# Status codes used by the protocol library on connection close
STATUS_LOGGED_OUT = 401
STATUS_TIMED_OUT = 408
STATUS_CONNECTION_CLOSED = 428
STATUS_CONNECTION_REPLACED = 440
STATUS_BAD_SESSION = 500
STATUS_RESTART_REQUIRED = 515


class GatewaySink(Protocol):
    async def handle_connection_update(self, update: ConnectionUpdate) -> None: ...

    async def handle_creds_update(self) -> None: ...

    async def handle_event(self, event: RawEvent) -> None: ...


class GatewayClient(ABC):
    """Live handle to the chat gateway. Sends must tolerate concurrent callers."""

    @property
    @abstractmethod
    def user_id(self) -> str:
        """JID of the logged-in account, empty before pairing."""

    @abstractmethod
    async def start(self, sink: GatewaySink) -> None:
        """Open the connection; returns once the attempt is under way."""

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def send_message(self, jid: str, content: dict[str, Any], quoted: Any = None) -> Any: ...

    async def read_messages(self, keys: list[dict[str, Any]]) -> None:
        return None

    async def reject_call(self, call_id: str, caller: str) -> None:
        return None

    async def update_profile_status(self, text: str) -> None:
        return None

    async def group_metadata(self, jid: str) -> dict[str, Any]:
        return {}

    async def group_participants_update(self, jid: str, participants: list[str], action: str) -> Any:
        return None


GatewayFactory = Callable[..., GatewayClient]


def load_gateway_factory(spec: str) -> GatewayFactory:
    """Resolve "package.module:callable" to the factory object."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"gateway factory '{spec}' must look like 'module:callable'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"gateway factory '{spec}' is not callable")
    return factory


def classify_disconnect(status_code: int | None, message: str = "") -> DisconnectReason:
    """Map a close status code / error text onto the closed reason set."""
    text = (message or "").lower()
    if "conflict" in text:
        return DisconnectReason.CONFLICT
    if "stream errored" in text or "stream error" in text:
        return DisconnectReason.STREAM_ERROR
    if status_code == STATUS_LOGGED_OUT:
        return DisconnectReason.LOGGED_OUT
    if status_code == STATUS_BAD_SESSION:
        return DisconnectReason.BAD_SESSION
    if status_code == STATUS_CONNECTION_REPLACED:
        return DisconnectReason.CONNECTION_REPLACED
    if status_code == STATUS_RESTART_REQUIRED:
        return DisconnectReason.RESTART_REQUIRED
    if status_code in (STATUS_TIMED_OUT, STATUS_CONNECTION_CLOSED):
        return DisconnectReason.TIMED_OUT
    return DisconnectReason.UNKNOWN
