"""EventRouter -- single-threaded fanout of gateway events."""

from __future__ import annotations

from typing import Any

from wabot.dispatcher import CommandDispatcher
from wabot.handlers import BuiltinHandlers
from wabot.log import logger
from wabot.serializer import (
    serialize_calls,
    serialize_group_updates,
    serialize_participants,
    serialize_upsert,
)
from wabot.types import InboundMessage, RawEvent


class EventRouter:
    """Route each raw gateway event to the dispatcher and the built-in handlers.

    Events are handled one at a time in delivery order. Only the command
    queue decouples plugin execution from routing, so per-chat order is kept.
    """

    def __init__(self, dispatcher: CommandDispatcher, handlers: BuiltinHandlers) -> None:
        self._dispatcher = dispatcher
        self._handlers = handlers
        self.routed: dict[str, int] = {}

    async def route(self, event: RawEvent, gateway: Any) -> None:
        self.routed[event.kind] = self.routed.get(event.kind, 0) + 1
        try:
            if event.kind == "messages.upsert":
                for msg in serialize_upsert(event.payload or {}, gateway.user_id, gateway):
                    await self.on_message(msg)
            elif event.kind == "call":
                for call in serialize_calls(event.payload, gateway):
                    await self._handlers.on_call(call)
            elif event.kind == "groups.update":
                for update in serialize_group_updates(event.payload, gateway):
                    self._dispatcher.dispatch_listeners("on_group_update", update)
            elif event.kind == "group-participants.update":
                update = serialize_participants(event.payload or {}, gateway)
                await self._handlers.on_group_participants(update)
                self._dispatcher.dispatch_listeners("on_group_participants", update)
            else:
                logger.debug(f"Unrouted gateway event: {event.kind}")
        except Exception as e:
            logger.error(f"Routing {event.kind} failed: {e!r}")

    async def on_message(self, msg: InboundMessage) -> None:
        if not await self._handlers.admit(msg):
            return
        if self._dispatcher.dispatch(msg):
            return
        self._dispatcher.dispatch_listeners("on_message", msg)
        await self._handlers.after_message(msg)
