"""wabot - WhatsApp bot core runtime: resilient gateway session, plugins, scheduled tasks."""

__version__ = "1.0.0"

from wabot.types import (  # noqa: E402
    ConnectionState,
    DisconnectReason,
    ExecutionContext,
    InboundMessage,
    PluginDescriptor,
    PluginState,
    TaskSpec,
    TaskState,
)
from wabot.gateway import GatewayClient  # noqa: E402
from wabot.app import WhatsAppBot  # noqa: E402

__all__ = [
    "WhatsAppBot",
    "GatewayClient",
    "ConnectionState",
    "DisconnectReason",
    "ExecutionContext",
    "InboundMessage",
    "PluginDescriptor",
    "PluginState",
    "TaskSpec",
    "TaskState",
]
