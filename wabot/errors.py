"""Exception hierarchy."""

from __future__ import annotations


class BotError(Exception):
    """Base class for wabot runtime errors."""


class StoreError(BotError):
    """A document store operation failed."""


class SessionError(BotError):
    """Credentials could not be read, written or bootstrapped."""


class PluginLoadError(BotError):
    """A plugin unit could not be imported or is malformed."""


class GatewayUnavailableError(BotError):
    """An outbound operation needed a live gateway and none is attached."""


class UnknownPluginError(BotError, KeyError):
    """Referenced plugin filename is not loaded."""


class UnknownTaskError(BotError, KeyError):
    """Referenced task id is not registered."""


class TaskSuspendedError(BotError):
    """Task belongs to a plugin that is currently disabled."""
