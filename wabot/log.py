"""Loguru setup for the bot.

Core code logs through the shared ``logger``. Plugin handlers and scheduled
tasks get ``plugin_logger(filename)``, whose records carry ``extra["plugin"]``
and are rendered as ``[ping.py] message`` on text sinks, or as a field of the
record on JSON sinks.
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any, Callable

from loguru import logger

from wabot.config import LogConfig

CONSOLE_FORMAT = "{time:HH:mm:ss} | {level:<7} | {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level:<7} | {message}"


def _tagged(template: str) -> Callable[[dict[str, Any]], str]:
    def render(record: dict[str, Any]) -> str:
        line = template
        if record["extra"].get("plugin"):
            line = line.replace("{message}", "[{extra[plugin]}] {message}")
        return line + "\n{exception}"

    return render


def _sink_options(cfg: LogConfig, default_format: str) -> dict[str, Any]:
    if cfg.json_format:
        return {"level": cfg.level, "serialize": True}
    return {"level": cfg.level, "format": _tagged(cfg.format or default_format)}


def configure(cfg: LogConfig | None = None) -> list[int]:
    """Replace every sink with the ones described by ``cfg``; returns the handler ids.

    Called by WhatsAppBot before anything else logs. Calling it again is safe.
    """
    cfg = cfg or LogConfig()
    handlers: list[dict[str, Any]] = [{"sink": sys.stderr, **_sink_options(cfg, CONSOLE_FORMAT)}]
    if cfg.file:
        handlers.append({
            "sink": cfg.file,
            "rotation": cfg.rotation,
            "retention": cfg.retention,
            **_sink_options(cfg, FILE_FORMAT),
        })
    return logger.configure(handlers=handlers, extra={"plugin": ""})


def plugin_logger(filename: str):
    """Logger handed to a plugin through ExecutionContext."""
    return logger.bind(plugin=filename)


def log_task_exception(task: asyncio.Task[Any]) -> None:
    """Done-callback for fire-and-forget tasks so their failures reach the log."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).error(f"Background task {task.get_name()} failed: {exc!r}")


# Until WhatsAppBot calls configure(), log INFO and above to stderr
configure()
