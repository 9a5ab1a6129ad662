"""Admin route handlers."""
from __future__ import annotations

import time
from typing import Any
from urllib.parse import unquote, urlparse

from wabot.errors import (
    PluginLoadError,
    StoreError,
    TaskSuspendedError,
    UnknownPluginError,
    UnknownTaskError,
)
from wabot.health import force_gc, rss_mb
from wabot.helpers import format_uptime
from wabot.log import logger
from wabot.types import ConnectionState


async def handle_route(app: Any, method: str, path: str, body: bytes) -> dict[str, Any]:
    """Route dispatcher. Returns a JSON-able dict; an int "status" key sets the HTTP code."""
    clean_path = urlparse(path).path.rstrip("/") or "/"
    segments = [unquote(s) for s in clean_path.strip("/").split("/")] if clean_path != "/" else []

    if method == "GET":
        if clean_path == "/":
            return _root(app)
        if clean_path == "/health":
            return _health(app)
        if clean_path == "/ready":
            return _ready(app)
        if clean_path == "/qr":
            return _qr(app)
        if clean_path == "/api/bot-info":
            return _bot_info(app)
        if clean_path == "/api/plugins":
            return _plugins(app)
        if clean_path == "/api/scheduled-tasks":
            return _tasks(app)

    if method == "POST":
        if clean_path == "/api/plugins/reload":
            return await _reload(app)
        if len(segments) == 4 and segments[:2] == ["api", "plugins"] and segments[3] in ("enable", "disable"):
            return await _toggle(app, segments[2], segments[3])
        if len(segments) == 4 and segments[:2] == ["api", "plugins"] and segments[3] == "reload":
            return await _reload_one(app, segments[2])
        if len(segments) == 4 and segments[:2] == ["api", "scheduled-tasks"] and segments[3] == "trigger":
            return _trigger(app, segments[2])
        if clean_path == "/api/force-gc":
            return force_gc()
        if clean_path == "/api/session/clean":
            return await _clean_session(app)

    return {"error": "not found", "status": 404}


def _uptime(app: Any) -> float:
    return time.monotonic() - app.started_at if app.started_at else 0.0


def _root(app: Any) -> dict[str, Any]:
    uptime = _uptime(app)
    return {
        "status": "running",
        "bot": app.config.bot_name,
        "uptime": round(uptime, 1),
        "uptime_human": format_uptime(uptime),
        "memory": {"rss_mb": round(rss_mb(), 1)},
        "version": app.version,
        "connection": app.supervisor.state.value,
    }


def _health(app: Any) -> dict[str, Any]:
    return {
        "status": "healthy",
        "uptime": round(_uptime(app), 1),
        "connection": app.supervisor.state.value,
    }


def _ready(app: Any) -> dict[str, Any]:
    state = app.supervisor.state
    if state is ConnectionState.CONNECTED:
        return {"ready": True, "connection": state.value}
    return {"ready": False, "connection": state.value, "status": 503}


def _qr(app: Any) -> dict[str, Any]:
    sup = app.supervisor
    if sup.state is ConnectionState.QR_READY and sup.qr:
        return {"qr": sup.qr}
    if sup.state is ConnectionState.CONNECTED:
        return {"error": "already connected", "status": 409}
    return {"error": "no pairing code available", "connection": sup.state.value, "status": 404}


def _bot_info(app: Any) -> dict[str, Any]:
    cfg = app.config
    return {
        "bot": {
            "name": cfg.bot_name,
            "owner": cfg.owner_name,
            "mode": cfg.mode,
            "prefix": cfg.prefix,
            "timezone": cfg.timezone,
            "version": app.version,
            "uptime": round(_uptime(app), 1),
        },
        "connection": app.supervisor.status(),
        "plugins": {
            **app.registry.stats().to_dict(),
            "health": app.registry.health_check().to_dict(),
            "stats": [s.to_dict() for s in app.registry.plugin_stats()],
            "load_errors": app.registry.load_errors,
        },
        "scheduled_tasks": {
            "total": len(app.scheduler.list_tasks()),
            "running": len(app.scheduler.running_ids()),
        },
        "health": app.health.snapshot(),
        "features": cfg.features(),
    }


def _plugins(app: Any) -> dict[str, Any]:
    plugins = app.registry.describe()
    return {"plugins": plugins, "total": len(plugins), "commands": app.registry.command_map}


async def _toggle(app: Any, filename: str, action: str) -> dict[str, Any]:
    try:
        if action == "enable":
            changed = await app.registry.enable(filename)
        else:
            changed = await app.registry.disable(filename)
    except UnknownPluginError:
        return {"success": False, "message": f"plugin '{filename}' not found", "status": 404}
    except StoreError as e:
        logger.error(f"Plugin {action} of {filename} rolled back: {e}")
        return {"success": False, "message": f"could not persist state: {e}", "status": 500}
    verb = "enabled" if action == "enable" else "disabled"
    message = f"Plugin {filename} {verb}" if changed else f"Plugin {filename} already {verb}"
    return {"success": True, "message": message}


async def _reload(app: Any) -> dict[str, Any]:
    count = await app.registry.force_reload()
    return {"success": True, "plugins": count, "commands": len(app.registry.command_map)}


async def _reload_one(app: Any, filename: str) -> dict[str, Any]:
    try:
        descriptor = await app.registry.reload(filename)
    except UnknownPluginError:
        return {"success": False, "message": f"plugin '{filename}' not found", "status": 404}
    except PluginLoadError as e:
        return {"success": False, "message": str(e), "status": 422}
    return {
        "success": True,
        "message": f"Plugin {filename} reloaded",
        "version": descriptor.version,
        "commands": sorted(descriptor.tokens),
        "tasks": [t.name for t in descriptor.scheduled_tasks],
    }


def _tasks(app: Any) -> dict[str, Any]:
    tasks = app.scheduler.describe()
    return {"tasks": tasks, "total": len(tasks)}


def _trigger(app: Any, task_id: str) -> dict[str, Any]:
    try:
        app.scheduler.trigger(task_id)
    except UnknownTaskError:
        return {"success": False, "message": f"task '{task_id}' not found", "status": 404}
    except TaskSuspendedError:
        return {"success": False, "message": f"task '{task_id}' belongs to a disabled plugin", "status": 409}
    return {"success": True, "task_id": task_id}


async def _clean_session(app: Any) -> dict[str, Any]:
    await app.session.clean_session()
    return {"success": True, "message": "session cleaned; restart the connection to pair again"}
