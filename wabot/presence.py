"""Startup notification and periodic profile status ("auto bio")."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from wabot.errors import GatewayUnavailableError
from wabot.helpers import Helpers
from wabot.log import log_task_exception, logger
from wabot.rate_limiter import SlidingWindowRateLimiter

BIO_INTERVAL = 15 * 60
BIO_MAX_PER_HOUR = 2
NOTIFY_TIMEOUT = 30.0


class Presence:
    def __init__(self, config: Any, registry: Any, helpers: Helpers, scheduler: Any = None) -> None:
        self._config = config
        self._registry = registry
        self._helpers = helpers
        self._scheduler = scheduler
        self._bio_limiter = SlidingWindowRateLimiter(BIO_MAX_PER_HOUR, 3600)
        self._bio_task: asyncio.Task[None] | None = None
        self._notify_task: asyncio.Task[None] | None = None
        self.notifications_sent = 0

    def startup_text(self) -> str:
        cfg = self._config
        stats = self._registry.stats()
        tasks = len(self._scheduler.running_ids()) if self._scheduler is not None else 0
        flags = "\n".join(f"• {name}: {'✅' if on else '❌'}" for name, on in cfg.features().items())
        return (
            f"🤖 *{cfg.bot_name} connected*\n\n"
            f"⚙️ Mode: {cfg.mode}\n"
            f"🔣 Prefix: {cfg.prefix}\n"
            f"🔌 Plugins: {stats.enabled}/{stats.total} enabled, {stats.commands} commands\n"
            f"⏰ Scheduled tasks: {tasks}\n\n"
            f"*Features*\n{flags}"
        )

    async def notify_owner(self) -> None:
        try:
            sent = await asyncio.wait_for(self._helpers.send_to_owner(self.startup_text()), NOTIFY_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Startup notification timed out after {NOTIFY_TIMEOUT}s")
        except Exception as e:
            logger.warning(f"Startup notification failed: {e}")
        else:
            if sent is not None:
                self.notifications_sent += 1

    async def on_connected(self) -> None:
        """Runs inside the connection-state listener, so nothing here waits on the network."""
        if self._notify_task is None or self._notify_task.done():
            self._notify_task = asyncio.create_task(self.notify_owner(), name="startup-notify")
            self._notify_task.add_done_callback(log_task_exception)
        if self._config.auto_bio and (self._bio_task is None or self._bio_task.done()):
            self._bio_task = asyncio.create_task(self._bio_loop())
            self._bio_task.add_done_callback(log_task_exception)

    async def on_disconnected(self) -> None:
        await self.stop()

    def bio_text(self) -> str:
        now = datetime.now(ZoneInfo(self._config.timezone))
        return f"🤖 {self._config.bot_name} | 📅 {now:%d/%m/%Y} | ⏰ {now:%H:%M}"

    async def update_bio(self) -> bool:
        allowed, _ = self._bio_limiter.check("bio")
        if not allowed:
            return False
        try:
            await self._helpers.gateway.update_profile_status(self.bio_text())
        except GatewayUnavailableError:
            return False
        except Exception as e:
            logger.warning(f"Bio update failed: {e}")
            return False
        logger.debug("Profile status updated")
        return True

    async def _bio_loop(self) -> None:
        while True:
            await self.update_bio()
            await asyncio.sleep(BIO_INTERVAL)

    async def stop(self) -> None:
        for task in (self._notify_task, self._bio_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._notify_task = None
        self._bio_task = None
