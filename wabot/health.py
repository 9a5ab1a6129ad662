"""HealthMonitor -- periodic samplers that observe and report, never restart.

Samplers (intervals from config.health):
  memory      RSS of this process; GC above high_memory_mb, owner alert above critical_memory_mb
  connection  supervisor state snapshot
  store       document store ping + latency
  plugins     registry health check (critical / warning issues)
"""

from __future__ import annotations

import asyncio
import gc
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import psutil

from wabot.errors import StoreError
from wabot.log import log_task_exception, logger

_MB = 1024 * 1024


def rss_mb() -> float:
    return psutil.Process().memory_info().rss / _MB


def force_gc() -> dict[str, float]:
    """Run a full collection and report resident memory before/after in MB."""
    before = rss_mb()
    gc.collect()
    after = rss_mb()
    return {"before": round(before, 1), "after": round(after, 1), "freed": round(before - after, 1)}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class HealthMonitor:
    def __init__(
        self,
        config: Any,
        supervisor: Any,
        store: Any,
        registry: Any,
        session: Any = None,
        notify: Callable[[str], Awaitable[Any]] | None = None,
    ) -> None:
        self._config = config
        self._supervisor = supervisor
        self._store = store
        self._registry = registry
        self._session = session
        self._notify = notify
        self.samples: dict[str, dict[str, Any]] = {}
        self._tasks: list[asyncio.Task[None]] = []

    async def start(self) -> None:
        hc = self._config.health
        for name, interval, sampler in (
            ("memory", hc.memory_interval, self.sample_memory),
            ("connection", hc.connection_interval, self.sample_connection),
            ("store", hc.store_interval, self.sample_store),
            ("plugins", hc.plugin_interval, self.sample_plugins),
        ):
            t = asyncio.create_task(self._loop(name, interval, sampler), name=f"health:{name}")
            t.add_done_callback(log_task_exception)
            self._tasks.append(t)
        logger.info("Health monitor started")

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _loop(self, name: str, interval: float, sampler: Callable[[], Awaitable[dict[str, Any]]]) -> None:
        while True:
            try:
                await sampler()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Health sampler {name} failed: {e!r}")
                self.samples[name] = {"ok": False, "error": str(e), "at": _now()}
            await asyncio.sleep(interval)

    async def sample_memory(self) -> dict[str, Any]:
        mem = rss_mb()
        sample: dict[str, Any] = {"rss_mb": round(mem, 1), "gc": None, "alerted": False, "at": _now()}
        if mem > self._config.high_memory_mb:
            logger.warning(f"High memory usage: {mem:.0f}MB, forcing GC")
            sample["gc"] = force_gc()
            mem = sample["gc"]["after"]
        if mem > self._config.critical_memory_mb:
            logger.error(f"Critical memory usage: {mem:.0f}MB")
            sample["alerted"] = await self._alert(
                f"⚠️ *Memory Alert*\n\nBot is using {mem:.0f}MB of memory "
                f"(limit {self._config.critical_memory_mb}MB). Consider a restart."
            )
        sample["ok"] = mem <= self._config.critical_memory_mb
        self.samples["memory"] = sample
        return sample

    async def sample_connection(self) -> dict[str, Any]:
        sample = {**self._supervisor.status(), "ok": self._supervisor.connected, "at": _now()}
        if not sample["ok"]:
            logger.warning(f"Connection health: state={sample['state']}")
        self.samples["connection"] = sample
        return sample

    async def sample_store(self) -> dict[str, Any]:
        start = time.perf_counter()
        try:
            ok = await self._store.ping()
            error = ""
        except StoreError as e:
            ok, error = False, str(e)
        sample: dict[str, Any] = {
            "ok": ok,
            "latency_ms": round((time.perf_counter() - start) * 1000, 1),
            "pending_writes": self._registry.pending_writes,
            "at": _now(),
        }
        if error:
            sample["error"] = error
        if self._session is not None:
            sample["session_io_ok"] = self._session.io_healthy
            sample["session_io_failures"] = self._session.io_failures
            if not self._session.io_healthy:
                sample["ok"] = False
                sample["session_last_error"] = self._session.last_io_error
        if not sample["ok"]:
            logger.warning(f"Store health degraded: {sample}")
        self.samples["store"] = sample
        return sample

    async def sample_plugins(self) -> dict[str, Any]:
        report = self._registry.health_check()
        sample = {**report.to_dict(), "ok": report.healthy, "at": _now()}
        if report.critical:
            logger.warning(f"Plugin health: {report.critical_issues} critical issue(s): {report.critical}")
        self.samples["plugins"] = sample
        return sample

    async def _alert(self, text: str) -> bool:
        if self._notify is None:
            return False
        try:
            await self._notify(text)
        except Exception as e:
            logger.warning(f"Owner alert not delivered: {e}")
            return False
        return True

    def snapshot(self) -> dict[str, Any]:
        overall = all(s.get("ok", True) for s in self.samples.values())
        return {"healthy": overall, "samples": dict(self.samples)}
