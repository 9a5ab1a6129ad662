"""TaskScheduler -- cron-driven background tasks declared by plugins."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter

from wabot.errors import GatewayUnavailableError, StoreError, TaskSuspendedError, UnknownTaskError
from wabot.executor import invoke_handler
from wabot.helpers import Helpers
from wabot.log import log_task_exception, logger, plugin_logger
from wabot.types import ExecutionContext, PluginDescriptor, TaskSpec, TaskState

SCHEDULED_TASKS = "scheduled_tasks"


def task_id_for(filename: str, name: str) -> str:
    return f"{filename}:{name}"


class TaskScheduler:
    """One asyncio task per enabled cron entry.

    Each handle sleeps until the next cron time in the configured timezone,
    runs the handler inline, then computes the following slot from the
    current time, so a slow task skips missed slots instead of piling up.
    Tasks are not serialized with each other or with command dispatch.
    """

    def __init__(self, store: Any, config: Any, event_log: Any = None) -> None:
        self._store = store
        self._config = config
        self._event_log = event_log
        self._tz = ZoneInfo(config.timezone)
        self._gateway: Any = None
        self._helpers = Helpers(lambda: self._gateway, config)
        self._states: dict[str, TaskState] = {}
        self._specs: dict[str, TaskSpec] = {}
        self._handles: dict[str, asyncio.Task[None]] = {}
        self._persisted: dict[str, dict[str, Any]] | None = None
        self._inflight: set[asyncio.Task[Any]] = set()
        self._suspended: set[str] = set()

    # ---- gateway ----

    def attach_gateway(self, gateway: Any) -> None:
        self._gateway = gateway

    @property
    def gateway(self) -> Any:
        return self._gateway

    # ---- registration ----

    async def _load_persisted(self) -> dict[str, dict[str, Any]]:
        if self._persisted is None:
            try:
                self._persisted = await self._store.all(SCHEDULED_TASKS)
            except StoreError as e:
                logger.error(f"Task state unavailable, starting from defaults: {e}")
                self._persisted = {}
        return self._persisted

    async def register_plugin(self, descriptor: PluginDescriptor, reset_failures: bool = False) -> list[str]:
        """(Re)register every valid task of a plugin; returns the registered ids."""
        persisted = await self._load_persisted()
        registered: list[str] = []
        self._suspended.discard(descriptor.filename)
        for spec in descriptor.scheduled_tasks:
            task_id = task_id_for(descriptor.filename, spec.name)
            if not croniter.is_valid(spec.schedule):
                logger.warning(f"Task {task_id} has invalid cron '{spec.schedule}', not scheduled")
                continue
            state = self._states.get(task_id)
            if state is None and task_id in persisted:
                try:
                    state = TaskState.from_doc({"task_id": task_id, **persisted[task_id]})
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Ignoring unreadable task state '{task_id}': {e}")
            if state is None:
                state = TaskState(
                    task_id=task_id,
                    filename=descriptor.filename,
                    name=spec.name,
                    schedule=spec.schedule,
                )
            state.filename = descriptor.filename
            state.name = spec.name
            state.schedule = spec.schedule
            state.description = spec.description
            if reset_failures:
                state.failures = 0
                state.last_error = None
                state.enabled = True

            self._states[task_id] = state
            self._specs[task_id] = spec
            self._cancel_handle(task_id)
            if state.enabled:
                state.next_run = self._next_run(spec.schedule)
                handle = asyncio.create_task(self._run_loop(task_id), name=f"cron:{task_id}")
                handle.add_done_callback(log_task_exception)
                self._handles[task_id] = handle
            else:
                state.next_run = None
                logger.info(f"Task {task_id} stays disabled ({state.failures} failures)")
            await self._persist(state)
            registered.append(task_id)
        if registered:
            logger.info(f"Scheduled {len(registered)} task(s) for {descriptor.filename}")
        return registered

    def _next_run(self, schedule: str) -> datetime:
        return croniter(schedule, datetime.now(self._tz)).get_next(datetime)

    def _cancel_handle(self, task_id: str) -> asyncio.Task[None] | None:
        handle = self._handles.pop(task_id, None)
        if handle is not None and not handle.done() and handle is not asyncio.current_task():
            handle.cancel()
            return handle
        return None

    async def _cancel_all(self, task_ids: list[str]) -> None:
        cancelled = [h for h in (self._cancel_handle(t) for t in task_ids) if h is not None]
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)

    async def stop_plugin_tasks(self, filename: str) -> None:
        """Stop the cron handles of one plugin; task states are kept."""
        self._suspended.add(filename)
        ids = [t for t, s in self._states.items() if s.filename == filename]
        await self._cancel_all(ids)
        for task_id in ids:
            self._states[task_id].next_run = None

    async def remove_plugin(self, filename: str) -> None:
        """Forget one plugin's tasks (single-unit reload); persisted rows stay in the store."""
        ids = [t for t, s in self._states.items() if s.filename == filename]
        await self._cancel_all(ids)
        for task_id in ids:
            self._states.pop(task_id, None)
            self._specs.pop(task_id, None)
        self._suspended.discard(filename)

    async def clear(self) -> None:
        """Drop every handle and registration (force reload)."""
        await self._cancel_all(list(self._handles))
        self._states.clear()
        self._specs.clear()
        self._persisted = None
        self._suspended.clear()

    async def stop(self) -> None:
        await self._cancel_all(list(self._handles))
        for t in list(self._inflight):
            t.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    # ---- execution ----

    async def _run_loop(self, task_id: str) -> None:
        spec = self._specs[task_id]
        state = self._states[task_id]
        while state.enabled:
            next_run = self._next_run(spec.schedule)
            state.next_run = next_run
            delay = (next_run - datetime.now(self._tz)).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            await self.run_task(task_id)

    def _context(self, state: TaskState) -> ExecutionContext:
        async def reply(content: str | dict[str, Any], **options: Any) -> Any:
            # Task output has no chat to answer; it goes to the owner
            gateway = self._gateway
            if gateway is None:
                raise GatewayUnavailableError("cannot reply: gateway not connected")
            if not self._config.owner_jid:
                return None
            body = {"text": content} if isinstance(content, str) else dict(content)
            return await gateway.send_message(self._config.owner_jid, {**body, **options})

        return ExecutionContext(
            gateway=self._gateway,
            store=self._store,
            config=self._config,
            logger=plugin_logger(state.filename),
            helpers=self._helpers,
            reply=reply,
            filename=state.filename,
        )

    async def run_task(self, task_id: str) -> TaskState:
        """Run a task once and account the outcome. Never raises for handler errors."""
        state = self._states.get(task_id)
        spec = self._specs.get(task_id)
        if state is None or spec is None:
            raise UnknownTaskError(task_id)

        timeout = self._config.task_timeout
        start = time.perf_counter()
        error: str | None = None
        try:
            await asyncio.wait_for(invoke_handler(spec.handler, self._context(state)), timeout=timeout)
        except asyncio.TimeoutError:
            error = f"timed out after {timeout}s"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
        elapsed_ms = (time.perf_counter() - start) * 1000

        now = datetime.now(self._tz)
        state.total_runs += 1
        if state.last_run is None or now >= state.last_run:
            state.last_run = now
        if error is None:
            state.failures = 0
            state.last_error = None
            logger.debug(f"Task {task_id} finished in {elapsed_ms:.0f}ms")
        else:
            state.failures += 1
            state.last_error = error
            logger.error(f"Task {task_id} failed ({state.failures} in a row): {error}")
            if state.enabled and state.failures >= self._config.task_failure_threshold:
                state.enabled = False
                state.next_run = None
                logger.error(f"Task {task_id} auto-disabled after {state.failures} failures")
                self._cancel_handle(task_id)

        if self._event_log is not None:
            self._event_log.log_task_run(task_id, elapsed_ms, error is None, error or "")
        await self._persist(state)
        return state

    def trigger(self, task_id: str) -> asyncio.Task[TaskState]:
        """Fire a task now in the background; the returned task resolves to its state."""
        if task_id not in self._states:
            raise UnknownTaskError(task_id)
        if self._states[task_id].filename in self._suspended:
            raise TaskSuspendedError(f"{task_id}: plugin is disabled")
        logger.info(f"Manual trigger of task {task_id}")
        t = asyncio.create_task(self.run_task(task_id))
        self._inflight.add(t)
        t.add_done_callback(lambda done: (self._inflight.discard(done), log_task_exception(done)))
        return t

    async def _persist(self, state: TaskState) -> None:
        doc = state.to_doc()
        try:
            await self._store.put(SCHEDULED_TASKS, state.task_id, doc)
        except StoreError as e:
            logger.warning(f"Task state for {state.task_id} not persisted: {e}")
            return
        if self._persisted is not None:
            self._persisted[state.task_id] = doc

    # ---- reporting ----

    def get(self, task_id: str) -> TaskState | None:
        return self._states.get(task_id)

    def list_tasks(self) -> list[TaskState]:
        return list(self._states.values())

    def is_running(self, task_id: str) -> bool:
        handle = self._handles.get(task_id)
        return handle is not None and not handle.done()

    def running_ids(self) -> list[str]:
        return [t for t in self._handles if self.is_running(t)]

    def describe(self) -> list[dict[str, Any]]:
        out = []
        for state in self._states.values():
            entry = state.to_doc()
            entry.pop("schema_version", None)
            entry["running"] = self.is_running(state.task_id)
            entry["suspended"] = state.filename in self._suspended
            out.append(entry)
        return out
