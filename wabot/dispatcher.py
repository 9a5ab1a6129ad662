"""CommandDispatcher -- parse, resolve, enqueue; one worker drains the queue."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from wabot.log import logger
from wabot.types import GatewayEvent, InboundMessage, Job


def parse_command(body: str, prefix: str) -> tuple[str, list[str], str] | None:
    """Split `<prefix>cmd rest of text` into (cmd, args, text). None if not a command."""
    if not prefix or not body or not body.startswith(prefix):
        return None
    rest = body[len(prefix):].strip()
    if not rest:
        return None
    parts = rest.split(maxsplit=1)
    text = parts[1].strip() if len(parts) > 1 else ""
    return parts[0].lower(), text.split(), text


class CommandDispatcher:
    """FIFO queue between the router and the executor.

    A single worker task drains the queue, so commands run strictly in the
    order they were received. Executor failures are logged and the worker
    moves on to the next job.
    """

    def __init__(
        self,
        registry: Any,
        executor: Any,
        config: Any,
        command_gate: Callable[[InboundMessage], bool] | None = None,
    ) -> None:
        self._registry = registry
        self._executor = executor
        self._config = config
        self._gate = command_gate
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._running = False
        self.processed = 0

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def dispatch(self, msg: InboundMessage) -> bool:
        """Enqueue `msg` if it names a registered command. Returns True if consumed."""
        parsed = parse_command(msg.body, self._config.prefix)
        if parsed is None:
            return False
        command, args, text = parsed
        descriptor = self._registry.resolve(command)
        if descriptor is None:
            return False
        if self._gate is not None and not self._gate(msg):
            return True
        self._enqueue(Job(
            kind="command",
            filename=descriptor.filename,
            msg=msg,
            command=command,
            args=args,
            text=text,
        ))
        return True

    def dispatch_listeners(self, kind: str, event: GatewayEvent) -> int:
        """Queue `event` for every enabled plugin listening on `kind`."""
        descriptors = self._registry.listeners_for(kind)
        for descriptor in descriptors:
            msg = event if isinstance(event, InboundMessage) else None
            self._enqueue(Job(kind=kind, filename=descriptor.filename, msg=msg, event=event))
        return len(descriptors)

    def _enqueue(self, job: Job) -> None:
        self._queue.put_nowait(job)
        threshold = self._config.command_queue_warn_depth
        if threshold and self._queue.qsize() > threshold:
            logger.warning(f"Command queue depth {self._queue.qsize()} exceeds {threshold}")

    async def run(self) -> None:
        self._running = True
        while self._running:
            try:
                job = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            try:
                await self._executor.execute(job)
            except Exception as e:
                logger.error(f"Dispatch error for {job.filename}: {e!r}")
            finally:
                self.processed += 1
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    def stop(self) -> None:
        self._running = False
