"""PluginExecutor -- runs one queued job under a timeout and records the outcome."""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Callable

from wabot.errors import GatewayUnavailableError
from wabot.helpers import NOT_OWNER, Helpers, is_owner
from wabot.log import logger, plugin_logger
from wabot.types import ExecutionContext, InboundMessage, Job


async def invoke_handler(handler: Callable[..., Any], ctx: ExecutionContext) -> Any:
    """Await coroutine handlers directly; run plain callables in a worker thread."""
    if inspect.iscoroutinefunction(handler):
        return await handler(ctx)
    result = await asyncio.to_thread(handler, ctx)
    if inspect.isawaitable(result):
        result = await result
    return result


def _content(value: str | dict[str, Any]) -> dict[str, Any]:
    return {"text": value} if isinstance(value, str) else dict(value)


class PluginExecutor:
    """Build the ExecutionContext, apply the owner gate, run, account.

    A plugin that raises or overruns its timeout never propagates out of
    execute(); the crash is recorded on the registry instead. The executor
    never sends an apology of its own.
    """

    def __init__(
        self,
        registry: Any,
        store: Any,
        config: Any,
        helpers: Helpers,
        event_log: Any = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._config = config
        self._helpers = helpers
        self._event_log = event_log

    def _gateway_for(self, job: Job) -> Any:
        event = job.msg or job.event
        gateway = getattr(event, "gateway", None)
        if gateway is not None:
            return gateway
        try:
            return self._helpers.gateway
        except GatewayUnavailableError:
            return None

    def build_context(self, job: Job) -> ExecutionContext:
        gateway = self._gateway_for(job)
        msg = job.msg

        async def reply(content: str | dict[str, Any], **options: Any) -> Any:
            target = gateway or self._gateway_for(job)
            if target is None:
                raise GatewayUnavailableError("cannot reply: gateway not connected")
            if msg is None:
                raise ValueError("reply needs a message to answer")
            return await target.send_message(msg.chat, {**_content(content), **options}, quoted=msg)

        return ExecutionContext(
            gateway=gateway,
            store=self._store,
            config=self._config,
            logger=plugin_logger(job.filename),
            helpers=self._helpers,
            reply=reply,
            msg=msg,
            args=list(job.args),
            text=job.text,
            command=job.command,
            event=job.event if job.event is not None else msg,
            filename=job.filename,
        )

    async def execute(self, job: Job) -> None:
        descriptor = self._registry.get(job.filename)
        if descriptor is None or not self._registry.is_enabled(job.filename):
            logger.debug(f"Dropping {job.kind} job for unavailable plugin {job.filename}")
            return

        if job.kind == "command":
            handler = descriptor.entry_point
            if descriptor.owner_only and not self._sender_is_owner(job.msg):
                await self._refuse(job)
                return
        else:
            handler = descriptor.listeners.get(job.kind)
            if handler is None:
                return

        ctx = self.build_context(job)
        timeout = self._config.plugin_execution_timeout
        start = time.perf_counter()
        error: str | None = None
        try:
            await asyncio.wait_for(invoke_handler(handler, ctx), timeout=timeout)
        except asyncio.TimeoutError:
            error = f"timed out after {timeout}s"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
        elapsed_ms = (time.perf_counter() - start) * 1000

        label = job.command or job.kind
        if error is None:
            logger.debug(f"{job.filename} handled {label} in {elapsed_ms:.0f}ms")
        else:
            logger.error(f"Plugin {job.filename} failed on {label}: {error}")

        await self._registry.record_execution(job.filename, elapsed_ms, error)
        if self._event_log is not None:
            self._event_log.log_plugin_execution(
                job.filename, label, elapsed_ms, error is None, error or "",
            )

    def _sender_is_owner(self, msg: InboundMessage | None) -> bool:
        if msg is None:
            return False
        return msg.from_me or is_owner(msg.sender, self._config)

    async def _refuse(self, job: Job) -> None:
        logger.info(f"Owner-only command {job.command} refused for {job.msg.sender if job.msg else '?'}")
        gateway = self._gateway_for(job)
        if gateway is None or job.msg is None:
            return
        try:
            await gateway.send_message(job.msg.chat, {"text": NOT_OWNER}, quoted=job.msg)
        except Exception as e:
            logger.warning(f"Could not send owner-only refusal: {e}")
