"""Shared test fixtures for the wabot test suite.

Test modules import the fakes directly (`from conftest import FakeGateway`)
and use the fixtures for config, store and plugin files.
"""
from __future__ import annotations

import asyncio
import textwrap
from pathlib import Path
from typing import Any, Callable

import pytest

from wabot.config import BotConfig
from wabot.gateway import GatewayClient
from wabot.store import MemoryStore
from wabot.types import ConnectionUpdate, InboundMessage, RawEvent

OWNER = "2348000000001@s.whatsapp.net"
BOT = "2348000000099@s.whatsapp.net"
USER = "2348000000002@s.whatsapp.net"
GROUP = "120363000000000001@g.us"


# ---- Fakes ----


class FakeGateway(GatewayClient):
    """Gateway that replays a scripted list of connection updates and records sends."""

    def __init__(self, script: list[ConnectionUpdate] | None = None, user: str = BOT) -> None:
        self.script = list(script) if script is not None else [ConnectionUpdate(connection="open")]
        self.sent: list[tuple[str, dict[str, Any], Any]] = []
        self.read: list[dict[str, Any]] = []
        self.rejected: list[tuple[str, str]] = []
        self.bios: list[str] = []
        self.participant_updates: list[tuple[str, list[str], str]] = []
        self.group_meta: dict[str, dict[str, Any]] = {}
        self.sink: Any = None
        self.closed = False
        self._user = user

    @property
    def user_id(self) -> str:
        return self._user

    async def start(self, sink: Any) -> None:
        self.sink = sink
        for update in self.script:
            await sink.handle_connection_update(update)

    async def close(self) -> None:
        self.closed = True

    async def send_message(self, jid: str, content: dict[str, Any], quoted: Any = None) -> Any:
        self.sent.append((jid, content, quoted))
        return {"key": {"id": f"OUT{len(self.sent)}", "remoteJid": jid, "fromMe": True}}

    async def read_messages(self, keys: list[dict[str, Any]]) -> None:
        self.read.extend(keys)

    async def reject_call(self, call_id: str, caller: str) -> None:
        self.rejected.append((call_id, caller))

    async def update_profile_status(self, text: str) -> None:
        self.bios.append(text)

    async def group_metadata(self, jid: str) -> dict[str, Any]:
        return self.group_meta.get(jid, {})

    async def group_participants_update(self, jid: str, participants: list[str], action: str) -> Any:
        self.participant_updates.append((jid, list(participants), action))

    # ---- test helpers ----

    def texts(self, jid: str | None = None) -> list[str]:
        return [c.get("text", "") for j, c, _ in self.sent if jid is None or j == jid]

    async def emit(self, kind: str, payload: Any) -> None:
        await self.sink.handle_event(RawEvent(kind=kind, payload=payload))


class GatewayScript:
    """Gateway factory: each connection attempt consumes the next script.

    Once the scripts run out every further attempt simply opens.
    """

    def __init__(self, *scripts: list[ConnectionUpdate]) -> None:
        self.scripts = list(scripts)
        self.created: list[FakeGateway] = []

    def __call__(self, auth_state: Any, save_creds: Any, config: Any) -> FakeGateway:
        script = self.scripts.pop(0) if self.scripts else None
        gateway = FakeGateway(script)
        self.created.append(gateway)
        return gateway

    @property
    def last(self) -> FakeGateway:
        return self.created[-1]


def close(status_code: int | None = None, error: str = "") -> ConnectionUpdate:
    return ConnectionUpdate(connection="close", status_code=status_code, error=error)


def make_message(
    body: str,
    sender: str = USER,
    chat: str | None = None,
    from_me: bool = False,
    gateway: Any = None,
    msg_id: str = "MSG1",
) -> InboundMessage:
    chat = chat or sender
    is_group = chat.endswith("@g.us")
    key: dict[str, Any] = {"remoteJid": chat, "id": msg_id, "fromMe": from_me}
    if is_group:
        key["participant"] = sender
    return InboundMessage(
        id=msg_id,
        chat=chat,
        sender=sender,
        body=body,
        is_group=is_group,
        from_me=from_me,
        type="conversation",
        raw={"key": key, "message": {"conversation": body}},
        gateway=gateway,
    )


def upsert(body: str, sender: str = USER, chat: str | None = None, msg_id: str = "MSG1") -> dict[str, Any]:
    """A `messages.upsert` payload as the protocol library delivers it."""
    chat = chat or sender
    key: dict[str, Any] = {"remoteJid": chat, "id": msg_id, "fromMe": False}
    if chat.endswith("@g.us"):
        key["participant"] = sender
    return {
        "type": "notify",
        "messages": [{
            "key": key,
            "pushName": "Tester",
            "messageTimestamp": 1700000000,
            "message": {"conversation": body},
        }],
    }


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


PING_PLUGIN = '''
info = {
    "name": "Ping",
    "version": "1.0.0",
    "commands": ["ping"],
    "aliases": ["p"],
}


async def run(ctx):
    await ctx.reply("pong")
'''


# ---- Fixtures ----


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's environment and .env out of BotConfig."""
    for name in BotConfig.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def config(tmp_path: Path) -> BotConfig:
    return BotConfig(
        owner_id="2348000000001",
        root_dir=str(tmp_path),
        store_uri="memory://",
        host="127.0.0.1",
        port=0,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        conflict_delay=0.01,
        plugin_execution_timeout=1.0,
        task_timeout=1.0,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def plugin_dir(config: BotConfig) -> Callable[[str, str], Path]:
    """Writer for plugin files in the configured plugins directory."""
    directory = config.plugins_path
    directory.mkdir(parents=True, exist_ok=True)

    def write(filename: str, source: str) -> Path:
        path = directory / filename
        path.write_text(textwrap.dedent(source), encoding="utf-8")
        return path

    return write
