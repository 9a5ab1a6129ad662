"""Core data structures -- the foundation of wabot."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    QR_READY = "qr_ready"
    CONNECTED = "connected"
    ERROR = "error"


class DisconnectReason(str, Enum):
    CONFLICT = "conflict"
    STREAM_ERROR = "stream-error"
    BAD_SESSION = "bad-session"
    LOGGED_OUT = "logged-out"
    CONNECTION_REPLACED = "connection-replaced"
    RESTART_REQUIRED = "restart-required"
    TIMED_OUT = "timed-out"
    UNKNOWN = "unknown"


# ---- Inbound gateway events ----


@dataclass
class QuotedMessage:
    id: str
    sender: str
    text: str = ""
    type: str = "unknown"
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class MediaInfo:
    type: str
    mimetype: str = ""
    caption: str = ""
    file_length: int = 0
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class InboundMessage:
    """A serialized chat message. `chat` is the JID replies go to."""

    id: str
    chat: str
    sender: str
    body: str
    is_group: bool = False
    from_me: bool = False
    type: str = "unknown"
    push_name: str = ""
    mentions: list[str] = field(default_factory=list)
    quoted: QuotedMessage | None = None
    media: MediaInfo | None = None
    timestamp: datetime = field(default_factory=utcnow)
    raw: dict[str, Any] = field(default_factory=dict)
    gateway: Any = None

    @property
    def is_status(self) -> bool:
        return self.chat == "status@broadcast"


@dataclass
class CallEvent:
    call_id: str
    caller: str
    status: str
    is_video: bool = False
    is_group: bool = False
    gateway: Any = None


@dataclass
class GroupUpdate:
    group_id: str
    changes: dict[str, Any] = field(default_factory=dict)
    gateway: Any = None


@dataclass
class GroupParticipantsUpdate:
    group_id: str
    participants: list[str]
    action: str  # add | remove | promote | demote
    author: str = ""
    gateway: Any = None


GatewayEvent = Union[InboundMessage, CallEvent, GroupUpdate, GroupParticipantsUpdate]


@dataclass
class RawEvent:
    """Untyped event as emitted by the gateway library (`kind` is its event name)."""

    kind: str
    payload: Any


@dataclass
class ConnectionUpdate:
    """Connection lifecycle notification from the gateway library."""

    connection: str | None = None  # connecting | open | close
    qr: str | None = None
    status_code: int | None = None
    error: str = ""


# ---- Plugins ----


@dataclass(frozen=True)
class TaskSpec:
    name: str
    schedule: str
    handler: Callable[..., Any]
    description: str = ""


@dataclass(frozen=True, eq=False)
class PluginDescriptor:
    """Immutable record extracted from a plugin unit at load time."""

    filename: str
    name: str
    version: str
    entry_point: Callable[..., Any] | None
    author: str = "Unknown"
    description: str = ""
    category: str = "general"
    commands: frozenset[str] = frozenset()
    aliases: frozenset[str] = frozenset()
    scheduled_tasks: tuple[TaskSpec, ...] = ()
    owner_only: bool = False
    priority: int = 0
    listeners: dict[str, Callable[..., Any]] = field(default_factory=dict)

    @property
    def tokens(self) -> frozenset[str]:
        return self.commands | self.aliases

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "name": self.name,
            "version": self.version,
            "author": self.author,
            "description": self.description,
            "category": self.category,
            "commands": sorted(self.commands),
            "aliases": sorted(self.aliases),
            "owner_only": self.owner_only,
            "priority": self.priority,
            "scheduled_tasks": [
                {"name": t.name, "schedule": t.schedule, "description": t.description}
                for t in self.scheduled_tasks
            ],
            "listeners": sorted(self.listeners),
        }


PLUGIN_STATE_SCHEMA = 1
TASK_STATE_SCHEMA = 1


def migrate_document(doc: dict[str, Any]) -> dict[str, Any]:
    """Bring a persisted state document up to the current schema.

    Version 0 documents used camelCase keys and called crashes `errors`.
    """
    if int(doc.get("schema_version", 0) or 0) >= 1:
        return dict(doc)
    from wabot.config import _camel_to_snake

    migrated = {_camel_to_snake(k): v for k, v in doc.items()}
    if "errors" in migrated and "crashes" not in migrated:
        migrated["crashes"] = migrated.pop("errors")
    migrated.pop("_id", None)
    return migrated


@dataclass
class PluginState:
    """Mutable per-plugin record persisted in the `plugin_state` collection."""

    filename: str
    enabled: bool = True
    crashes: int = 0
    executions: int = 0
    total_execution_time: float = 0.0  # milliseconds
    last_error: str | None = None
    last_crash_time: datetime | None = None
    last_execution: datetime | None = None
    disabled_reason: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def avg_execution_time(self) -> float:
        return self.total_execution_time / self.executions if self.executions else 0.0

    def to_doc(self) -> dict[str, Any]:
        return {
            "schema_version": PLUGIN_STATE_SCHEMA,
            "filename": self.filename,
            "enabled": self.enabled,
            "crashes": self.crashes,
            "executions": self.executions,
            "total_execution_time": round(self.total_execution_time, 3),
            "last_error": self.last_error,
            "last_crash_time": _iso(self.last_crash_time),
            "last_execution": _iso(self.last_execution),
            "disabled_reason": self.disabled_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> PluginState:
        d = migrate_document(doc)
        return cls(
            filename=d["filename"],
            enabled=bool(d.get("enabled", True)),
            crashes=int(d.get("crashes", 0) or 0),
            executions=int(d.get("executions", 0) or 0),
            total_execution_time=float(d.get("total_execution_time", 0.0) or 0.0),
            last_error=d.get("last_error"),
            last_crash_time=_parse_dt(d.get("last_crash_time")),
            last_execution=_parse_dt(d.get("last_execution")),
            disabled_reason=d.get("disabled_reason", "") or "",
            created_at=_parse_dt(d.get("created_at")) or utcnow(),
            updated_at=_parse_dt(d.get("updated_at")) or utcnow(),
        )


@dataclass
class TaskState:
    """Runtime + persisted record of one scheduled task (`scheduled_tasks` collection)."""

    task_id: str
    filename: str
    name: str
    schedule: str
    description: str = ""
    enabled: bool = True
    last_run: datetime | None = None
    next_run: datetime | None = None
    total_runs: int = 0
    failures: int = 0
    last_error: str | None = None

    def to_doc(self) -> dict[str, Any]:
        return {
            "schema_version": TASK_STATE_SCHEMA,
            "task_id": self.task_id,
            "filename": self.filename,
            "name": self.name,
            "schedule": self.schedule,
            "description": self.description,
            "enabled": self.enabled,
            "last_run": _iso(self.last_run),
            "next_run": _iso(self.next_run),
            "total_runs": self.total_runs,
            "failures": self.failures,
            "last_error": self.last_error,
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> TaskState:
        d = migrate_document(doc)
        return cls(
            task_id=d["task_id"],
            filename=d.get("filename", ""),
            name=d.get("name", ""),
            schedule=d.get("schedule", ""),
            description=d.get("description", "") or "",
            enabled=bool(d.get("enabled", True)),
            last_run=_parse_dt(d.get("last_run")),
            next_run=_parse_dt(d.get("next_run")),
            total_runs=int(d.get("total_runs", 0) or 0),
            failures=int(d.get("failures", 0) or 0),
            last_error=d.get("last_error"),
        )


@dataclass
class ExecutionContext:
    """Everything a plugin entry point, listener or task handler receives.

    Scheduled task handlers get msg/args/command left empty; listeners for
    group events find the event in `event`.
    """

    gateway: Any
    store: Any
    config: Any
    logger: Any
    helpers: Any
    reply: Callable[..., Awaitable[Any]]
    msg: InboundMessage | None = None
    args: list[str] = field(default_factory=list)
    text: str = ""
    command: str = ""
    event: GatewayEvent | None = None
    filename: str = ""


@dataclass
class Job:
    """One unit of work on the command queue."""

    kind: str  # command | on_message | on_group_update | on_group_participants
    filename: str
    msg: InboundMessage | None = None
    event: GatewayEvent | None = None
    command: str = ""
    args: list[str] = field(default_factory=list)
    text: str = ""
