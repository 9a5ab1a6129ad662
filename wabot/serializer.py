"""Raw gateway payloads -> typed events."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from wabot.helpers import decode_jid, is_group_jid
from wabot.log import logger
from wabot.types import (
    CallEvent,
    GroupParticipantsUpdate,
    GroupUpdate,
    InboundMessage,
    MediaInfo,
    QuotedMessage,
)

_IGNORED_CONTENT_KEYS = {"senderKeyDistributionMessage", "messageContextInfo"}
_WRAPPER_TYPES = ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2", "documentWithCaptionMessage")
_MEDIA_TYPES = {
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "stickerMessage": "sticker",
    "documentMessage": "document",
}


def content_type(message: dict[str, Any] | None) -> str:
    """First meaningful key of a message body dict."""
    if not message:
        return ""
    for key in message:
        if key not in _IGNORED_CONTENT_KEYS:
            return key
    return ""


def _unwrap(message: dict[str, Any]) -> tuple[dict[str, Any], str]:
    mtype = content_type(message)
    for _ in range(3):
        if mtype in _WRAPPER_TYPES and isinstance(message.get(mtype), dict) and message[mtype].get("message"):
            message = message[mtype]["message"]
            mtype = content_type(message)
        else:
            break
    return message, mtype


def _text_of(message: dict[str, Any], mtype: str) -> str:
    if message.get("conversation"):
        return str(message["conversation"])
    inner = message.get(mtype)
    if isinstance(inner, dict):
        text = inner.get("text") or inner.get("caption")
        if text:
            return str(text)
    list_reply = (message.get("listResponseMessage") or {}).get("singleSelectReply") or {}
    if list_reply.get("selectedRowId"):
        return str(list_reply["selectedRowId"])
    button = message.get("buttonsResponseMessage") or {}
    if button.get("selectedButtonId"):
        return str(button["selectedButtonId"])
    template = message.get("templateButtonReplyMessage") or {}
    if template.get("selectedId"):
        return str(template["selectedId"])
    return ""


def _timestamp(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


def serialize_message(raw: dict[str, Any], self_id: str = "", gateway: Any = None) -> InboundMessage | None:
    """Normalise one `messages.upsert` entry. Returns None for entries without a key."""
    key = raw.get("key") or {}
    if not key.get("remoteJid"):
        return None

    chat = decode_jid(key["remoteJid"])
    from_me = bool(key.get("fromMe"))
    is_group = is_group_jid(chat)
    if is_group:
        sender = decode_jid(key.get("participant") or raw.get("participant") or "")
    elif from_me:
        sender = decode_jid(self_id)
    else:
        sender = chat

    message, mtype = _unwrap(raw.get("message") or {})
    body = _text_of(message, mtype).strip() if message else ""
    inner = message.get(mtype) if isinstance(message.get(mtype), dict) else {}
    context = inner.get("contextInfo") or {}

    quoted = None
    if context.get("quotedMessage"):
        qmsg = context["quotedMessage"]
        qtype = content_type(qmsg)
        quoted = QuotedMessage(
            id=context.get("stanzaId", ""),
            sender=decode_jid(context.get("participant", "")),
            text=_text_of(qmsg, qtype),
            type=qtype or "unknown",
            raw=qmsg,
        )

    mentions = [decode_jid(j) for j in context.get("mentionedJid") or [] if isinstance(j, str)]
    if quoted and quoted.sender:
        mentions.append(quoted.sender)

    media = None
    if mtype in _MEDIA_TYPES:
        media = MediaInfo(
            type=_MEDIA_TYPES[mtype],
            mimetype=inner.get("mimetype", ""),
            caption=inner.get("caption", "") or "",
            file_length=int(inner.get("fileLength", 0) or 0),
            raw=inner,
        )

    return InboundMessage(
        id=key.get("id", ""),
        chat=chat,
        sender=sender,
        body=body,
        is_group=is_group,
        from_me=from_me,
        type=mtype or "unknown",
        push_name=raw.get("pushName", "") or "",
        mentions=mentions,
        quoted=quoted,
        media=media,
        timestamp=_timestamp(raw.get("messageTimestamp")),
        raw=raw,
        gateway=gateway,
    )


def serialize_upsert(payload: dict[str, Any], self_id: str = "", gateway: Any = None) -> list[InboundMessage]:
    """Only `notify` upserts (live traffic) are routed; history syncs are dropped."""
    if payload.get("type") != "notify":
        return []
    out: list[InboundMessage] = []
    for raw in payload.get("messages") or []:
        try:
            msg = serialize_message(raw, self_id, gateway)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed message: {e}")
            continue
        if msg is not None:
            out.append(msg)
    return out


def serialize_calls(payload: list[dict[str, Any]], gateway: Any = None) -> list[CallEvent]:
    return [
        CallEvent(
            call_id=c.get("id", ""),
            caller=decode_jid(c.get("from", "")),
            status=c.get("status", ""),
            is_video=bool(c.get("isVideo")),
            is_group=bool(c.get("isGroup")),
            gateway=gateway,
        )
        for c in payload or []
    ]


def serialize_group_updates(payload: list[dict[str, Any]], gateway: Any = None) -> list[GroupUpdate]:
    out = []
    for u in payload or []:
        changes = {k: v for k, v in u.items() if k != "id"}
        out.append(GroupUpdate(group_id=u.get("id", ""), changes=changes, gateway=gateway))
    return out


def serialize_participants(payload: dict[str, Any], gateway: Any = None) -> GroupParticipantsUpdate:
    participants = []
    for p in payload.get("participants") or []:
        # Newer library versions send participant objects instead of bare JIDs
        jid = p.get("id", "") if isinstance(p, dict) else p
        participants.append(decode_jid(jid))
    return GroupParticipantsUpdate(
        group_id=payload.get("id", ""),
        participants=participants,
        action=payload.get("action", ""),
        author=decode_jid(payload.get("author", "") or ""),
        gateway=gateway,
    )
