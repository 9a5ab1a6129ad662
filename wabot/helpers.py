"""JID utilities and the helper facade handed to plugins."""

from __future__ import annotations

import re
from typing import Any

from wabot.errors import GatewayUnavailableError

USER_SERVER = "s.whatsapp.net"
GROUP_SERVER = "g.us"
NOT_OWNER = "❌ This command is only for the bot owner!"
NOT_ADMIN = "❌ This command is only for bot admins!"

_URL_RE = re.compile(
    r"(https?://\S+|www\.\S+|chat\.whatsapp\.com/\S+|wa\.me/\S+)", re.IGNORECASE
)


def to_jid(number_or_jid: str) -> str:
    """Normalise a phone number (`+234 801...`) or JID to a user JID."""
    value = (number_or_jid or "").strip()
    if "@" in value:
        return decode_jid(value)
    digits = re.sub(r"\D", "", value)
    return f"{digits}@{USER_SERVER}" if digits else ""


def decode_jid(jid: str) -> str:
    """Strip the device suffix: `123:4@s.whatsapp.net` -> `123@s.whatsapp.net`."""
    if not jid or "@" not in jid:
        return jid or ""
    user, server = jid.split("@", 1)
    return f"{user.split(':', 1)[0]}@{server}"


def jid_number(jid: str) -> str:
    return decode_jid(jid).split("@", 1)[0]


def is_group_jid(jid: str) -> bool:
    return jid.endswith(f"@{GROUP_SERVER}")


def is_owner(sender: str, config: Any) -> bool:
    owner = config.owner_jid
    return bool(owner) and decode_jid(sender) == owner


def is_admin(sender: str, config: Any) -> bool:
    return is_owner(sender, config) or decode_jid(sender) in config.admin_jids


def contains_link(text: str) -> bool:
    return bool(text) and _URL_RE.search(text) is not None


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


class Helpers:
    """Send helpers bound to the current gateway.

    The gateway is looked up through `gateway_getter` on every call so a
    helper kept by a plugin keeps working after a reconnect.
    """

    def __init__(self, gateway_getter, config: Any) -> None:
        self._gateway_getter = gateway_getter
        self.config = config

    @property
    def gateway(self):
        gw = self._gateway_getter()
        if gw is None:
            raise GatewayUnavailableError("gateway not connected")
        return gw

    async def send_text(self, jid: str, text: str, quoted: Any = None) -> Any:
        return await self.gateway.send_message(jid, {"text": text}, quoted=quoted)

    async def send_image(self, jid: str, image: bytes | str, caption: str = "", quoted: Any = None) -> Any:
        return await self.gateway.send_message(
            jid, {"image": image, "caption": caption}, quoted=quoted
        )

    async def react(self, msg: Any, emoji: str) -> Any:
        key = msg.raw.get("key") if msg.raw else {"id": msg.id, "remoteJid": msg.chat}
        return await self.gateway.send_message(msg.chat, {"react": {"text": emoji, "key": key}})

    async def send_to_owner(self, text: str) -> Any:
        if not self.config.owner_jid:
            return None
        return await self.send_text(self.config.owner_jid, text)

    def is_owner(self, sender: str) -> bool:
        return is_owner(sender, self.config)

    def is_admin(self, sender: str) -> bool:
        return is_admin(sender, self.config)

    to_jid = staticmethod(to_jid)
    decode_jid = staticmethod(decode_jid)
    format_uptime = staticmethod(format_uptime)
