"""Built-in handlers driven by feature flags: message policy, calls, group greetings."""

from __future__ import annotations

import random
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from wabot.helpers import contains_link, decode_jid, is_admin, is_owner, jid_number
from wabot.log import logger
from wabot.rate_limiter import SlidingWindowRateLimiter
from wabot.types import CallEvent, GroupParticipantsUpdate, InboundMessage

REACTION_EMOJIS = ("❤️", "👍", "🔥", "⚡", "🎉", "💯", "✨", "🚀")
AUTO_REACT_CHANCE = 0.10

CALL_REJECTED = (
    "🚫 *Call Rejected*\n\n"
    "Sorry, this bot doesn't accept calls. Please send a text message instead.\n\n"
    "• {prefix}menu - Show available commands\n"
    "• {prefix}owner - Contact owner"
)
WELCOME = (
    "👋 Hello @{number}!\n\n"
    "🏷️ *Group:* {group}\n"
    "👥 *Members:* {count}\n"
    "📅 {date} 🕐 {time}\n\n"
    "Welcome to our community! Type {prefix}menu to see what I can do."
)
GOODBYE = (
    "👋 Goodbye @{number}!\n\n"
    "🏷️ *Group:* {group}\n"
    "👥 *Members left:* {count}"
)
LINK_REMOVED = "🚫 Links are not allowed in this group!"
LINK_NO_ADMIN = "🚫 Links detected! Bot needs admin privileges to remove users."


def _participant_admins(metadata: dict[str, Any]) -> set[str]:
    return {
        decode_jid(p.get("id", ""))
        for p in metadata.get("participants") or []
        if p.get("admin")
    }


class BuiltinHandlers:
    """Policy applied before plugins see a message, plus call and group handlers.

    Every gateway call here is best effort: failures are logged and never
    stop the message from being routed.
    """

    def __init__(self, config: Any, rng: random.Random | None = None) -> None:
        self._config = config
        self._rng = rng or random.Random()
        rl = config.sender_rate_limit
        self.sender_limiter = SlidingWindowRateLimiter(rl.requests, rl.window_seconds, enabled=rl.enabled)

    # ---- messages ----

    async def admit(self, msg: InboundMessage) -> bool:
        """Return False if the message must not reach commands or plugins."""
        gateway = msg.gateway
        key = msg.raw.get("key") if msg.raw else None

        if msg.is_status:
            if self._config.auto_status_seen and gateway is not None and key:
                try:
                    await gateway.read_messages([key])
                except Exception as e:
                    logger.warning(f"Could not mark status as seen: {e}")
            return False

        if self._config.auto_read and gateway is not None and key and not msg.from_me:
            try:
                await gateway.read_messages([key])
            except Exception as e:
                logger.warning(f"Auto read failed: {e}")

        if (
            self._config.antilink
            and msg.is_group
            and not msg.from_me
            and contains_link(msg.body)
            and not is_admin(msg.sender, self._config)
        ):
            await self._enforce_antilink(msg)
            return False
        return True

    def allow_command(self, msg: InboundMessage) -> bool:
        """Gate for resolved commands: private mode and per-sender rate limit."""
        privileged = msg.from_me or is_admin(msg.sender, self._config)
        if self._config.mode == "private" and not privileged:
            logger.debug(f"Private mode: ignoring command from {msg.sender}")
            return False
        if msg.from_me or is_owner(msg.sender, self._config):
            return True
        allowed, retry_after = self.sender_limiter.check(msg.sender)
        if not allowed:
            logger.info(f"Rate limited {msg.sender} for {retry_after:.0f}s")
        return allowed

    async def after_message(self, msg: InboundMessage) -> None:
        """Runs for messages that were not commands."""
        if not self._config.auto_react or msg.from_me or not msg.body or msg.gateway is None:
            return
        if self._rng.random() >= AUTO_REACT_CHANCE:
            return
        emoji = self._rng.choice(REACTION_EMOJIS)
        key = msg.raw.get("key") or {"id": msg.id, "remoteJid": msg.chat}
        try:
            await msg.gateway.send_message(msg.chat, {"react": {"text": emoji, "key": key}})
        except Exception as e:
            logger.debug(f"Auto react failed: {e}")

    async def _enforce_antilink(self, msg: InboundMessage) -> None:
        gateway = msg.gateway
        if gateway is None:
            return
        try:
            metadata = await gateway.group_metadata(msg.chat)
            bot_admin = decode_jid(gateway.user_id) in _participant_admins(metadata)
            if bot_admin:
                await gateway.send_message(msg.chat, {"text": LINK_REMOVED, "mentions": [msg.sender]})
                await gateway.group_participants_update(msg.chat, [msg.sender], "remove")
                logger.info(f"Antilink removed {msg.sender} from {msg.chat}")
            else:
                await gateway.send_message(msg.chat, {"text": LINK_NO_ADMIN, "mentions": [msg.sender]})
        except Exception as e:
            logger.warning(f"Antilink error: {e}")

    # ---- calls ----

    async def on_call(self, call: CallEvent) -> None:
        if not self._config.reject_call or call.status != "offer" or call.gateway is None:
            return
        logger.info(f"Rejecting call from {call.caller}")
        try:
            await call.gateway.reject_call(call.call_id, call.caller)
            await call.gateway.send_message(
                call.caller, {"text": CALL_REJECTED.format(prefix=self._config.prefix)}
            )
        except Exception as e:
            logger.warning(f"Call rejection failed: {e}")

    # ---- groups ----

    async def on_group_participants(self, update: GroupParticipantsUpdate) -> None:
        if not self._config.welcome or update.action not in ("add", "remove") or update.gateway is None:
            return
        gateway = update.gateway
        try:
            metadata = await gateway.group_metadata(update.group_id)
        except Exception as e:
            logger.warning(f"Group metadata for {update.group_id} unavailable: {e}")
            metadata = {}
        group = metadata.get("subject") or "this group"
        count = len(metadata.get("participants") or [])
        now = datetime.now(ZoneInfo(self._config.timezone))
        template = WELCOME if update.action == "add" else GOODBYE
        for jid in update.participants:
            text = template.format(
                number=jid_number(jid),
                group=group,
                count=count,
                date=now.strftime("%d/%m/%Y"),
                time=now.strftime("%H:%M:%S"),
                prefix=self._config.prefix,
            )
            try:
                await gateway.send_message(update.group_id, {"text": text, "mentions": [jid]})
            except Exception as e:
                logger.warning(f"Group greeting failed for {jid}: {e}")
