"""Basic commands: ping, menu, alive."""

import time

info = {
    "name": "Basic",
    "version": "1.1.0",
    "author": "Bot Team",
    "description": "Connectivity check and command menu",
    "category": "utility",
    "commands": ["ping", "menu", "alive"],
    "aliases": ["help", "p"],
}

_STARTED = time.monotonic()


async def run(ctx):
    if ctx.command in ("ping", "p"):
        start = time.perf_counter()
        await ctx.reply("🏓 Pong!")
        elapsed = (time.perf_counter() - start) * 1000
        ctx.logger.debug(f"ping answered in {elapsed:.0f}ms")
        return

    if ctx.command == "alive":
        uptime = ctx.helpers.format_uptime(time.monotonic() - _STARTED)
        await ctx.reply(f"✅ {ctx.config.bot_name} is alive\n⏱️ Uptime: {uptime}")
        return

    prefix = ctx.config.prefix
    await ctx.reply(
        f"🤖 *{ctx.config.bot_name} Menu*\n\n"
        f"• {prefix}ping - Check bot response\n"
        f"• {prefix}alive - Uptime\n"
        f"• {prefix}menu - Show this menu\n\n"
        f"Mode: {ctx.config.mode} | Prefix: {prefix}"
    )
