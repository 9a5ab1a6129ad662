"""Owner-only maintenance commands."""

info = {
    "name": "Owner Tools",
    "version": "1.0.0",
    "category": "owner",
    "commands": ["admin", "setbio"],
    "ownerOnly": True,
}


async def run(ctx):
    if ctx.command == "setbio":
        if not ctx.text:
            await ctx.reply(f"Usage: {ctx.config.prefix}setbio <text>")
            return
        await ctx.gateway.update_profile_status(ctx.text)
        await ctx.reply("✅ Bio updated")
        return

    flags = ", ".join(name for name, on in ctx.config.features().items() if on) or "none"
    await ctx.reply(
        f"👑 *Admin*\n\nMode: {ctx.config.mode}\nEnabled features: {flags}"
    )
