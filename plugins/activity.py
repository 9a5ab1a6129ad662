"""Group activity counter with a daily digest for the owner."""

from datetime import datetime, timezone

COLLECTION = "activity_counts"


async def on_message(ctx):
    msg = ctx.msg
    if not msg.is_group:
        return
    doc = await ctx.store.get(COLLECTION, msg.chat) or {"counts": {}}
    doc["counts"][msg.sender] = doc["counts"].get(msg.sender, 0) + 1
    doc["updated_at"] = datetime.now(timezone.utc).isoformat()
    await ctx.store.put(COLLECTION, msg.chat, doc)


async def daily_digest(ctx):
    groups = await ctx.store.all(COLLECTION)
    if not groups:
        return
    lines = []
    for chat, doc in groups.items():
        total = sum(doc.get("counts", {}).values())
        lines.append(f"• {chat}: {total} messages")
    await ctx.reply("📊 *Daily activity*\n\n" + "\n".join(lines))


async def run(ctx):
    doc = await ctx.store.get(COLLECTION, ctx.msg.chat) or {"counts": {}}
    top = sorted(doc["counts"].items(), key=lambda kv: kv[1], reverse=True)[:5]
    if not top:
        await ctx.reply("No activity recorded here yet.")
        return
    board = "\n".join(f"{i}. @{jid.split('@')[0]} - {n}" for i, (jid, n) in enumerate(top, 1))
    await ctx.reply({"text": f"🏆 *Most active*\n\n{board}", "mentions": [jid for jid, _ in top]})


info = {
    "name": "Activity",
    "version": "1.0.0",
    "category": "group",
    "commands": ["activity"],
    "aliases": ["top"],
    "scheduledTasks": [
        {
            "name": "daily_digest",
            "schedule": "0 21 * * *",
            "description": "Send per-group message totals to the owner",
            "handler": daily_digest,
        },
    ],
}
