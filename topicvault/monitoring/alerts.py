"""
Discord webhook alerts — fires when an export fails, and optionally when a
long export finishes.

Set DISCORD_WEBHOOK_URL in .env to enable. If unset, all calls are no-ops.
"""
from datetime import datetime, timezone

import httpx
from loguru import logger

from topicvault.config import settings

# Colour codes for Discord embeds
_COLOUR = {
    "error":   0xE74C3C,   # red
    "warning": 0xF39C12,   # amber
    "success": 0x2ECC71,   # green
    "info":    0x3498DB,   # blue
}


async def send_alert(message: str, level: str = "error") -> None:
    """
    Send a plain-text alert to Discord.
    level: "error" | "warning" | "info" | "success"
    """
    if not settings.DISCORD_WEBHOOK_URL:
        return

    payload = {
        "embeds": [{
            "description": message,
            "color":       _COLOUR.get(level, _COLOUR["error"]),
            "footer":      {"text": f"topicvault • {_utcnow()}"},
        }]
    }
    await _post(settings.DISCORD_WEBHOOK_URL, payload)


async def alert_export_failed(export_id: str, group_name: str, error: str) -> None:
    await send_alert(
        f"**Export failed** `{export_id[:8]}` [{group_name}]\n```{error[:500]}```",
        level="error",
    )


async def alert_export_completed(export_id: str, group_name: str, topics: int, file_name: str) -> None:
    await send_alert(
        f"**Export ready** `{export_id[:8]}` [{group_name}] — {topics} topics → `{file_name}`",
        level="success",
    )


# ── Internal ──────────────────────────────────────────────────────────────────

async def _post(url: str, payload: dict) -> None:
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()
    except Exception as exc:
        # Never let an alert failure crash an export
        logger.warning(f"[Alerts] Discord webhook failed: {exc}")


def _utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
