"""Discord webhook alerts for abandoned jobs and storage quota exhaustion.

Sends structured alerts to a Discord channel via the webhook URL configured in
DISCORD_WEBHOOK_URL. Alert delivery never raises: a failed alert is logged and
the caller carries on with its own error handling.
"""

import os

import httpx

from recipestream.utils.logging import get_logger

log = get_logger(__name__)

_COLORS = {
    "CRITICAL": 0xFF0000,
    "ERROR": 0xFF4500,
    "WARNING": 0xFFA500,
    "INFO": 0x0000FF,
    "SUCCESS": 0x00FF00,
}


async def send_alert(level: str, message: str, details: dict[str, str] | None = None) -> None:
    """Send alert to Discord webhook.

    Args:
        level: Alert level ("CRITICAL", "ERROR", "WARNING", "INFO")
        message: Alert message (max 2000 chars, will be truncated)
        details: Optional structured details rendered as embed fields

    Example:
        >>> await send_alert(
        ...     level="CRITICAL",
        ...     message="Storage quota exceeded",
        ...     details={"backend": "s3-eu", "key": "videos/..."},
        ... )
    """
    webhook_url = os.getenv("DISCORD_WEBHOOK_URL")
    if not webhook_url:
        log.warning("discord_webhook_not_configured", level=level, message=message[:100])
        return

    sanitized_message = message[:2000]

    payload = {
        "content": f"**{level}**: {sanitized_message}",
        "embeds": [
            {
                "title": f"{level} Alert",
                "description": sanitized_message,
                "fields": [
                    {"name": key, "value": str(value)[:1024], "inline": True}
                    for key, value in (details or {}).items()
                ],
                "color": _COLORS.get(level, 0x808080),
            }
        ],
    }

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(webhook_url, json=payload, timeout=5.0)
            response.raise_for_status()

        log.info("discord_alert_sent", level=level, message=message[:100])
    except httpx.TimeoutException:
        log.error("discord_webhook_timeout", webhook_url=webhook_url[:50])
    except httpx.HTTPStatusError as e:
        log.error(
            "discord_webhook_http_error",
            status_code=e.response.status_code,
            response=e.response.text[:500],
        )
    except httpx.HTTPError as e:
        log.error("discord_webhook_failed", error=str(e))
