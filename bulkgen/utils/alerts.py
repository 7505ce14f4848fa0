"""Discord webhook alerts for conditions that need an operator.

The row executor raises an alert when a provider rejects our credentials
(AUTH_ERROR); every row of every batch would fail the same way until someone
rotates the key, so a human has to know.

Architecture Pattern:
    - Async HTTP client (httpx), 5s timeout
    - Throttled per (key, level) so a failing batch sends one alert, not hundreds
    - Graceful degradation (log on failure, never raise into the caller)
"""

import os
from datetime import datetime, timedelta, timezone

import httpx

from bulkgen.utils.logging import get_logger

log = get_logger(__name__)

MIN_ALERT_INTERVAL_SECONDS = 300

# Discord embed colours
ALERT_COLORS = {
    "CRITICAL": 0xFF0000,
    "WARNING": 0xFFA500,
    "INFO": 0x0000FF,
}

_last_alert_times: dict[tuple[str, str], datetime] = {}


def should_send_alert(key: str, level: str) -> bool:
    """Return True unless an alert for (key, level) was sent recently."""
    now = datetime.now(timezone.utc)
    last = _last_alert_times.get((key, level))
    if last is not None and now - last < timedelta(seconds=MIN_ALERT_INTERVAL_SECONDS):
        log.debug("alert_throttled", key=key, level=level)
        return False
    _last_alert_times[(key, level)] = now
    return True


async def send_alert(level: str, message: str, details: dict[str, str] | None = None) -> bool:
    """Send an alert to the Discord webhook in DISCORD_WEBHOOK_URL.

    Args:
        level: Alert level ("CRITICAL", "WARNING", "INFO")
        message: Alert message (truncated to Discord's 2000 char limit)
        details: Optional fields rendered in the embed

    Returns:
        True if Discord accepted the alert, False otherwise (including when
        no webhook is configured).

    Example:
        >>> await send_alert(
        ...     level="CRITICAL",
        ...     message="Provider kie rejected credentials",
        ...     details={"batch_id": "…", "row_id": "…"},
        ... )
    """
    webhook_url = os.getenv("DISCORD_WEBHOOK_URL")
    if not webhook_url:
        log.warning("discord_webhook_not_configured", level=level, message=message[:100])
        return False

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
                "color": ALERT_COLORS.get(level, 0x808080),
            }
        ],
    }

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(webhook_url, json=payload, timeout=5.0)
            response.raise_for_status()
    except httpx.TimeoutException:
        log.error("discord_webhook_timeout", webhook_url=webhook_url[:50])
        return False
    except httpx.HTTPStatusError as e:
        log.error(
            "discord_webhook_http_error",
            status_code=e.response.status_code,
            response=e.response.text[:500],
        )
        return False
    except httpx.HTTPError as e:
        log.error("discord_webhook_failed", error=str(e))
        return False

    log.info("discord_alert_sent", level=level, message=message[:100])
    return True
