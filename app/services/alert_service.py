"""Operator alerts delivered to a Telegram chat."""

from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("alert_service")

TELEGRAM_API_BASE = "https://api.telegram.org"

LEVEL_MARKERS = {"INFO": "[i]", "WARNING": "[!]", "ERROR": "[x]", "CRITICAL": "[!!!]"}


def _format_alert(level: str, message: str, context: Optional[dict]) -> str:
    text = f"{LEVEL_MARKERS.get(level, '[*]')} *{level}*\n\n{message}"
    if context:
        lines = "\n".join(f"  {key}: {value}" for key, value in context.items())
        text += f"\n\n```\n{lines}\n```"
    return text


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Post an alert to the operator chat.

    Returns False (never raises) when alerts are not configured or Telegram
    cannot be reached, so callers on hot paths can fire and forget.
    """
    token = settings.alert_bot_token
    chat_id = settings.alert_chat_id
    if not token or not chat_id:
        logger.warning(
            "Alert not configured",
            extra={"context": {"level": level, "alert": message}},
        )
        return False

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"{TELEGRAM_API_BASE}/bot{token}/sendMessage",
                json={"chat_id": chat_id, "text": _format_alert(level, message, context), "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except httpx.HTTPError as exc:
        logger.error(f"Failed to send alert: {exc}")
        return False


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("CRITICAL", message, context)
