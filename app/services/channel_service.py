"""Outbound delivery through the Meta Graph API (WhatsApp Cloud and Instagram)."""

from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.models import ChannelConnection
from app.services.result import Result

logger = get_logger("channel_service")

SEND_TIMEOUT_SECONDS = 15.0
# Graph API codes for expired or revoked tokens.
AUTH_ERROR_CODES = {190, 102, 10}


def _graph_error(response: httpx.Response) -> tuple[str, Optional[int]]:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        return response.text[:200], None
    return error.get("message") or response.text[:200], error.get("code")


def _post(url: str, access_token: str, body: dict) -> Result[dict]:
    try:
        with httpx.Client(timeout=SEND_TIMEOUT_SECONDS) as client:
            response = client.post(
                url,
                headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
                json=body,
            )
    except httpx.HTTPError as exc:
        logger.warning(f"Graph API transport error: {exc}")
        return Result.failure(str(exc), "transport_error")

    if response.status_code >= 400:
        message, code = _graph_error(response)
        auth_failed = response.status_code in (401, 403) or code in AUTH_ERROR_CODES
        logger.error(
            "Graph API send failed",
            extra={"context": {"status": response.status_code, "code": code, "error": message}},
        )
        return Result.failure(
            message,
            "auth_error" if auth_failed else "api_error",
            retryable=not auth_failed,
        )
    return Result.success(response.json())


def send_whatsapp_message(connection: ChannelConnection, to_phone: str, text: str) -> Result[str]:
    """Send a text message; the value is the WhatsApp message id."""
    if not connection.whatsapp_phone_number_id or not connection.whatsapp_access_token:
        return Result.failure("WhatsApp connection is missing credentials", "not_configured", retryable=False)
    if not to_phone:
        return Result.failure("Lead has no phone number", "missing_recipient", retryable=False)

    result = _post(
        f"{settings.whatsapp_api_base}/{connection.whatsapp_phone_number_id}/messages",
        connection.whatsapp_access_token,
        {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to_phone.lstrip("+"),
            "type": "text",
            "text": {"preview_url": False, "body": text},
        },
    )
    if not result.ok:
        return result
    messages = result.value.get("messages") or [{}]
    return Result.success(messages[0].get("id"))


def send_instagram_message(connection: ChannelConnection, recipient_psid: str, text: str) -> Result[str]:
    """Send a DM; the value is the Instagram message id."""
    if not connection.instagram_page_id or not connection.instagram_access_token:
        return Result.failure("Instagram connection is missing credentials", "not_configured", retryable=False)
    if not recipient_psid:
        return Result.failure("Lead has no Instagram id", "missing_recipient", retryable=False)

    result = _post(
        f"{settings.instagram_api_base}/{connection.instagram_page_id}/messages",
        connection.instagram_access_token,
        {"recipient": {"id": recipient_psid}, "message": {"text": text}},
    )
    if not result.ok:
        return result
    return Result.success(result.value.get("message_id"))
