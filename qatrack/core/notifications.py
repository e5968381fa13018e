import httpx
from loguru import logger

from qatrack.config.settings import settings


def _mask_phone(phone_number: str) -> str:
    return f"***{phone_number[-4:]}" if len(phone_number) > 4 else "***"


async def send_sms(phone_number: str, message: str) -> bool:
    """Dispatches a text message through the configured SMS gateway.

    The gateway is a plain JSON webhook (``to``, ``from``, ``text``) guarded by a
    bearer API key. Without a configured gateway the message is only written to
    the log, and only when DEBUG is on, so development logins keep working.

    Args:
        phone_number: The destination number.
        message: The message body.

    Returns:
        bool: True if the gateway accepted the message.
    """
    if not settings.SMS_GATEWAY_URL:
        if settings.DEBUG:
            logger.warning(f"SMS gateway not configured. Message for {phone_number}: {message}")
            return True
        logger.error("SMS_GATEWAY_URL is null. Cannot deliver verification code.")
        return False

    headers = {}
    if settings.SMS_GATEWAY_API_KEY:
        headers["Authorization"] = f"Bearer {settings.SMS_GATEWAY_API_KEY}"

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.post(
                settings.SMS_GATEWAY_URL,
                json={"to": phone_number, "from": settings.SMS_SENDER_ID, "text": message},
                headers=headers,
            )
            resp.raise_for_status()
        logger.info(f"SMS dispatched to {_mask_phone(phone_number)}")
        return True
    except Exception as e:
        logger.error(f"SMS dispatch to {_mask_phone(phone_number)} failed: {e}")
        return False
