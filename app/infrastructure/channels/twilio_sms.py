"""
Twilio SMS channel (outbound SMS gateway).
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import requests
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from app.config.settings import get_settings
from app.domain.channel import ChannelType
from app.domain.delivery import DispatchError
from app.infrastructure.channels.base import ChannelSender

logger = logging.getLogger(__name__)
settings = get_settings()

# Twilio message states that mean the carrier will not deliver
UNDELIVERED_STATUSES = ("failed", "undelivered", "canceled")


def create_twilio_client(timeout: float) -> Client:
    """Build a Twilio client whose HTTP calls are bounded by `timeout`."""
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise DispatchError.config_invalid("Twilio credentials are not configured")
    return Client(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        http_client=TwilioHttpClient(timeout=timeout),
    )


def _send_message_sync(client: Client, message: str, from_number: str, to_number: str):
    """
    Synchronous Twilio message send.

    Args:
        client: Twilio REST client
        message: Text message to send
        from_number: Sender's phone number
        to_number: Recipient's phone number

    Returns:
        Twilio message object
    """
    return client.messages.create(
        body=message,
        from_=from_number,
        to=to_number
    )


class SmsSender(ChannelSender):
    """Sends SMS through Twilio."""

    channel_type = ChannelType.SMS

    def __init__(self, client_factory: Optional[Callable[[float], Client]] = None):
        self.client_factory = client_factory or create_twilio_client

    async def send(
        self,
        config: Dict[str, Any],
        text: str,
        action_config: Dict[str, Any],
        metadata: Dict[str, Any],
        timeout: float,
    ) -> str:
        from_number = config.get("from_number") or settings.twilio_sms_number
        if not from_number:
            raise DispatchError.config_invalid("No sender number configured for SMS channel")

        client = self.client_factory(timeout)

        try:
            msg = await asyncio.to_thread(
                _send_message_sync, client, text, from_number, config["to_number"]
            )
        except TwilioRestException as e:
            raise DispatchError.rejected(f"Twilio error {e.code}: {e.msg}", e.status)
        except requests.Timeout as e:
            raise DispatchError.timeout(f"Twilio request timed out: {e!r}")
        except requests.ConnectionError as e:
            raise DispatchError.timeout(f"Twilio connection error: {e!r}")

        if msg.status in UNDELIVERED_STATUSES:
            raise DispatchError.rejected(
                f"Twilio reported {msg.status} (error {msg.error_code}: {msg.error_message})"
            )

        logger.info(f"SMS sent successfully. SID: {msg.sid}")
        return msg.sid
