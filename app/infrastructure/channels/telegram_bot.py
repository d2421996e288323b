"""
Telegram Bot API channel.
"""

import logging
from typing import Any, Dict

from app.config.settings import get_settings
from app.domain.channel import ChannelType
from app.domain.delivery import DispatchError
from app.infrastructure.channels.base import HttpChannelSender

logger = logging.getLogger(__name__)
settings = get_settings()


class TelegramSender(HttpChannelSender):
    """Sends messages to a Telegram chat through the Bot API."""

    channel_type = ChannelType.TELEGRAM

    async def send(
        self,
        config: Dict[str, Any],
        text: str,
        action_config: Dict[str, Any],
        metadata: Dict[str, Any],
        timeout: float,
    ) -> str:
        token = config.get("bot_token") or settings.telegram_bot_token
        if not token:
            raise DispatchError.config_invalid("Telegram bot token is not configured")

        payload = {
            "chat_id": config["chat_id"],
            "text": text,
            "disable_notification": bool(action_config.get("mute", False)),
        }
        if action_config.get("parse_mode"):
            payload["parse_mode"] = action_config["parse_mode"]

        url = f"{settings.telegram_api_base}/bot{token}/sendMessage"
        response = await self._post_json(url, payload, timeout)

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success:
            description = data.get("description") if isinstance(data, dict) else None
            raise DispatchError.rejected(
                f"Telegram API returned {response.status_code}: {description or response.text[:200]}",
                response.status_code,
            )

        if not isinstance(data, dict) or not data.get("ok"):
            # A 2xx without ok=true will not improve on retry
            raise DispatchError.rejected(f"Telegram API did not accept the message: {data!r}", 400)

        message_id = str(data["result"]["message_id"])
        logger.info(f"Telegram message sent to chat {config['chat_id']}. ID: {message_id}")
        return message_id
