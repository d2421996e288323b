"""
Generic HTTP webhook channel.
"""

import logging
from typing import Any, Dict
from uuid import uuid4

from app.domain.channel import ChannelType
from app.domain.delivery import DispatchError
from app.infrastructure.channels.base import HttpChannelSender

logger = logging.getLogger(__name__)


class WebhookSender(HttpChannelSender):
    """POSTs the rendered text and message metadata to a URL."""

    channel_type = ChannelType.WEBHOOK

    def validate_config(self, config: Dict[str, Any]) -> None:
        super().validate_config(config)

        url = str(config["url"])
        if not url.startswith(("http://", "https://")):
            raise DispatchError.config_invalid(f"Webhook URL must be http(s): {url}")

        headers = config.get("headers")
        if headers is not None and not isinstance(headers, dict):
            raise DispatchError.config_invalid("Webhook headers must be an object")

    async def send(
        self,
        config: Dict[str, Any],
        text: str,
        action_config: Dict[str, Any],
        metadata: Dict[str, Any],
        timeout: float,
    ) -> str:
        headers = {str(k): str(v) for k, v in (config.get("headers") or {}).items()}
        payload = {"text": text, "message": metadata}

        response = await self._post_json(config["url"], payload, timeout, headers=headers)

        if not response.is_success:
            raise DispatchError.rejected(
                f"Webhook returned {response.status_code}: {response.text[:200]}",
                response.status_code,
            )

        provider_id = None
        try:
            data = response.json()
            if isinstance(data, dict):
                provider_id = data.get("id") or data.get("message_id")
        except ValueError:
            pass  # Receivers are free to answer with an empty or non-JSON body

        if not provider_id:
            provider_id = response.headers.get("X-Request-ID") or f"webhook-{uuid4().hex}"

        logger.info(f"Webhook delivered to {config['url']} ({response.status_code})")
        return str(provider_id)
