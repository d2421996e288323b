"""
Channel sender contract shared by every destination type.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from app.domain.channel import ChannelType, missing_config_keys
from app.domain.delivery import DispatchError

logger = logging.getLogger(__name__)


class ChannelSender(ABC):
    """
    Sends a rendered message over one channel type.

    Implementations raise DispatchError on failure and return the provider's
    message id on success.
    """

    channel_type: ChannelType

    def validate_config(self, config: Dict[str, Any]) -> None:
        """Reject configs missing the keys this channel needs."""
        missing = missing_config_keys(self.channel_type, config)
        if missing:
            raise DispatchError.config_invalid(
                f"{self.channel_type.value} channel config missing: {', '.join(missing)}"
            )

    @abstractmethod
    async def send(
        self,
        config: Dict[str, Any],
        text: str,
        action_config: Dict[str, Any],
        metadata: Dict[str, Any],
        timeout: float,
    ) -> str:
        """Deliver `text` and return the provider message id."""


class HttpChannelSender(ChannelSender):
    """Base for channels reached over HTTP."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        # Injected in tests with httpx.MockTransport
        self.transport = transport

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        POST a JSON payload and map transport failures to DispatchError.

        Non-2xx responses are returned to the caller, which knows how to
        read the provider's error body.
        """
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
                return await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise DispatchError.timeout(f"{self.channel_type.value} request timed out: {e!r}")
        except httpx.InvalidURL as e:
            raise DispatchError.config_invalid(f"Invalid URL: {e}")
        except httpx.TransportError as e:
            raise DispatchError.timeout(f"{self.channel_type.value} connection error: {e!r}")
