"""
Channel dispatch: one entry point over every registered channel sender.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from app.config.settings import get_settings
from app.domain.channel import ChannelType
from app.domain.delivery import DispatchError, DispatchResult
from app.infrastructure.channels.base import ChannelSender
from app.infrastructure.channels.smtp_email import EmailSender
from app.infrastructure.channels.telegram_bot import TelegramSender
from app.infrastructure.channels.twilio_sms import SmsSender
from app.infrastructure.channels.webhook_http import WebhookSender

logger = logging.getLogger(__name__)
settings = get_settings()

SENDERS: Dict[ChannelType, ChannelSender] = {}


def register_sender(sender: ChannelSender) -> None:
    """Register (or replace) the sender for its channel type."""
    SENDERS[sender.channel_type] = sender


for _sender in (TelegramSender(), WebhookSender(), EmailSender(), SmsSender()):
    register_sender(_sender)


def resolve_timeout(action_config: Optional[Dict[str, Any]]) -> float:
    """Per-destination timeout from action_config, else the configured default."""
    value = (action_config or {}).get("timeout")
    if value is None:
        return settings.dispatch_timeout_seconds
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        raise DispatchError.config_invalid(f"Invalid timeout in action config: {value!r}")
    if timeout <= 0:
        raise DispatchError.config_invalid(f"Timeout must be positive: {value!r}")
    return timeout


async def dispatch(
    channel_type,
    config: Optional[Dict[str, Any]],
    rendered_text: str,
    action_config: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> DispatchResult:
    """
    Send a rendered message over a channel.

    Never raises for delivery problems: every failure comes back as a
    DispatchResult carrying a DispatchError. A timeout only cancels this call.

    Args:
        channel_type: ChannelType (or its string value)
        config: Channel config (chat_id, url, email, to_number, ...)
        rendered_text: Text to deliver
        action_config: Per rule-destination tuning (mute, subject, timeout, ...)
        metadata: Message metadata passed to channels that forward it

    Returns:
        DispatchResult with a provider message id or an error
    """
    action_config = action_config or {}
    config = config or {}

    try:
        ctype = ChannelType(channel_type)
    except ValueError:
        return DispatchResult(error=DispatchError.config_invalid(f"Unknown channel type: {channel_type!r}"))

    sender = SENDERS.get(ctype)
    if sender is None:
        return DispatchResult(error=DispatchError.config_invalid(f"No sender registered for {ctype.value}"))

    try:
        timeout = resolve_timeout(action_config)
        sender.validate_config(config)
        provider_message_id = await asyncio.wait_for(
            sender.send(config, rendered_text, action_config, metadata or {}, timeout),
            timeout=timeout,
        )
    except DispatchError as e:
        logger.warning(f"Dispatch via {ctype.value} failed: {e}")
        return DispatchResult(error=e)
    except asyncio.TimeoutError:
        logger.warning(f"Dispatch via {ctype.value} timed out after {timeout}s")
        return DispatchResult(error=DispatchError.timeout(f"No response within {timeout}s"))
    except Exception as e:
        logger.exception(f"Unexpected error dispatching via {ctype.value}: {e}")
        return DispatchResult(error=DispatchError.rejected(f"Unexpected error: {e!r}"))

    return DispatchResult(provider_message_id=provider_message_id)
