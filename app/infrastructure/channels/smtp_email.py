"""
SMTP email channel.
"""

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Dict, List, Optional

from app.config.settings import get_settings
from app.domain.channel import ChannelType
from app.domain.delivery import DispatchError, DispatchErrorKind
from app.infrastructure.channels.base import ChannelSender

logger = logging.getLogger(__name__)
settings = get_settings()

DEFAULT_SUBJECT = "Forwarded SMS"


def _recipients(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        addresses = [str(v).strip() for v in value]
    else:
        addresses = [part.strip() for part in str(value).split(",")]
    return [a for a in addresses if a]


def _rejected(detail: str, code: Optional[int]) -> DispatchError:
    """SMTP replies: 4xx is a temporary failure, 5xx is permanent."""
    return DispatchError(DispatchErrorKind.PROVIDER_REJECTED, detail, retryable=code is None or code < 500)


def _send_message_sync(msg: EmailMessage, timeout: float) -> Dict[str, Any]:
    """
    Synchronous SMTP send, run in a worker thread.

    Returns:
        Recipients the server refused while accepting the others
    """
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=timeout) as smtp:
        if settings.smtp_use_tls:
            smtp.starttls(context=ssl.create_default_context())
        if settings.smtp_username and settings.smtp_password:
            smtp.login(settings.smtp_username, settings.smtp_password)
        return smtp.send_message(msg)


class EmailSender(ChannelSender):
    """Sends the rendered text as a plain-text email."""

    channel_type = ChannelType.EMAIL

    def validate_config(self, config: Dict[str, Any]) -> None:
        super().validate_config(config)
        for address in _recipients(config["email"]) or [""]:
            if "@" not in address:
                raise DispatchError.config_invalid(f"Invalid email address: {address!r}")

    async def send(
        self,
        config: Dict[str, Any],
        text: str,
        action_config: Dict[str, Any],
        metadata: Dict[str, Any],
        timeout: float,
    ) -> str:
        message_id = make_msgid(domain=settings.smtp_from_address.split("@")[-1])

        msg = EmailMessage()
        msg["Subject"] = action_config.get("subject") or DEFAULT_SUBJECT
        msg["From"] = settings.smtp_from_address
        msg["To"] = ", ".join(_recipients(config["email"]))
        msg["Message-ID"] = message_id
        msg.set_content(text)

        try:
            refused = sorted(await asyncio.to_thread(_send_message_sync, msg, timeout) or {})
        except smtplib.SMTPRecipientsRefused as e:
            code = max((code for code, _ in e.recipients.values()), default=None)
            raise _rejected(f"SMTP refused recipients: {e.recipients}", code)
        except smtplib.SMTPResponseException as e:
            raise _rejected(f"SMTP error {e.smtp_code}: {e.smtp_error!r}", e.smtp_code)
        except (smtplib.SMTPServerDisconnected, TimeoutError, ConnectionError) as e:
            raise DispatchError.timeout(f"SMTP connection failed: {e!r}")
        except smtplib.SMTPException as e:
            raise _rejected(f"SMTP error: {e!r}", None)
        except OSError as e:
            raise DispatchError.timeout(f"SMTP connection failed: {e!r}")

        if refused:
            logger.warning(f"Email {message_id} refused for {', '.join(refused)}; delivered to the rest")
        logger.info(f"Email sent to {msg['To']}. Message-ID: {message_id}")
        return message_id
