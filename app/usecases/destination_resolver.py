"""
Destination resolution: expands a matched rule into channel deliveries.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.delivery import DispatchError
from app.infrastructure.config_cache import (
    ChannelSnapshot,
    ConfigCache,
    RuleSnapshot,
    config_cache,
)
from app.utils.time import format_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedDestination:
    """A channel to deliver to, with the template that applies to it."""
    rule: RuleSnapshot
    channel: ChannelSnapshot
    template: str
    is_override: bool = False
    action_config: Dict[str, Any] = field(default_factory=dict)

    def render(self, message) -> str:
        """
        Produce the text to send.

        The raw body is passed through untouched. Override templates are
        formatted with the message fields; a malformed template or an
        unknown placeholder raises a permanent ConfigInvalid error.
        """
        if not self.is_override:
            return self.template

        fields = {
            "body": message.body or "",
            "from_number": message.from_number,
            "to_number": message.to_number,
            "endpoint_id": message.endpoint_id,
            "received_at": format_iso(message.received_at) if message.received_at else "",
            "message_id": message.id,
            "rule_name": self.rule.name,
            "channel_name": self.channel.name,
        }
        try:
            return self.template.format_map(fields)
        except KeyError as e:
            raise DispatchError.config_invalid(f"Unknown template placeholder {e}")
        except (ValueError, AttributeError, IndexError) as e:
            raise DispatchError.config_invalid(f"Malformed template: {e}")


class DestinationResolver:
    """Resolves enabled destinations for a rule."""

    def __init__(self, session: AsyncSession, cache: ConfigCache = config_cache):
        self.session = session
        self.cache = cache

    async def resolve_destinations(self, rule: RuleSnapshot, message) -> List[ResolvedDestination]:
        """
        Resolve the deliveries for a matched rule.

        Only enabled rule-destinations on enabled, non-deleted channels are
        returned, in the order they were added to the rule.

        Args:
            rule: Matched rule
            message: The message being forwarded

        Returns:
            Ordered list of resolved destinations
        """
        destinations = await self.cache.get_destinations(self.session, rule.id)

        resolved = []
        for dest in destinations:
            override = dest.override_text_template
            if override and override.strip():
                template, is_override = override, True
            else:
                template, is_override = message.body or "", False

            resolved.append(
                ResolvedDestination(
                    rule=rule,
                    channel=dest.channel,
                    template=template,
                    is_override=is_override,
                    action_config=dict(dest.action_config),
                )
            )

        logger.debug(f"Rule {rule.id} resolved to {len(resolved)} destination(s)")
        return resolved
