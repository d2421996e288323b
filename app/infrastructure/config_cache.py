"""
Read-mostly cache of forwarding configuration.

Holds immutable snapshots of the enabled rules and their enabled destinations.
The management API calls ``invalidate()`` after every write; the next reader
reloads from the database.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.channel import ChannelType, DestinationChannel
from app.domain.rule import ForwardRule, RuleDestination

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleSnapshot:
    id: str
    name: str
    priority: int
    filters: Dict[str, Any] = field(default_factory=dict)
    stop_processing: bool = False


@dataclass(frozen=True)
class ChannelSnapshot:
    id: str
    type: ChannelType
    name: str
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DestinationSnapshot:
    id: str
    rule_id: str
    channel: ChannelSnapshot
    override_text_template: Optional[str] = None
    action_config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConfigSnapshot:
    rules: List[RuleSnapshot]
    destinations: Dict[str, List[DestinationSnapshot]]


async def load_snapshot(session: AsyncSession) -> ConfigSnapshot:
    """
    Load enabled rules and their dispatchable destinations.

    Args:
        session: Database session

    Returns:
        Snapshot with rules sorted by (priority, id) and destinations per
        rule in insertion order
    """
    result = await session.execute(
        select(ForwardRule)
        .where(ForwardRule.is_enabled == True, ForwardRule.deleted_at.is_(None))  # noqa: E712
        .order_by(ForwardRule.priority, ForwardRule.id)
    )
    rules = [
        RuleSnapshot(
            id=r.id,
            name=r.name,
            priority=r.priority,
            filters=dict(r.filters or {}),
            stop_processing=bool(r.stop_processing),
        )
        for r in result.scalars().all()
    ]

    result = await session.execute(
        select(RuleDestination, DestinationChannel)
        .join(DestinationChannel, RuleDestination.channel_id == DestinationChannel.id)
        .where(
            RuleDestination.is_enabled == True,  # noqa: E712
            DestinationChannel.is_enabled == True,  # noqa: E712
            DestinationChannel.deleted_at.is_(None),
        )
        .order_by(RuleDestination.position, RuleDestination.created_at, RuleDestination.id)
    )

    destinations: Dict[str, List[DestinationSnapshot]] = {}
    for rd, channel in result.all():
        destinations.setdefault(rd.rule_id, []).append(
            DestinationSnapshot(
                id=rd.id,
                rule_id=rd.rule_id,
                channel=ChannelSnapshot(
                    id=channel.id,
                    type=ChannelType(channel.type),
                    name=channel.name,
                    config=dict(channel.config or {}),
                ),
                override_text_template=rd.override_text_template,
                action_config=dict(rd.action_config or {}),
            )
        )

    return ConfigSnapshot(rules=rules, destinations=destinations)


class ConfigCache:
    """Snapshot cache with explicit invalidation."""

    def __init__(self):
        self._snapshot: Optional[ConfigSnapshot] = None
        self._generation = 0
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        """Drop the current snapshot; the next read reloads it."""
        self._generation += 1
        self._snapshot = None
        logger.info("Forwarding configuration cache invalidated")

    async def get(self, session: AsyncSession) -> ConfigSnapshot:
        """Return the current snapshot, loading it if needed."""
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot

        async with self._lock:
            if self._snapshot is not None:
                return self._snapshot

            generation = self._generation
            snapshot = await load_snapshot(session)
            # An edit landed while loading; serve this read but do not keep it
            if generation == self._generation:
                self._snapshot = snapshot
            return snapshot

    async def get_rules(self, session: AsyncSession) -> List[RuleSnapshot]:
        return (await self.get(session)).rules

    async def get_destinations(self, session: AsyncSession, rule_id: str) -> List[DestinationSnapshot]:
        return (await self.get(session)).destinations.get(rule_id, [])


# Process-wide cache shared by the pipeline and the management API
config_cache = ConfigCache()
