"""
Management operations for rules, channels, rule destinations and endpoints.

Every write invalidates the forwarding configuration cache. Rules and
channels are soft-deleted so delivery history keeps resolving their names;
the rule-destination rows that wire them together are removed.
"""

import logging
from typing import List

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.channel import (
    ChannelCreate,
    ChannelType,
    ChannelUpdate,
    DestinationChannel,
    missing_config_keys,
)
from app.domain.endpoint import EndpointCreate, EndpointUpdate, SimEndpoint, generate_api_token
from app.domain.errors import ConflictError, InvalidConfigError, NotFoundError
from app.domain.rule import (
    ForwardRule,
    RuleCreate,
    RuleDestination,
    RuleDestinationCreate,
    RuleDestinationUpdate,
    RuleUpdate,
)
from app.infrastructure.config_cache import ConfigCache, config_cache
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


def _validate_channel_config(channel_type: ChannelType, config: dict) -> None:
    missing = missing_config_keys(channel_type, config)
    if missing:
        raise InvalidConfigError(f"{channel_type.value} channel config missing: {', '.join(missing)}")


class ManagementService:
    """Service class for configuration CRUD."""

    def __init__(self, session: AsyncSession, cache: ConfigCache = config_cache):
        self.session = session
        self.cache = cache

    async def _commit(self) -> None:
        await self.session.commit()
        self.cache.invalidate()

    # Rules

    async def list_rules(self) -> List[ForwardRule]:
        result = await self.session.execute(
            select(ForwardRule)
            .where(ForwardRule.deleted_at.is_(None))
            .order_by(ForwardRule.priority, ForwardRule.id)
        )
        return list(result.scalars().all())

    async def get_rule(self, rule_id: str) -> ForwardRule:
        rule = await self.session.get(ForwardRule, rule_id)
        if rule is None or rule.deleted_at is not None:
            raise NotFoundError(f"Rule {rule_id} not found")
        return rule

    async def create_rule(self, data: RuleCreate) -> ForwardRule:
        rule = ForwardRule(**data.model_dump())
        self.session.add(rule)
        await self._commit()
        logger.info(f"Created rule: {rule.id} - {rule.name}")
        return rule

    async def update_rule(self, rule_id: str, data: RuleUpdate) -> ForwardRule:
        rule = await self.get_rule(rule_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(rule, field, value)
        rule.updated_at = utcnow()
        await self._commit()
        await self.session.refresh(rule)
        return rule

    async def delete_rule(self, rule_id: str) -> None:
        rule = await self.get_rule(rule_id)
        rule.deleted_at = utcnow()
        rule.is_enabled = False
        await self.session.execute(delete(RuleDestination).where(RuleDestination.rule_id == rule_id))
        await self._commit()
        logger.info(f"Deleted rule: {rule_id}")

    # Channels

    async def list_channels(self) -> List[DestinationChannel]:
        result = await self.session.execute(
            select(DestinationChannel)
            .where(DestinationChannel.deleted_at.is_(None))
            .order_by(DestinationChannel.created_at, DestinationChannel.id)
        )
        return list(result.scalars().all())

    async def get_channel(self, channel_id: str) -> DestinationChannel:
        channel = await self.session.get(DestinationChannel, channel_id)
        if channel is None or channel.deleted_at is not None:
            raise NotFoundError(f"Channel {channel_id} not found")
        return channel

    async def create_channel(self, data: ChannelCreate) -> DestinationChannel:
        _validate_channel_config(data.type, data.config)
        channel = DestinationChannel(**data.model_dump())
        self.session.add(channel)
        await self._commit()
        logger.info(f"Created channel: {channel.id} ({channel.type.value})")
        return channel

    async def update_channel(self, channel_id: str, data: ChannelUpdate) -> DestinationChannel:
        channel = await self.get_channel(channel_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("config") is not None:
            _validate_channel_config(ChannelType(channel.type), changes["config"])
        for field, value in changes.items():
            if value is not None:
                setattr(channel, field, value)
        channel.updated_at = utcnow()
        await self._commit()
        await self.session.refresh(channel)
        return channel

    async def delete_channel(self, channel_id: str) -> None:
        channel = await self.get_channel(channel_id)
        channel.deleted_at = utcnow()
        channel.is_enabled = False
        await self.session.execute(delete(RuleDestination).where(RuleDestination.channel_id == channel_id))
        await self._commit()
        logger.info(f"Deleted channel: {channel_id}")

    # Rule destinations

    async def list_rule_destinations(self, rule_id: str) -> List[RuleDestination]:
        await self.get_rule(rule_id)
        result = await self.session.execute(
            select(RuleDestination)
            .where(RuleDestination.rule_id == rule_id)
            .order_by(RuleDestination.position, RuleDestination.created_at, RuleDestination.id)
        )
        return list(result.scalars().all())

    async def add_rule_destination(self, rule_id: str, data: RuleDestinationCreate) -> RuleDestination:
        await self.get_rule(rule_id)
        await self.get_channel(data.channel_id)

        result = await self.session.execute(
            select(func.max(RuleDestination.position)).where(RuleDestination.rule_id == rule_id)
        )
        last_position = result.scalar_one_or_none()

        destination = RuleDestination(
            rule_id=rule_id,
            position=0 if last_position is None else last_position + 1,
            **data.model_dump(),
        )
        self.session.add(destination)
        try:
            await self._commit()
        except IntegrityError:
            await self.session.rollback()
            raise ConflictError(f"Channel {data.channel_id} is already a destination of rule {rule_id}")
        return destination

    async def get_rule_destination(self, destination_id: str) -> RuleDestination:
        destination = await self.session.get(RuleDestination, destination_id)
        if destination is None:
            raise NotFoundError(f"Rule destination {destination_id} not found")
        return destination

    async def update_rule_destination(self, destination_id: str, data: RuleDestinationUpdate) -> RuleDestination:
        destination = await self.get_rule_destination(destination_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            # An explicit null clears the override template
            if value is not None or field == "override_text_template":
                setattr(destination, field, value)
        await self._commit()
        await self.session.refresh(destination)
        return destination

    async def delete_rule_destination(self, destination_id: str) -> None:
        destination = await self.get_rule_destination(destination_id)
        await self.session.delete(destination)
        await self._commit()

    # SIM endpoints

    async def list_endpoints(self) -> List[SimEndpoint]:
        result = await self.session.execute(select(SimEndpoint).order_by(SimEndpoint.created_at))
        return list(result.scalars().all())

    async def get_endpoint(self, endpoint_id: str) -> SimEndpoint:
        endpoint = await self.session.get(SimEndpoint, endpoint_id)
        if endpoint is None:
            raise NotFoundError(f"Endpoint {endpoint_id} not found")
        return endpoint

    async def create_endpoint(self, data: EndpointCreate) -> SimEndpoint:
        values = data.model_dump(exclude_none=True)
        values.setdefault("api_token", generate_api_token())

        duplicate = await self.session.execute(
            select(SimEndpoint.id).where(
                or_(
                    SimEndpoint.id == values.get("id"),
                    SimEndpoint.api_token == values["api_token"],
                )
            )
        )
        if duplicate.first() is not None:
            raise ConflictError("Endpoint id or token already in use")

        endpoint = SimEndpoint(**values)
        self.session.add(endpoint)
        await self.session.commit()
        logger.info(f"Registered endpoint: {endpoint.id} ({endpoint.phone_number})")
        return endpoint

    async def update_endpoint(self, endpoint_id: str, data: EndpointUpdate) -> SimEndpoint:
        endpoint = await self.get_endpoint(endpoint_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(endpoint, field, value)
        await self.session.commit()
        await self.session.refresh(endpoint)
        return endpoint

    async def delete_endpoint(self, endpoint_id: str) -> None:
        endpoint = await self.get_endpoint(endpoint_id)
        await self.session.delete(endpoint)
        await self.session.commit()
        logger.info(f"Deleted endpoint: {endpoint_id}")
