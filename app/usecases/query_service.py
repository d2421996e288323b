"""
Read-only queries backing the dashboard: messages, deliveries, traffic.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.channel import DestinationChannel
from app.domain.delivery import DeliveryAttempt, DeliveryAttemptResponse, DeliveryStatus
from app.domain.errors import NotFoundError
from app.domain.message import IncomingMessage, TrafficPoint
from app.domain.rule import ForwardRule
from app.utils.time import floor_to_hour, hourly_buckets, to_naive_utc, utcnow


class QueryService:
    """Service class for dashboard queries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_messages(
        self,
        endpoint_id: Optional[str] = None,
        processed: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[int, List[IncomingMessage]]:
        """List messages, newest first."""
        conditions = []
        if endpoint_id is not None:
            conditions.append(IncomingMessage.endpoint_id == endpoint_id)
        if processed is not None:
            conditions.append(IncomingMessage.processed == processed)

        total = await self.session.scalar(
            select(func.count()).select_from(IncomingMessage).where(*conditions)
        )
        result = await self.session.execute(
            select(IncomingMessage)
            .where(*conditions)
            .order_by(IncomingMessage.received_at.desc(), IncomingMessage.id)
            .limit(limit)
            .offset(offset)
        )
        return total or 0, list(result.scalars().all())

    async def get_message(self, message_id: str) -> IncomingMessage:
        message = await self.session.get(IncomingMessage, message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    async def list_deliveries(
        self,
        message_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        status: Optional[DeliveryStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[int, List[DeliveryAttemptResponse]]:
        """
        List delivery attempts with rule, channel and message details.

        The time range applies to last_attempt_at, falling back to
        created_at for attempts that have not been tried yet.
        """
        attempted_at = func.coalesce(DeliveryAttempt.last_attempt_at, DeliveryAttempt.created_at)

        conditions = []
        if message_id is not None:
            conditions.append(DeliveryAttempt.message_id == message_id)
        if rule_id is not None:
            conditions.append(DeliveryAttempt.rule_id == rule_id)
        if channel_id is not None:
            conditions.append(DeliveryAttempt.channel_id == channel_id)
        if status is not None:
            conditions.append(DeliveryAttempt.status == status)
        if since is not None:
            conditions.append(attempted_at >= to_naive_utc(since))
        if until is not None:
            conditions.append(attempted_at < to_naive_utc(until))

        total = await self.session.scalar(
            select(func.count()).select_from(DeliveryAttempt).where(*conditions)
        )

        # Soft-deleted rules and channels still resolve their names here
        result = await self.session.execute(
            select(
                DeliveryAttempt,
                ForwardRule.name,
                DestinationChannel.name,
                IncomingMessage.body,
            )
            .outerjoin(ForwardRule, ForwardRule.id == DeliveryAttempt.rule_id)
            .outerjoin(DestinationChannel, DestinationChannel.id == DeliveryAttempt.channel_id)
            .outerjoin(IncomingMessage, IncomingMessage.id == DeliveryAttempt.message_id)
            .where(*conditions)
            .order_by(attempted_at.desc(), DeliveryAttempt.id)
            .limit(limit)
            .offset(offset)
        )

        items = []
        for attempt, rule_name, channel_name, body in result.all():
            item = DeliveryAttemptResponse.model_validate(attempt)
            item.rule_name = rule_name
            item.channel_name = channel_name
            item.message_content = body
            items.append(item)

        return total or 0, items

    async def sms_traffic(self, hours: int = 24, now: Optional[datetime] = None) -> List[TrafficPoint]:
        """
        Count received messages per hour over the last `hours` hours.

        Empty hours are included with a zero count.
        """
        now = now or utcnow()
        buckets = hourly_buckets(now, hours)
        start = buckets[0]

        result = await self.session.execute(
            select(IncomingMessage.received_at).where(
                IncomingMessage.received_at >= start,
                IncomingMessage.received_at < floor_to_hour(now) + timedelta(hours=1),
            )
        )

        counts = {bucket: 0 for bucket in buckets}
        for (received_at,) in result.all():
            counts[floor_to_hour(received_at)] += 1

        return [TrafficPoint(time=bucket, sms_count=count) for bucket, count in counts.items()]
