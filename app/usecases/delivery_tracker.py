"""
Delivery tracking: the DeliveryAttempt state machine and retry policy.

    pending --provider id--------------------------> sent      (terminal)
    pending --permanent error----------------------> failed    (terminal)
    pending --transient error, retries left--------> failed    (retry queued)
    pending --transient error, retries exhausted---> failed    (terminal)
    failed(queued) --claimed by retry job----------> pending

Every write is a compare-and-set on ``version`` so a retry job that is
delivered twice cannot send twice.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import Settings, get_settings
from app.domain.channel import DestinationChannel
from app.domain.delivery import (
    DeliveryAttempt,
    DeliveryStatus,
    DispatchError,
    DispatchErrorKind,
    DispatchResult,
)
from app.domain.message import IncomingMessage
from app.domain.rule import ForwardRule, RuleDestination
from app.infrastructure.channels.dispatcher import dispatch
from app.infrastructure.database import retry_on_locked
from app.infrastructure.scheduler import schedule_delivery_retry
from app.utils.time import format_iso, utcnow

logger = logging.getLogger(__name__)


def compute_backoff_delay(retry_count: int, base: float, cap: float) -> float:
    """Exponential backoff: min(base * 2^retry_count, cap)."""
    return min(base * (2 ** retry_count), cap)


def message_metadata(message: Optional[IncomingMessage], rule_id: str, channel_id: str) -> Dict[str, Any]:
    """Metadata forwarded alongside the text to channels that carry it."""
    metadata: Dict[str, Any] = {"rule_id": rule_id, "channel_id": channel_id}
    if message is not None:
        metadata.update(
            id=message.id,
            endpoint_id=message.endpoint_id,
            from_number=message.from_number,
            to_number=message.to_number,
            body=message.body,
            received_at=format_iso(message.received_at) if message.received_at else None,
        )
    return metadata


class DeliveryTracker:
    """Records dispatch outcomes and drives retries."""

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or get_settings()

    async def create_attempt(
        self,
        message_id: str,
        rule_id: str,
        channel_id: str,
        rendered_text: Optional[str],
        action_config: Optional[Dict[str, Any]] = None,
    ) -> Optional[DeliveryAttempt]:
        """
        Create the pending attempt for a triple, leased to the caller.

        Returns None when the triple already has an attempt (for example a
        message re-run after a restart); that attempt keeps its own lifecycle.
        """
        result = await self.session.execute(
            select(DeliveryAttempt.id).where(
                DeliveryAttempt.message_id == message_id,
                DeliveryAttempt.rule_id == rule_id,
                DeliveryAttempt.channel_id == channel_id,
            )
        )
        if result.scalar_one_or_none() is not None:
            logger.info(f"Attempt for ({message_id}, {rule_id}, {channel_id}) already exists, skipping")
            return None

        attempt = DeliveryAttempt(
            message_id=message_id,
            rule_id=rule_id,
            channel_id=channel_id,
            status=DeliveryStatus.PENDING,
            retry_count=0,
            version=0,
            rendered_text=rendered_text,
            action_config=dict(action_config or {}),
            lease_until=utcnow() + timedelta(seconds=self.settings.delivery_lease_seconds),
        )
        self.session.add(attempt)
        await self.session.flush()
        return attempt

    def _outcome_values(self, attempt: DeliveryAttempt, result: DispatchResult, now: datetime) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "last_attempt_at": now,
            "lease_until": None,
            "version": attempt.version + 1,
        }

        if result.ok:
            # Error text of an earlier failed try is kept for the history view
            values.update(
                status=DeliveryStatus.SENT,
                provider_message_id=result.provider_message_id,
                next_retry_at=None,
            )
            return values

        error = result.error
        values.update(status=DeliveryStatus.FAILED, next_retry_at=None)

        if not error.retryable:
            values.update(error=str(error), error_kind=error.kind)
        elif attempt.retry_count >= self.settings.max_retries:
            values.update(
                error=f"{DispatchErrorKind.RETRY_EXHAUSTED.value}: gave up after "
                      f"{attempt.retry_count} retries; last error: {error}",
                error_kind=DispatchErrorKind.RETRY_EXHAUSTED,
            )
        else:
            delay = compute_backoff_delay(
                attempt.retry_count,
                self.settings.retry_base_delay_seconds,
                self.settings.retry_max_delay_seconds,
            )
            values.update(
                error=str(error),
                error_kind=error.kind,
                retry_count=attempt.retry_count + 1,
                next_retry_at=now + timedelta(seconds=delay),
            )
        return values

    @retry_on_locked
    async def _compare_and_set(self, attempt_id: str, expected_version: int, values: Dict[str, Any]) -> bool:
        """Apply `values` only if the row is still at `expected_version`."""
        try:
            result = await self.session.execute(
                update(DeliveryAttempt)
                .where(
                    DeliveryAttempt.id == attempt_id,
                    DeliveryAttempt.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            return result.rowcount == 1
        except OperationalError:
            await self.session.rollback()
            raise

    async def record_outcome(self, attempt: DeliveryAttempt, result: DispatchResult) -> Optional[DeliveryAttempt]:
        """
        Apply a dispatch result to an attempt the caller holds the lease on.

        Queues the next retry when the failure is retryable.

        Returns:
            The refreshed attempt, or None if another worker changed it first
        """
        attempt_id, version = attempt.id, attempt.version
        now = utcnow()
        values = self._outcome_values(attempt, result, now)

        if not await self._compare_and_set(attempt_id, version, values):
            logger.warning(f"Attempt {attempt_id} changed under us (version {version}); outcome dropped")
            return None

        await self.session.refresh(attempt)

        if attempt.status == DeliveryStatus.SENT:
            logger.info(f"Attempt {attempt.id} sent. Provider ID: {attempt.provider_message_id}")
        elif attempt.next_retry_at is not None:
            logger.info(
                f"Attempt {attempt.id} failed ({attempt.error_kind.value}), "
                f"retry {attempt.retry_count} at {attempt.next_retry_at}"
            )
            await schedule_delivery_retry(attempt.id, attempt.next_retry_at)
        else:
            logger.warning(f"Attempt {attempt.id} failed permanently: {attempt.error}")

        return attempt

    async def claim_for_retry(self, attempt_id: str) -> Optional[DeliveryAttempt]:
        """
        Take ownership of a queued retry.

        Returns:
            The attempt, now pending and leased, or None if it is not due for
            retry or another worker holds it
        """
        attempt = await self.session.get(DeliveryAttempt, attempt_id, populate_existing=True)
        if attempt is None:
            logger.warning(f"Retry for unknown attempt {attempt_id}")
            return None

        if attempt.status != DeliveryStatus.FAILED or attempt.next_retry_at is None:
            logger.info(f"Attempt {attempt_id} has no queued retry (status={attempt.status.value})")
            return None

        now = utcnow()
        if attempt.lease_until is not None and attempt.lease_until > now:
            logger.info(f"Attempt {attempt_id} is leased until {attempt.lease_until}")
            return None

        claimed = await self._compare_and_set(
            attempt.id,
            attempt.version,
            {
                "status": DeliveryStatus.PENDING,
                "version": attempt.version + 1,
                "lease_until": now + timedelta(seconds=self.settings.delivery_lease_seconds),
            },
        )
        if not claimed:
            logger.info(f"Attempt {attempt_id} was claimed by another worker")
            return None

        await self.session.refresh(attempt)
        return attempt

    async def _retry_blocker(self, attempt: DeliveryAttempt, channel: Optional[DestinationChannel]) -> Optional[str]:
        """Why a queued retry can no longer be sent, or None if it can."""
        if attempt.rendered_text is None:
            return "Message text was never rendered"

        if channel is None or channel.deleted_at is not None or not channel.is_enabled:
            return f"Channel {attempt.channel_id} is disabled or deleted"

        rule = await self.session.get(ForwardRule, attempt.rule_id)
        if rule is None or rule.deleted_at is not None or not rule.is_enabled:
            return f"Rule {attempt.rule_id} is disabled or deleted"

        result = await self.session.execute(
            select(RuleDestination.is_enabled).where(
                RuleDestination.rule_id == attempt.rule_id,
                RuleDestination.channel_id == attempt.channel_id,
            )
        )
        if not result.scalar_one_or_none():
            return f"Channel {attempt.channel_id} is no longer an enabled destination of rule {attempt.rule_id}"

        return None

    async def retry(self, attempt_id: str) -> Optional[DeliveryAttempt]:
        """
        Run one queued retry: claim, resend the stored text, record.

        A channel, rule or rule destination disabled or deleted since the
        first try fails the attempt permanently instead of sending, as does
        an attempt whose text was never rendered.
        """
        attempt = await self.claim_for_retry(attempt_id)
        if attempt is None:
            return None

        channel = await self.session.get(DestinationChannel, attempt.channel_id)
        reason = await self._retry_blocker(attempt, channel)
        if reason is not None:
            result = DispatchResult(error=DispatchError.config_invalid(reason))
        else:
            message = await self.session.get(IncomingMessage, attempt.message_id)
            result = await dispatch(
                channel.type,
                channel.config,
                attempt.rendered_text,
                attempt.action_config,
                message_metadata(message, attempt.rule_id, attempt.channel_id),
            )

        return await self.record_outcome(attempt, result)

    async def requeue_outstanding(self) -> int:
        """
        Re-enqueue retries after a restart.

        Queued retries are scheduled again (replacing any surviving job), and
        attempts left pending by a crash are recorded as interrupted, which
        queues them like any other transient failure. A pending attempt with
        no rendered text fails permanently instead. Runs before the app
        serves requests, so no pending attempt can be in flight.

        Returns:
            Number of attempts re-enqueued or recovered
        """
        now = utcnow()
        count = 0

        result = await self.session.execute(
            select(DeliveryAttempt).where(
                DeliveryAttempt.status == DeliveryStatus.FAILED,
                DeliveryAttempt.next_retry_at.isnot(None),
            )
        )
        for attempt in result.scalars().all():
            await schedule_delivery_retry(attempt.id, max(attempt.next_retry_at, now))
            count += 1

        result = await self.session.execute(
            select(DeliveryAttempt).where(
                DeliveryAttempt.status == DeliveryStatus.PENDING,
            )
        )
        stale: List[DeliveryAttempt] = list(result.scalars().all())
        for attempt in stale:
            if attempt.rendered_text is None:
                error = DispatchError.config_invalid("Message text was never rendered")
            else:
                error = DispatchError.timeout("Dispatch interrupted before completion")
            if await self.record_outcome(attempt, DispatchResult(error=error)) is not None:
                count += 1

        return count
