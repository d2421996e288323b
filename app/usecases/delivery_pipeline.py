"""
Message delivery pipeline: match rules, resolve destinations, fan out.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import Settings
from app.domain.delivery import DeliveryAttempt, DispatchError, DispatchResult
from app.domain.message import IncomingMessage
from app.infrastructure.channels.dispatcher import dispatch
from app.infrastructure.config_cache import ConfigCache, config_cache
from app.usecases.delivery_tracker import DeliveryTracker, message_metadata
from app.usecases.destination_resolver import DestinationResolver, ResolvedDestination
from app.usecases.filter_evaluator import matches
from app.usecases.rule_matcher import RuleMatcher

logger = logging.getLogger(__name__)


class DeliveryPipeline:
    """Runs one message through matching, resolution and dispatch."""

    def __init__(
        self,
        session: AsyncSession,
        cache: ConfigCache = config_cache,
        evaluator: Callable = matches,
        settings: Optional[Settings] = None
    ):
        self.session = session
        self.matcher = RuleMatcher(session, cache, evaluator)
        self.resolver = DestinationResolver(session, cache)
        self.tracker = DeliveryTracker(session, settings)

    async def process(self, message_id: str) -> List[DeliveryAttempt]:
        """
        Process a message end to end.

        Rules are matched sequentially. Every resolved destination gets a
        pending attempt first. Destinations whose template fails to render
        are failed at once; the remaining channel calls run concurrently and
        their outcomes are recorded. Failed dispatches are queued for retry,
        never retried inline. The message is marked processed afterwards,
        including when no rule matched.

        Args:
            message_id: ID of a persisted IncomingMessage

        Returns:
            Attempts created for this run
        """
        message = await self.session.get(IncomingMessage, message_id)
        if message is None:
            logger.warning(f"Message {message_id} not found, nothing to process")
            return []

        if message.processed:
            logger.info(f"Message {message_id} already processed, skipping")
            return []

        rules = await self.matcher.select_rules(message)

        planned = []
        for rule in rules:
            for destination in await self.resolver.resolve_destinations(rule, message):
                try:
                    text, render_error = destination.render(message), None
                except DispatchError as e:
                    text, render_error = None, e

                attempt = await self.tracker.create_attempt(
                    message.id,
                    rule.id,
                    destination.channel.id,
                    text,
                    destination.action_config,
                )
                if attempt is not None:
                    planned.append((attempt, destination, text, render_error))

        # Pending rows are durable before any provider is called
        await self.session.commit()

        attempts = []
        sendable = []
        for attempt, destination, text, render_error in planned:
            if render_error is None:
                sendable.append((attempt, destination, text))
                continue
            # Template failures are terminal and recorded before the fan-out
            recorded = await self.tracker.record_outcome(attempt, DispatchResult(error=render_error))
            if recorded is not None:
                attempts.append(recorded)

        results = await asyncio.gather(*(
            self._dispatch_one(message, attempt, destination, text)
            for attempt, destination, text in sendable
        ))

        for (attempt, _, _), result in zip(sendable, results):
            recorded = await self.tracker.record_outcome(attempt, result)
            if recorded is not None:
                attempts.append(recorded)

        await self.session.execute(
            update(IncomingMessage)
            .where(IncomingMessage.id == message_id)
            .values(processed=True)
        )
        await self.session.commit()

        logger.info(f"Message {message_id} processed: {len(rules)} rule(s), {len(planned)} delivery(ies)")
        return attempts

    async def _dispatch_one(
        self,
        message: IncomingMessage,
        attempt: DeliveryAttempt,
        destination: ResolvedDestination,
        text: str,
    ) -> DispatchResult:
        return await dispatch(
            destination.channel.type,
            destination.channel.config,
            text,
            destination.action_config,
            message_metadata(message, attempt.rule_id, attempt.channel_id),
        )


async def process_message(message_id: str) -> None:
    """
    Run the pipeline for a message in its own session.

    Called as a background task after ingestion; delivery problems are
    recorded on the attempts, never raised to the caller.
    """
    from app.infrastructure.database import DatabaseSession

    try:
        async with DatabaseSession() as session:
            await DeliveryPipeline(session).process(message_id)
    except Exception as e:
        logger.exception(f"Error processing message {message_id}: {e}")


async def recover_outstanding_work() -> None:
    """
    Resume work interrupted by a restart.

    Re-enqueues queued retries and runs the pipeline for messages that were
    accepted but never marked processed.
    """
    from app.infrastructure.database import DatabaseSession

    async with DatabaseSession() as session:
        requeued = await DeliveryTracker(session).requeue_outstanding()
        result = await session.execute(
            select(IncomingMessage.id)
            .where(IncomingMessage.processed == False)  # noqa: E712
            .order_by(IncomingMessage.received_at)
        )
        pending_ids = list(result.scalars().all())

    logger.info(f"Recovery: {requeued} attempt(s) re-enqueued, {len(pending_ids)} message(s) to process")

    for message_id in pending_ids:
        await process_message(message_id)
