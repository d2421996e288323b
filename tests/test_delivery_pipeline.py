"""
Tests for the end-to-end delivery pipeline.
"""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from app.domain.channel import ChannelType
from app.domain.delivery import (
    DeliveryAttempt,
    DeliveryStatus,
    DispatchError,
    DispatchErrorKind,
    DispatchResult,
)
from app.domain.message import IncomingMessage
from app.usecases.delivery_pipeline import DeliveryPipeline, recover_outstanding_work
from app.usecases.delivery_tracker import DeliveryTracker


@pytest.fixture
def mock_dispatch():
    with patch("app.usecases.delivery_pipeline.dispatch", new_callable=AsyncMock) as mock:
        mock.return_value = DispatchResult(provider_message_id="4711")
        yield mock


@pytest.fixture
def pipeline(test_session, cache, test_settings):
    return DeliveryPipeline(test_session, cache=cache, settings=test_settings)


async def _attempts(session):
    result = await session.execute(select(DeliveryAttempt).order_by(DeliveryAttempt.created_at))
    return list(result.scalars().all())


class TestProcess:
    """Tests for DeliveryPipeline.process."""

    @pytest.mark.asyncio
    async def test_alert_forwarded_to_telegram(
        self, pipeline, test_session, mock_dispatch, make_message, make_rule, make_channel, make_destination
    ):
        """Alert SMS matches the stop rule and goes to the ops group only."""
        alerts = await make_rule(name="Alerts", priority=1, filters={"contains": "ALERT"}, stop_processing=True)
        general = await make_rule(name="General log", priority=2, filters={})
        telegram = await make_channel(ChannelType.TELEGRAM, {"chat_id": "-100234234"})
        webhook = await make_channel(ChannelType.WEBHOOK, name="Log")
        await make_destination(alerts, telegram)
        await make_destination(general, webhook)
        message = await make_message(body="ALERT: temp 46C")

        attempts = await pipeline.process(message.id)

        assert len(attempts) == 1
        attempt = attempts[0]
        assert attempt.rule_id == alerts.id
        assert attempt.channel_id == telegram.id
        assert attempt.status == DeliveryStatus.SENT
        assert attempt.provider_message_id == "4711"
        assert attempt.retry_count == 0

        mock_dispatch.assert_awaited_once()
        args = mock_dispatch.call_args[0]
        assert args[0] == ChannelType.TELEGRAM
        assert args[1] == {"chat_id": "-100234234"}
        assert args[2] == "ALERT: temp 46C"

        refreshed = await test_session.get(IncomingMessage, message.id, populate_existing=True)
        assert refreshed.processed is True

    @pytest.mark.asyncio
    async def test_no_match_marks_processed_without_attempts(
        self, pipeline, test_session, mock_dispatch, make_message, make_rule, make_channel, make_destination
    ):
        billing = await make_rule(name="Billing", filters={"contains": "INVOICE"})
        await make_destination(billing, await make_channel())
        message = await make_message(body="Status Report: All systems nominal.")

        attempts = await pipeline.process(message.id)

        assert attempts == []
        assert await _attempts(test_session) == []
        mock_dispatch.assert_not_called()
        refreshed = await test_session.get(IncomingMessage, message.id, populate_existing=True)
        assert refreshed.processed is True

    @pytest.mark.asyncio
    async def test_unreachable_webhook_is_queued_for_retry(
        self, pipeline, mock_dispatch, mock_schedule_retry, make_message, make_rule, make_channel, make_destination
    ):
        rule = await make_rule()
        await make_destination(rule, await make_channel(ChannelType.WEBHOOK))
        message = await make_message()
        mock_dispatch.return_value = DispatchResult(
            error=DispatchError.timeout("webhook connection error: ConnectError('refused')")
        )

        attempts = await pipeline.process(message.id)

        attempt = attempts[0]
        assert attempt.status == DeliveryStatus.FAILED
        assert attempt.error_kind == DispatchErrorKind.TIMEOUT
        assert attempt.retry_count == 1
        delay = (attempt.next_retry_at - attempt.last_attempt_at).total_seconds()
        assert delay == pytest.approx(30)
        mock_schedule_retry.assert_awaited_once_with(attempt.id, attempt.next_retry_at)
        assert mock_dispatch.await_count == 1

    @pytest.mark.asyncio
    async def test_two_destinations_get_independent_attempts(
        self, pipeline, mock_dispatch, make_message, make_rule, make_channel, make_destination
    ):
        rule = await make_rule()
        telegram = await make_channel(ChannelType.TELEGRAM)
        email = await make_channel(ChannelType.EMAIL, name="Admin mail")
        await make_destination(rule, telegram)
        await make_destination(rule, email)
        message = await make_message()

        def outcome(channel_type, *args):
            if channel_type == ChannelType.EMAIL:
                return DispatchResult(error=DispatchError.rejected("mailbox unavailable", 550))
            return DispatchResult(provider_message_id="tg-1")

        mock_dispatch.side_effect = outcome

        attempts = await pipeline.process(message.id)

        by_channel = {a.channel_id: a for a in attempts}
        assert set(by_channel) == {telegram.id, email.id}
        assert by_channel[telegram.id].status == DeliveryStatus.SENT
        assert by_channel[email.id].status == DeliveryStatus.FAILED
        assert by_channel[email.id].next_retry_at is None

    @pytest.mark.asyncio
    async def test_override_template_is_rendered_and_stored(
        self, pipeline, mock_dispatch, make_message, make_rule, make_channel, make_destination
    ):
        rule = await make_rule(name="Alerts")
        await make_destination(
            rule, await make_channel(), override_text_template="[{rule_name}] {from_number}: {body}"
        )
        message = await make_message(body="door open", from_number="+15550001")

        attempts = await pipeline.process(message.id)

        assert mock_dispatch.call_args[0][2] == "[Alerts] +15550001: door open"
        assert attempts[0].rendered_text == "[Alerts] +15550001: door open"

    @pytest.mark.asyncio
    async def test_malformed_template_fails_only_that_destination(
        self, pipeline, mock_dispatch, make_message, make_rule, make_channel, make_destination
    ):
        rule = await make_rule()
        broken = await make_channel(name="Broken")
        fine = await make_channel(ChannelType.WEBHOOK, name="Fine")
        await make_destination(rule, broken, override_text_template="{nope}")
        await make_destination(rule, fine)
        message = await make_message()

        attempts = await pipeline.process(message.id)

        by_channel = {a.channel_id: a for a in attempts}
        assert by_channel[broken.id].error_kind == DispatchErrorKind.CONFIG_INVALID
        assert by_channel[broken.id].next_retry_at is None
        assert by_channel[fine.id].status == DeliveryStatus.SENT
        mock_dispatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_same_channel_on_two_rules(
        self, pipeline, mock_dispatch, make_message, make_rule, make_channel, make_destination
    ):
        first = await make_rule(name="First", priority=1)
        second = await make_rule(name="Second", priority=2)
        channel = await make_channel()
        await make_destination(first, channel)
        await make_destination(second, channel)
        message = await make_message()

        attempts = await pipeline.process(message.id)

        assert sorted(a.rule_id for a in attempts) == sorted([first.id, second.id])
        assert mock_dispatch.await_count == 2

    @pytest.mark.asyncio
    async def test_processed_message_is_skipped(self, pipeline, mock_dispatch, make_message, make_rule):
        await make_rule()
        message = await make_message(processed=True)

        assert await pipeline.process(message.id) == []
        mock_dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_message(self, pipeline, mock_dispatch):
        assert await pipeline.process("missing") == []

    @pytest.mark.asyncio
    async def test_rerun_does_not_duplicate_attempts(
        self, pipeline, test_session, mock_dispatch, make_message, make_rule, make_channel, make_destination
    ):
        rule = await make_rule()
        await make_destination(rule, await make_channel())
        message = await make_message()
        await pipeline.process(message.id)

        # Simulate a crash between dispatch and the processed flag
        refreshed = await test_session.get(IncomingMessage, message.id, populate_existing=True)
        refreshed.processed = False
        await test_session.commit()

        assert await pipeline.process(message.id) == []
        assert len(await _attempts(test_session)) == 1
        assert mock_dispatch.await_count == 1

    @pytest.mark.asyncio
    async def test_template_failure_recorded_before_fan_out(
        self, pipeline, test_session, mock_dispatch, mock_schedule_retry,
        make_message, make_rule, make_channel, make_destination
    ):
        rule = await make_rule()
        broken = await make_channel(ChannelType.WEBHOOK, name="Broken")
        fine = await make_channel(name="Fine")
        await make_destination(rule, broken, override_text_template="{nope}")
        await make_destination(rule, fine)
        message = await make_message()
        mock_dispatch.side_effect = RuntimeError("worker killed")

        with pytest.raises(RuntimeError):
            await pipeline.process(message.id)

        by_channel = {a.channel_id: a for a in await _attempts(test_session)}
        assert by_channel[broken.id].status == DeliveryStatus.FAILED
        assert by_channel[broken.id].error_kind == DispatchErrorKind.CONFIG_INVALID
        assert by_channel[fine.id].status == DeliveryStatus.PENDING

        await pipeline.tracker.requeue_outstanding()

        await test_session.refresh(by_channel[broken.id])
        assert by_channel[broken.id].error_kind == DispatchErrorKind.CONFIG_INVALID
        assert by_channel[broken.id].next_retry_at is None
        mock_schedule_retry.assert_awaited_once()
        assert mock_schedule_retry.call_args[0][0] == by_channel[fine.id].id


class _SessionContext:
    """Stands in for DatabaseSession, handing out the test session."""

    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        return self.session

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None


class TestRecoverOutstandingWork:
    """Tests for recover_outstanding_work."""

    @pytest.mark.asyncio
    async def test_recovers_attempts_and_reruns_unprocessed_messages(
        self, test_session, test_settings, mock_schedule_retry, make_message, make_rule, make_channel
    ):
        rule = await make_rule()
        telegram = await make_channel()
        webhook = await make_channel(ChannelType.WEBHOOK, name="Hook")
        pending = await make_message(body="ALERT: temp 46C")
        await make_message(body="done", processed=True)

        tracker = DeliveryTracker(test_session, test_settings)
        interrupted = await tracker.create_attempt(pending.id, rule.id, telegram.id, "ALERT: temp 46C")
        unrendered = await tracker.create_attempt(pending.id, rule.id, webhook.id, None)
        await test_session.commit()

        with patch("app.infrastructure.database.DatabaseSession", lambda: _SessionContext(test_session)), \
                patch("app.usecases.delivery_pipeline.process_message", new_callable=AsyncMock) as mock_process:
            await recover_outstanding_work()

        await test_session.refresh(interrupted)
        await test_session.refresh(unrendered)
        assert interrupted.error_kind == DispatchErrorKind.TIMEOUT
        assert interrupted.next_retry_at is not None
        assert unrendered.error_kind == DispatchErrorKind.CONFIG_INVALID
        assert unrendered.next_retry_at is None
        mock_schedule_retry.assert_awaited_once()
        mock_process.assert_awaited_once_with(pending.id)
