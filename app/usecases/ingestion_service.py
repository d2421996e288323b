"""
Ingestion of messages posted by SIM gateways.
"""

import hmac
import logging
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.endpoint import SimEndpoint
from app.domain.errors import EndpointDisabledError, EndpointUnauthorizedError
from app.domain.message import IncomingMessage, IngestRequest
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


class IngestionService:
    """Persists inbound messages."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def ingest(
        self,
        request: IngestRequest,
        endpoint_token: Optional[str] = None
    ) -> Tuple[IncomingMessage, bool]:
        """
        Store an inbound message.

        Registered endpoints that carry an API token must present it.
        Unregistered endpoint ids are accepted as-is. Idempotency keys are
        scoped to the endpoint; without one every call creates a new message.

        Args:
            request: Validated ingestion payload
            endpoint_token: Value of the X-Endpoint-Token header

        Returns:
            (message, created) - created is False when the idempotency key
            matched an earlier message

        Raises:
            EndpointUnauthorizedError: token missing or wrong
            EndpointDisabledError: endpoint is disabled
        """
        endpoint = await self.session.get(SimEndpoint, request.endpoint_id)
        if endpoint is not None:
            self._authorize(endpoint, endpoint_token)

        if request.idempotency_key:
            existing = await self._find_by_key(request.endpoint_id, request.idempotency_key)
            if existing is not None:
                logger.info(f"Idempotency key {request.idempotency_key} seen before, returning {existing.id}")
                return existing, False

        message = IncomingMessage(
            endpoint_id=request.endpoint_id,
            from_number=request.from_number,
            to_number=request.to_number,
            body=request.body,
            raw_payload=request.raw_payload,
            received_at=utcnow(),
            processed=False,
            idempotency_key=request.idempotency_key,
        )
        self.session.add(message)

        if endpoint is not None:
            endpoint.last_seen_at = message.received_at

        try:
            await self.session.commit()
        except IntegrityError:
            # Lost a race with a concurrent post carrying the same key
            await self.session.rollback()
            if not request.idempotency_key:
                raise
            existing = await self._find_by_key(request.endpoint_id, request.idempotency_key)
            if existing is None:
                raise
            return existing, False

        logger.info(f"Accepted message {message.id} from endpoint {request.endpoint_id}")
        return message, True

    def _authorize(self, endpoint: SimEndpoint, token: Optional[str]) -> None:
        if not endpoint.is_enabled:
            logger.warning(f"Rejected message for disabled endpoint {endpoint.id}")
            raise EndpointDisabledError(f"Endpoint {endpoint.id} is disabled")

        if endpoint.api_token and not hmac.compare_digest(endpoint.api_token, token or ""):
            logger.warning(f"Invalid token for endpoint {endpoint.id}")
            raise EndpointUnauthorizedError("Invalid endpoint token")

    async def _find_by_key(self, endpoint_id: str, key: str) -> Optional[IncomingMessage]:
        result = await self.session.execute(
            select(IncomingMessage).where(
                IncomingMessage.endpoint_id == endpoint_id,
                IncomingMessage.idempotency_key == key,
            )
        )
        return result.scalar_one_or_none()
