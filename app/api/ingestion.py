"""
Ingestion endpoint for messages posted by SIM gateways.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.message import IngestRequest, IngestResponse
from app.infrastructure.database import get_session
from app.usecases.delivery_pipeline import process_message
from app.usecases.ingestion_service import IngestionService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post(
    "/api/messages/ingest",
    response_model=IngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def ingest_message(
    payload: IngestRequest,
    background_tasks: BackgroundTasks,
    x_endpoint_token: Optional[str] = Header(default=None),
    session: AsyncSession = Depends(get_session),
):
    """
    Accept an inbound message and forward it asynchronously.

    The response only confirms the message was accepted; delivery results
    are available from the delivery history.
    """
    service = IngestionService(session)
    message, created = await service.ingest(payload, x_endpoint_token)

    if created:
        background_tasks.add_task(process_message, message.id)

    return IngestResponse(id=message.id)


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "sms-forwarder"}
