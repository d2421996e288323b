"""
Read-only query API for the dashboard.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.auth import require_api_token
from app.domain.delivery import DeliveryListResponse, DeliveryStatus, SchedulerStatus
from app.domain.message import MessageListResponse, MessageResponse, TrafficPoint
from app.infrastructure.database import get_session
from app.infrastructure.scheduler import get_scheduler, list_jobs
from app.usecases.query_service import QueryService

router = APIRouter(prefix="/api", dependencies=[Depends(require_api_token)])


def get_service(session: AsyncSession = Depends(get_session)) -> QueryService:
    return QueryService(session)


@router.get("/messages", response_model=MessageListResponse)
async def list_messages(
    endpoint_id: Optional[str] = None,
    processed: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: QueryService = Depends(get_service),
):
    total, items = await service.list_messages(endpoint_id, processed, limit, offset)
    return MessageListResponse(total=total, items=items)


@router.get("/messages/{message_id}", response_model=MessageResponse)
async def get_message(message_id: str, service: QueryService = Depends(get_service)):
    return await service.get_message(message_id)


@router.get("/deliveries", response_model=DeliveryListResponse)
async def list_deliveries(
    message_id: Optional[str] = None,
    rule_id: Optional[str] = None,
    channel_id: Optional[str] = None,
    status: Optional[DeliveryStatus] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: QueryService = Depends(get_service),
):
    """Delivery history, newest attempt first."""
    total, items = await service.list_deliveries(
        message_id=message_id,
        rule_id=rule_id,
        channel_id=channel_id,
        status=status,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    return DeliveryListResponse(total=total, items=items)


@router.get("/dashboard/sms-traffic", response_model=List[TrafficPoint])
async def sms_traffic(
    hours: int = Query(24, ge=1, le=168),
    service: QueryService = Depends(get_service),
):
    """Hourly received-message counts for the dashboard chart."""
    return await service.sms_traffic(hours)


@router.get("/scheduler/status", response_model=SchedulerStatus)
async def scheduler_status():
    """Get scheduler status and queued retry jobs."""
    jobs = list_jobs()
    return SchedulerStatus(
        running=get_scheduler().running,
        jobs_count=len(jobs),
        jobs=jobs,
    )
