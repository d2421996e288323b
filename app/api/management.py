"""
Management API for rules, channels, rule destinations and SIM endpoints.
"""

from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.auth import require_api_token
from app.domain.channel import ChannelCreate, ChannelResponse, ChannelUpdate
from app.domain.endpoint import EndpointCreate, EndpointResponse, EndpointUpdate
from app.domain.rule import (
    RuleCreate,
    RuleDestinationCreate,
    RuleDestinationResponse,
    RuleDestinationUpdate,
    RuleResponse,
    RuleUpdate,
)
from app.infrastructure.database import get_session
from app.usecases.management_service import ManagementService

router = APIRouter(prefix="/api", dependencies=[Depends(require_api_token)])


def get_service(session: AsyncSession = Depends(get_session)) -> ManagementService:
    return ManagementService(session)


# Rules

@router.get("/rules", response_model=List[RuleResponse])
async def list_rules(service: ManagementService = Depends(get_service)):
    return await service.list_rules()


@router.post("/rules", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(data: RuleCreate, service: ManagementService = Depends(get_service)):
    return await service.create_rule(data)


@router.get("/rules/{rule_id}", response_model=RuleResponse)
async def get_rule(rule_id: str, service: ManagementService = Depends(get_service)):
    return await service.get_rule(rule_id)


@router.patch("/rules/{rule_id}", response_model=RuleResponse)
async def update_rule(rule_id: str, data: RuleUpdate, service: ManagementService = Depends(get_service)):
    return await service.update_rule(rule_id, data)


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(rule_id: str, service: ManagementService = Depends(get_service)):
    await service.delete_rule(rule_id)


@router.get("/rules/{rule_id}/destinations", response_model=List[RuleDestinationResponse])
async def list_rule_destinations(rule_id: str, service: ManagementService = Depends(get_service)):
    return await service.list_rule_destinations(rule_id)


@router.post(
    "/rules/{rule_id}/destinations",
    response_model=RuleDestinationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_rule_destination(
    rule_id: str,
    data: RuleDestinationCreate,
    service: ManagementService = Depends(get_service),
):
    return await service.add_rule_destination(rule_id, data)


@router.patch("/rule-destinations/{destination_id}", response_model=RuleDestinationResponse)
async def update_rule_destination(
    destination_id: str,
    data: RuleDestinationUpdate,
    service: ManagementService = Depends(get_service),
):
    return await service.update_rule_destination(destination_id, data)


@router.delete("/rule-destinations/{destination_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule_destination(destination_id: str, service: ManagementService = Depends(get_service)):
    await service.delete_rule_destination(destination_id)


# Channels

@router.get("/channels", response_model=List[ChannelResponse])
async def list_channels(service: ManagementService = Depends(get_service)):
    return await service.list_channels()


@router.post("/channels", response_model=ChannelResponse, status_code=status.HTTP_201_CREATED)
async def create_channel(data: ChannelCreate, service: ManagementService = Depends(get_service)):
    return await service.create_channel(data)


@router.get("/channels/{channel_id}", response_model=ChannelResponse)
async def get_channel(channel_id: str, service: ManagementService = Depends(get_service)):
    return await service.get_channel(channel_id)


@router.patch("/channels/{channel_id}", response_model=ChannelResponse)
async def update_channel(channel_id: str, data: ChannelUpdate, service: ManagementService = Depends(get_service)):
    return await service.update_channel(channel_id, data)


@router.delete("/channels/{channel_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_channel(channel_id: str, service: ManagementService = Depends(get_service)):
    await service.delete_channel(channel_id)


# SIM endpoints

@router.get("/endpoints", response_model=List[EndpointResponse])
async def list_endpoints(service: ManagementService = Depends(get_service)):
    return await service.list_endpoints()


@router.post("/endpoints", response_model=EndpointResponse, status_code=status.HTTP_201_CREATED)
async def create_endpoint(data: EndpointCreate, service: ManagementService = Depends(get_service)):
    return await service.create_endpoint(data)


@router.get("/endpoints/{endpoint_id}", response_model=EndpointResponse)
async def get_endpoint(endpoint_id: str, service: ManagementService = Depends(get_service)):
    return await service.get_endpoint(endpoint_id)


@router.patch("/endpoints/{endpoint_id}", response_model=EndpointResponse)
async def update_endpoint(endpoint_id: str, data: EndpointUpdate, service: ManagementService = Depends(get_service)):
    return await service.update_endpoint(endpoint_id, data)


@router.delete("/endpoints/{endpoint_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_endpoint(endpoint_id: str, service: ManagementService = Depends(get_service)):
    await service.delete_endpoint(endpoint_id)
