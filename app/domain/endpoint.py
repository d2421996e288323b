"""
SIM endpoint model for gateways that post inbound messages.
"""

import secrets
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, String, DateTime, Boolean
from pydantic import BaseModel, Field

from app.domain.message import Base
from app.utils.time import utcnow


def generate_api_token() -> str:
    """Generate a fresh gateway API token."""
    return f"sk_live_{secrets.token_urlsafe(18)}"


class SimEndpoint(Base):
    """SQLAlchemy model for SIM gateway endpoints."""

    __tablename__ = "sim_endpoints"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    phone_number = Column(String(32), nullable=False)
    imei = Column(String(32), nullable=True)
    api_token = Column(String(128), nullable=True)
    is_enabled = Column(Boolean, default=True)
    last_seen_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<SimEndpoint(id={self.id}, phone={self.phone_number})>"


# Pydantic Schemas

class EndpointCreate(BaseModel):
    """Schema for registering a SIM endpoint."""
    id: Optional[str] = Field(None, min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    phone_number: str = Field(..., min_length=1, max_length=32)
    imei: Optional[str] = Field(None, max_length=32)
    api_token: Optional[str] = Field(None, min_length=8, max_length=128)
    is_enabled: bool = True


class EndpointUpdate(BaseModel):
    """Schema for updating a SIM endpoint."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    phone_number: Optional[str] = Field(None, min_length=1, max_length=32)
    imei: Optional[str] = Field(None, max_length=32)
    api_token: Optional[str] = Field(None, min_length=8, max_length=128)
    is_enabled: Optional[bool] = None


class EndpointResponse(BaseModel):
    """Schema for SIM endpoint response."""
    id: str
    name: str
    phone_number: str
    imei: Optional[str]
    api_token: Optional[str]
    is_enabled: bool
    last_seen_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True
