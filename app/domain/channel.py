"""
Destination channel domain model and schemas.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import Column, String, DateTime, Boolean, JSON, Enum as SQLEnum
from pydantic import BaseModel, Field

from app.domain.message import Base
from app.utils.time import utcnow


class ChannelType(str, Enum):
    """Channel type enumeration."""
    SMS = "sms"
    TELEGRAM = "telegram"
    WEBHOOK = "webhook"
    EMAIL = "email"


# Config keys each channel type cannot work without
REQUIRED_CONFIG_KEYS = {
    ChannelType.TELEGRAM: ("chat_id",),
    ChannelType.WEBHOOK: ("url",),
    ChannelType.EMAIL: ("email",),
    ChannelType.SMS: ("to_number",),
}


def missing_config_keys(channel_type: ChannelType, config: Optional[Dict[str, Any]]) -> list:
    """Return the required config keys that are absent or blank."""
    config = config or {}
    missing = []
    for key in REQUIRED_CONFIG_KEYS.get(channel_type, ()):
        value = config.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(key)
    return missing


class DestinationChannel(Base):
    """SQLAlchemy model for destination channels."""

    __tablename__ = "destination_channels"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    type = Column(SQLEnum(ChannelType), nullable=False)
    name = Column(String(255), nullable=False)
    is_enabled = Column(Boolean, default=True)
    config = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<DestinationChannel(id={self.id}, type={self.type}, name={self.name})>"


# Pydantic Schemas

class ChannelCreate(BaseModel):
    """Schema for creating a channel."""
    type: ChannelType
    name: str = Field(..., min_length=1, max_length=255)
    is_enabled: bool = True
    config: Dict[str, Any] = Field(default_factory=dict)


class ChannelUpdate(BaseModel):
    """Schema for updating a channel."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    is_enabled: Optional[bool] = None
    config: Optional[Dict[str, Any]] = None


class ChannelResponse(BaseModel):
    """Schema for channel response."""
    id: str
    type: ChannelType
    name: str
    is_enabled: bool
    config: Dict[str, Any]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
