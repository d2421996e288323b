"""
Forwarding rule and rule-destination domain models and schemas.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    Column, String, DateTime, Integer, Boolean, JSON, Text, ForeignKey, UniqueConstraint
)
from pydantic import BaseModel, Field

from app.domain.message import Base
from app.utils.time import utcnow


class ForwardRule(Base):
    """SQLAlchemy model for forwarding rules."""

    __tablename__ = "forward_rules"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    is_enabled = Column(Boolean, default=True)
    priority = Column(Integer, nullable=False, default=100)  # Lower runs first
    filters = Column(JSON, default=dict)
    stop_processing = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<ForwardRule(id={self.id}, name={self.name}, priority={self.priority})>"


class RuleDestination(Base):
    """SQLAlchemy model joining a rule to a channel."""

    __tablename__ = "rule_destinations"
    __table_args__ = (
        UniqueConstraint("rule_id", "channel_id", name="uq_rule_destination_pair"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    rule_id = Column(String(36), ForeignKey("forward_rules.id"), nullable=False, index=True)
    channel_id = Column(String(36), ForeignKey("destination_channels.id"), nullable=False, index=True)
    is_enabled = Column(Boolean, default=True)
    override_text_template = Column(Text, nullable=True)
    action_config = Column(JSON, default=dict)
    position = Column(Integer, nullable=False, default=0)  # Insertion order
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<RuleDestination(rule={self.rule_id}, channel={self.channel_id})>"


# Pydantic Schemas

class RuleCreate(BaseModel):
    """Schema for creating a rule."""
    name: str = Field(..., min_length=1, max_length=255)
    is_enabled: bool = True
    priority: int = 100
    filters: Dict[str, Any] = Field(default_factory=dict)
    stop_processing: bool = False


class RuleUpdate(BaseModel):
    """Schema for updating a rule."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    is_enabled: Optional[bool] = None
    priority: Optional[int] = None
    filters: Optional[Dict[str, Any]] = None
    stop_processing: Optional[bool] = None


class RuleResponse(BaseModel):
    """Schema for rule response."""
    id: str
    name: str
    is_enabled: bool
    priority: int
    filters: Dict[str, Any]
    stop_processing: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RuleDestinationCreate(BaseModel):
    """Schema for wiring a channel to a rule."""
    channel_id: str
    is_enabled: bool = True
    override_text_template: Optional[str] = None
    action_config: Dict[str, Any] = Field(default_factory=dict)


class RuleDestinationUpdate(BaseModel):
    """Schema for updating a rule destination."""
    is_enabled: Optional[bool] = None
    override_text_template: Optional[str] = None
    action_config: Optional[Dict[str, Any]] = None


class RuleDestinationResponse(BaseModel):
    """Schema for rule destination response."""
    id: str
    rule_id: str
    channel_id: str
    is_enabled: bool
    override_text_template: Optional[str]
    action_config: Dict[str, Any]

    class Config:
        from_attributes = True
