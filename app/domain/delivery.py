"""
Delivery attempt domain model, dispatch outcome types and schemas.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Column, String, DateTime, Integer, JSON, Text, UniqueConstraint, Enum as SQLEnum
)
from pydantic import BaseModel

from app.domain.message import Base
from app.utils.time import utcnow


class DeliveryStatus(str, Enum):
    """Delivery attempt status enumeration."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class DispatchErrorKind(str, Enum):
    """Failure taxonomy for channel dispatch."""
    CONFIG_INVALID = "config_invalid"
    TIMEOUT = "timeout"
    PROVIDER_REJECTED = "provider_rejected"
    RETRY_EXHAUSTED = "retry_exhausted"


class DispatchError(Exception):
    """Raised by channel senders when a message could not be delivered."""

    def __init__(self, kind: DispatchErrorKind, detail: str, retryable: Optional[bool] = None):
        super().__init__(detail)
        self.kind = kind
        self.detail = detail
        if retryable is None:
            retryable = kind == DispatchErrorKind.TIMEOUT
        self.retryable = retryable

    @classmethod
    def config_invalid(cls, detail: str) -> "DispatchError":
        return cls(DispatchErrorKind.CONFIG_INVALID, detail, retryable=False)

    @classmethod
    def timeout(cls, detail: str) -> "DispatchError":
        return cls(DispatchErrorKind.TIMEOUT, detail, retryable=True)

    @classmethod
    def rejected(cls, detail: str, status_code: Optional[int] = None) -> "DispatchError":
        """
        Provider rejection, classified by status code.

        5xx, 408 and 429 are transient; other 4xx are permanent. Without a
        status code the rejection is treated as transient.
        """
        if status_code is None:
            retryable = True
        else:
            retryable = status_code >= 500 or status_code in (408, 429)
        return cls(DispatchErrorKind.PROVIDER_REJECTED, detail, retryable=retryable)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}"


@dataclass
class DispatchResult:
    """Outcome of one dispatch call: a provider id or an error."""
    provider_message_id: Optional[str] = None
    error: Optional[DispatchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DeliveryAttempt(Base):
    """SQLAlchemy model for one (message, rule, channel) delivery lifecycle."""

    __tablename__ = "delivery_attempts"
    __table_args__ = (
        UniqueConstraint("message_id", "rule_id", "channel_id", name="uq_delivery_triple"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    message_id = Column(String(36), nullable=False, index=True)
    rule_id = Column(String(36), nullable=False, index=True)
    channel_id = Column(String(36), nullable=False, index=True)
    status = Column(SQLEnum(DeliveryStatus), default=DeliveryStatus.PENDING, index=True)
    provider_message_id = Column(String(255), nullable=True)
    error = Column(Text, nullable=True)
    error_kind = Column(SQLEnum(DispatchErrorKind), nullable=True)
    last_attempt_at = Column(DateTime, nullable=True, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True)
    # Snapshot of what was sent, so retries resend the same content
    rendered_text = Column(Text, nullable=True)
    action_config = Column(JSON, default=dict)
    # Optimistic lock + lease guarding against duplicate retry execution
    version = Column(Integer, nullable=False, default=0)
    lease_until = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<DeliveryAttempt(id={self.id}, status={self.status}, retries={self.retry_count})>"


# Pydantic Schemas

class DeliveryAttemptResponse(BaseModel):
    """Schema for delivery history rows."""
    id: str
    message_id: str
    rule_id: str
    channel_id: str
    status: DeliveryStatus
    provider_message_id: Optional[str]
    error: Optional[str]
    error_kind: Optional[DispatchErrorKind]
    last_attempt_at: Optional[datetime]
    retry_count: int
    next_retry_at: Optional[datetime]
    rule_name: Optional[str] = None
    channel_name: Optional[str] = None
    message_content: Optional[str] = None

    class Config:
        from_attributes = True


class DeliveryListResponse(BaseModel):
    """Paged list of delivery attempts."""
    total: int
    items: List[DeliveryAttemptResponse]


class ScheduledJob(BaseModel):
    """A queued retry job."""
    id: str
    name: str
    next_run: Optional[str]


class SchedulerStatus(BaseModel):
    """Retry queue status."""
    running: bool
    jobs_count: int
    jobs: List[ScheduledJob]
