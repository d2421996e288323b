"""
Incoming message domain model and schemas.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, String, DateTime, Boolean, JSON, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base
from pydantic import BaseModel, Field

from app.utils.time import utcnow

Base = declarative_base()


class IncomingMessage(Base):
    """SQLAlchemy model for messages received from SIM endpoints."""

    __tablename__ = "incoming_messages"
    __table_args__ = (
        UniqueConstraint("endpoint_id", "idempotency_key", name="uq_message_endpoint_key"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    endpoint_id = Column(String(64), nullable=False, index=True)
    from_number = Column(String(32), nullable=False)
    to_number = Column(String(32), nullable=False)
    body = Column(Text, nullable=False, default="")
    received_at = Column(DateTime, default=utcnow, index=True)
    raw_payload = Column(JSON, default=dict)
    processed = Column(Boolean, default=False, index=True)
    # Supplied by the gateway to make re-posting the same message a no-op;
    # scoped to the endpoint
    idempotency_key = Column(String(128), nullable=True)

    def __repr__(self) -> str:
        return f"<IncomingMessage(id={self.id}, endpoint={self.endpoint_id}, processed={self.processed})>"


# Pydantic Schemas

class IngestRequest(BaseModel):
    """Schema for a message posted by a SIM gateway."""
    endpoint_id: str = Field(..., min_length=1, max_length=64)
    from_number: str = Field(..., min_length=1, max_length=32)
    to_number: str = Field(..., min_length=1, max_length=32)
    body: str = ""
    raw_payload: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=128)


class IngestResponse(BaseModel):
    """Schema for the ingestion acknowledgement."""
    id: str


class MessageResponse(BaseModel):
    """Schema for message response."""
    id: str
    endpoint_id: str
    from_number: str
    to_number: str
    body: str
    received_at: datetime
    raw_payload: Dict[str, Any]
    processed: bool

    class Config:
        from_attributes = True


class TrafficPoint(BaseModel):
    """One hourly bucket of the SMS traffic chart."""
    time: datetime
    sms_count: int


class MessageListResponse(BaseModel):
    """Paged list of messages."""
    total: int
    items: List[MessageResponse]
