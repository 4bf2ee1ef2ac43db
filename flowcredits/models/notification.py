"""
Notification Delivery Model

Tracks outbound balance alert deliveries.
"""
import uuid
from sqlalchemy import Column, String, Integer, DateTime, Text
from flowcredits.models.base import Base, utcnow


class NotificationDelivery(Base):
    """Alert notification delivery tracking."""
    __tablename__ = "notification_deliveries"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, index=True)
    alert_type = Column(String(40), nullable=False)
    url = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending, delivered, failed
    attempts = Column(Integer, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    response_code = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
