from sqlalchemy import Column, String, DateTime, Text, Enum, ForeignKey, Uuid
import uuid
from datetime import datetime
from app.core.database import Base

DELIVERY_STATUSES = ("scheduled", "in_progress", "completed", "failed")


class Delivery(Base):
    __tablename__ = "deliveries"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(Uuid(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    agent_id = Column(Uuid(as_uuid=True), ForeignKey("agents.id"), nullable=True, index=True)
    address = Column(Text, nullable=False)
    scheduled_time = Column(DateTime, nullable=False, index=True)
    status = Column(Enum(*DELIVERY_STATUSES, name="delivery_status"), nullable=False, default="scheduled")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
