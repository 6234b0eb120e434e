from sqlalchemy import Column, String, DateTime, Integer, Enum, ForeignKey, Index, Uuid, text
import uuid
from datetime import datetime
from app.core.database import Base

CALL_STATUSES = ("queued", "initiated", "ringing", "answered", "completed", "no-answer", "busy", "failed")
ACTIVE_CALL_STATUSES = ("queued", "initiated", "ringing", "answered")
TERMINAL_CALL_STATUSES = ("completed", "no-answer", "busy", "failed")

# Monotonic rank; a status may only move to a strictly higher rank.
CALL_STATUS_RANK = {
    "queued": 0,
    "initiated": 1,
    "ringing": 2,
    "answered": 3,
    "completed": 4,
    "no-answer": 4,
    "busy": 4,
    "failed": 4,
}

_ACTIVE_PREDICATE = text("status IN ('queued', 'initiated', 'ringing', 'answered')")


class CallLog(Base):
    __tablename__ = "call_logs"
    __table_args__ = (
        # At most one live call leg per delivery
        Index(
            "uq_call_logs_active_delivery",
            "delivery_id",
            unique=True,
            postgresql_where=_ACTIVE_PREDICATE,
            sqlite_where=_ACTIVE_PREDICATE,
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    delivery_id = Column(Uuid(as_uuid=True), ForeignKey("deliveries.id"), nullable=False, index=True)
    call_sid = Column(String, unique=True, nullable=True)   # Twilio CallSid
    status = Column(Enum(*CALL_STATUSES, name="call_log_status"), nullable=False, default="queued")
    duration = Column(Integer, nullable=True)
    recording_url = Column(String, nullable=True)   # Provider URL as reported by the webhook

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CALL_STATUSES
