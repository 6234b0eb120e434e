from sqlalchemy import Column, String, DateTime, Text, Integer, Boolean, JSON, ForeignKey, Uuid
from sqlalchemy.dialects.postgresql import JSONB
import uuid
from datetime import datetime
from app.core.database import Base


class Recording(Base):
    __tablename__ = "recordings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    call_log_id = Column(Uuid(as_uuid=True), ForeignKey("call_logs.id"), unique=True, nullable=False)

    # Written once at creation; never updated afterwards
    audio_url = Column(String, nullable=False)
    audio_durable = Column(Boolean, nullable=False, default=False)
    provider_recording_url = Column(String, nullable=True)
    duration = Column(Integer, nullable=True)

    transcript = Column(Text, nullable=True)
    transcript_source = Column(String, nullable=True)   # speech | provider
    transcription_error = Column(Text, nullable=True)

    intent = Column(JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql"), nullable=True)
    intent_source = Column(String, nullable=True)   # analysis | fallback

    notified_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
