"""Durable pipeline job rows (owned by the job queue)."""

from sqlalchemy import Column, String, Integer, Float, Text, DateTime, Enum, JSON, Index, Uuid
from sqlalchemy.dialects.postgresql import JSONB
import uuid
from datetime import datetime
from app.core.database import Base

JOB_KINDS = ("initiate-call", "process-recording", "process-transcription")
JOB_STATUSES = ("pending", "active", "completed", "failed")


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_kind_status_available", "kind", "status", "available_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    kind = Column(String, nullable=False)
    payload = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)
    status = Column(Enum(*JOB_STATUSES, name="job_status"), nullable=False, default="pending", index=True)

    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_seconds = Column(Float, nullable=False, default=5.0)
    stalled_count = Column(Integer, nullable=False, default=0)

    available_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    lease_expires_at = Column(DateTime, nullable=True)
    worker_id = Column(String, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)
