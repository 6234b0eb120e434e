from sqlalchemy import Column, String, DateTime, Boolean, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB
import uuid
from datetime import datetime
from app.core.database import Base


class Agent(Base):
    __tablename__ = "agents"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    phone = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # Browser PushSubscription JSON ({endpoint, keys: {p256dh, auth}})
    push_subscription = Column(JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def room(self) -> str:
        """Real-time socket room scoped to this agent."""
        return f"agent_{self.id}"
