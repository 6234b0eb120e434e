"""Browser PushSubscription payloads for agent web push."""

from pydantic import BaseModel, Field


class PushKeys(BaseModel):
    p256dh: str = Field(min_length=1)
    auth: str = Field(min_length=1)


class PushSubscription(BaseModel):
    endpoint: str = Field(min_length=1)
    expirationTime: float | None = None
    keys: PushKeys


class PushSubscribeRequest(BaseModel):
    subscription: PushSubscription
