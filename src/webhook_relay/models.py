from typing import Any

from pydantic import BaseModel, Field, HttpUrl

from webhook_relay.store import DeliveryLog, Subscription


class SubscriptionRequest(BaseModel):
    name: str = Field(min_length=1)
    url: HttpUrl
    events: list[str] = Field(min_length=1)
    is_active: bool = True
    secret_key: str | None = None


class SubscriptionResponse(BaseModel):
    id: str
    name: str
    url: str
    events: list[str]
    is_active: bool
    has_secret: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            name=subscription.name,
            url=subscription.url,
            events=subscription.events,
            is_active=subscription.is_active,
            has_secret=subscription.secret_key is not None,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )


class DeliveryLogResponse(BaseModel):
    id: str
    webhook_id: str
    event_type: str
    payload: dict[str, Any]
    response_status: int | None
    response_body: str | None
    error_message: str | None
    is_success: bool
    created_at: str

    @classmethod
    def from_log(cls, log: DeliveryLog) -> "DeliveryLogResponse":
        return cls(**log.__dict__)


class ReconciliationResponse(BaseModel):
    received: bool = True
    status: str
    message: str
    processing_time_ms: int


class GatewayStatusResponse(BaseModel):
    configured: bool
    environment: str
    has_webhook_secret: bool
    notification_path: str
