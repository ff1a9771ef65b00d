"""Request and response schemas shared by the API and the webhook payloads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt


class LoginRequest(BaseModel):
    """Body accepted by `POST /api/v1/login`; presence is checked by the service."""

    email: str | None = None
    secret: str | None = None


class OrderCreateRequest(BaseModel):
    """Body accepted by `POST /api/v1/orders`."""

    amount: StrictInt
    currency: str = Field(default="INR", min_length=3, max_length=3)
    receipt: str | None = None
    notes: dict[str, Any] | None = None


class CardDetails(BaseModel):
    number: str
    expiry_month: str | int
    expiry_year: str | int
    cvv: str | None = None
    holder_name: str | None = None


class PaymentCreateRequest(BaseModel):
    """Body accepted by `POST /api/v1/payments` and its public variant."""

    order_id: str = Field(min_length=1)
    method: str
    vpa: str | None = None
    card: CardDetails | None = None


class RefundCreateRequest(BaseModel):
    amount: StrictInt = Field(gt=0)
    reason: str | None = None


class MerchantResponse(BaseModel):
    """Merchant profile without signing or API secrets."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    api_key: str
    webhook_url: str | None = None
    created_at: datetime | None = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    merchant_id: str
    amount: int
    currency: str
    receipt: str | None = None
    notes: dict[str, Any] | None = None
    status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PublicOrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    merchant_id: str
    amount: int
    currency: str
    status: str


class PaymentResponse(BaseModel):
    """Payment snapshot returned by the API and embedded in webhook events."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    merchant_id: str
    amount: int
    currency: str
    method: str
    status: str
    captured: bool
    vpa: str | None = None
    card_network: str | None = None
    card_last4: str | None = None
    error_code: str | None = None
    error_description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    payment_id: str
    merchant_id: str
    amount: int
    reason: str | None = None
    status: str
    created_at: datetime | None = None
    processed_at: datetime | None = None


class WebhookLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    merchant_id: str
    event: str
    payload: dict[str, Any]
    status: str
    attempts: int
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    response_code: int | None = None
    response_body: str | None = None
    created_at: datetime | None = None


def dump(schema: type[BaseModel], obj: Any) -> dict[str, Any]:
    """Serialize an ORM row through `schema` into JSON-safe primitives."""

    return schema.model_validate(obj).model_dump(mode="json")
