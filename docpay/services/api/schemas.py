"""Request/response schemas specific to the HTTP surface."""

from pydantic import BaseModel, Field

from docpay.services.orders.schemas import OrderResponse


class AdminStatusUpdate(BaseModel):
    """Payload accepted by `PUT /admin/orders/{order_id}/status`."""

    status: str = Field(min_length=1)
    notes: str | None = None
    payment_status: str | None = None


class SyncSummaryResponse(BaseModel):
    checked: int
    updated: int
    errors: list[str]


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    sync: SyncSummaryResponse


class PaymentCheckResponse(BaseModel):
    """Result of one payment status sweep."""

    checked: int
    updated: int
    errors: int
    details: list[dict]
