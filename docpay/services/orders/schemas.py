"""Order enums and API schemas."""

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class ServiceType(StrEnum):
    PROTEST_QUERY = "PROTEST_QUERY"
    CERTIFICATE_REQUEST = "CERTIFICATE_REQUEST"


class DocumentType(StrEnum):
    CPF = "CPF"
    CNPJ = "CNPJ"


class PaymentMethod(StrEnum):
    PIX = "PIX"
    CREDIT_CARD = "CREDIT_CARD"
    BOLETO = "BOLETO"


class OrderCreateRequest(BaseModel):
    """Order creation payload accepted from the storefront."""

    service_type: ServiceType
    document_number: str = Field(min_length=11)
    amount: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    payment_method: PaymentMethod


class PaymentAttachRequest(BaseModel):
    """Provider customer and charge details used to open the payment."""

    customer_id: str = Field(min_length=1)
    due_date: date | None = None
    description: str | None = None


class OrderResponse(BaseModel):
    """Order view returned to customers and admins."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    order_number: str
    service_type: str
    document_number: str
    document_type: str
    amount: Decimal
    payment_method: str
    provider_payment_id: str | None
    status: str
    payment_status: str
    paid_at: datetime | None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class OrderHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    previous_status: str | None
    new_status: str
    changed_by_id: str | None
    notes: str | None
    meta: dict
    changed_at: datetime | None = None
