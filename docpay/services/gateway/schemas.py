"""Typed payloads exchanged with the payment provider."""

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class ProviderPayment(BaseModel):
    """Subset of the provider payment object the reconciler relies on."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    status: str
    value: Decimal | None = None
    customer: str | None = None
    billing_type: str | None = Field(default=None, alias="billingType")
    due_date: date | None = Field(default=None, alias="dueDate")
    external_reference: str | None = Field(default=None, alias="externalReference")
    invoice_url: str | None = Field(default=None, alias="invoiceUrl")


class CreatePaymentRequest(BaseModel):
    """Body sent to the provider to open a charge."""

    model_config = ConfigDict(populate_by_name=True)

    customer: str = Field(min_length=1)
    billing_type: str = Field(alias="billingType")
    value: Decimal = Field(gt=0)
    due_date: date = Field(alias="dueDate")
    description: str | None = None
    external_reference: str | None = Field(default=None, alias="externalReference")

    @field_serializer("value")
    def _value_as_number(self, value: Decimal) -> float:
        # Provider expects a JSON number, not pydantic's default decimal string.
        return float(value)
