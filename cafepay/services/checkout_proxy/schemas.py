"""Request/response schemas for the checkout proxy endpoints.

Everything the browser (or the checkout client) sends is validated here before
the proxy makes any outbound call. Recording payloads use one canonical
snake_case shape; only `create-payment-intent` keeps its camelCase field names.
"""

from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer, model_validator

from cafepay.common.config import settings
from cafepay.common.money import quantize


def _identifier(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return value


Identifier = Annotated[str, BeforeValidator(_identifier), Field(min_length=1)]
Amount = Annotated[
    Decimal,
    PlainSerializer(lambda v: float(quantize(v)), return_type=float, when_used="json"),
]
Currency = Annotated[str, BeforeValidator(lambda v: v.upper() if isinstance(v, str) else v), Field(pattern=r"^[A-Z]{3}$")]
PaymentMethod = Literal["card", "apple_pay", "google_pay"]


class CreatePaymentIntentRequest(BaseModel):
    """Payload accepted by `POST /create-payment-intent`."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: Identifier = Field(alias="orderId")
    currency: Currency = settings.default_currency
    tip_amount: Amount = Field(default=Decimal("0"), alias="tipAmount", ge=0)
    automatic_payment_methods: bool = Field(default=False, alias="automaticPaymentMethods")


class PaymentIntentResponse(BaseModel):
    client_secret: str = Field(serialization_alias="clientSecret")
    payment_intent_id: str = Field(serialization_alias="paymentIntentId")
    amount: Amount
    currency: str


class ConfirmPaymentRequest(BaseModel):
    """Server-side confirmation of a card-element payment intent."""

    payment_intent_id: Identifier
    payment_method_id: Identifier
    order_id: Identifier
    payment_method: PaymentMethod = "card"
    amount: Amount = Field(ge=0)
    tip_amount: Amount = Field(default=Decimal("0"), ge=0)
    currency: Currency = settings.default_currency


class RecordPaymentRequest(BaseModel):
    """Payload accepted by `POST /`.

    `provider="stripe"` records an intent that was confirmed in the browser and
    requires `provider_payment_id`. `provider="ngenius"` asks the backend to
    open a hosted payment page.
    """

    order_id: Identifier
    payment_method: PaymentMethod
    amount: Amount = Field(ge=0)
    tip_amount: Amount = Field(default=Decimal("0"), ge=0)
    currency: Currency = settings.default_currency
    provider: Literal["stripe", "ngenius"] = "stripe"
    provider_payment_id: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    return_url: str | None = None

    @model_validator(mode="after")
    def _stripe_needs_intent(self) -> "RecordPaymentRequest":
        if self.provider == "stripe" and not self.provider_payment_id:
            raise ValueError("provider_payment_id is required for stripe payments")
        return self


class QClubPaymentRequest(BaseModel):
    order_id: int = Field(gt=0)
    amount: Amount = Field(gt=0)
    currency: Currency = settings.qclub_currency
    tip_amount: Amount = Field(default=Decimal("0"), ge=0)


class RefundRequest(BaseModel):
    payment_id: Identifier
    amount: Amount | None = Field(default=None, gt=0)
    reason: str | None = None
    currency: Currency = settings.default_currency
    provider_payment_id: str | None = None


class PaymentResult(BaseModel):
    """Uniform envelope returned for money-moving operations."""

    success: bool = True
    status: str | None = None
    data: dict[str, Any] | None = None
    warning: str | None = None
    redirect_url: str | None = None
