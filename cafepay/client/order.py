"""Order summary model as returned by the proxy's `GET /order/{order_id}`."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from cafepay.common.money import format_money


class LineItem(BaseModel):
    """One ordered product; `price` is the unit price."""

    product_id: str | int
    quantity: int = Field(ge=0)
    price: Decimal = Field(ge=0)

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


class Order(BaseModel):
    """Immutable snapshot of an order for the duration of a checkout."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str | int
    items: list[LineItem] = Field(default_factory=list)
    total_price: Decimal = Field(ge=0)
    customer_email: str | None = None
    customer_phone: str | None = None

    def summary_lines(self, symbol: str = "$") -> list[str]:
        if not self.items:
            return ["No items in order"]
        return [
            f"{item.product_id} x{item.quantity}  {format_money(item.line_total, symbol)}"
            for item in self.items
        ]
