"""One provider payment attempt and the outcome of submitting it."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import uuid4

from cafepay.common.logging import logger
from cafepay.common.state_machine import CREATED, is_terminal, validate_transition


@dataclass
class PaymentSession:
    """An in-flight attempt with one provider.

    `amount` is the rounded charge total at creation time and never changes;
    a different total needs a new session.
    """

    variant: str
    order_id: str
    payment_method: str
    amount: Decimal
    tip_amount: Decimal
    currency: str
    provider_ref: str
    generation: int
    client_secret: str | None = None
    redirect_url: str | None = None
    payment_id: str | None = None
    status: str = CREATED
    failure_reason: str | None = None
    session_id: str = field(default_factory=lambda: uuid4().hex)

    def transition(self, new_status: str) -> None:
        validate_transition(self.status, new_status)
        logger.info(
            "payment_session_transition session=%s ref=%s %s->%s",
            self.session_id,
            self.provider_ref,
            self.status,
            new_status,
        )
        self.status = new_status

    @property
    def subtotal(self) -> Decimal:
        return self.amount - self.tip_amount

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)


@dataclass
class SubmitOutcome:
    """What happened when a session was submitted.

    `status` is `completed`, `authorized`, `redirect` (the customer must finish
    on a provider page) or `processing` (reconcile later).
    """

    status: str
    data: dict[str, Any] = field(default_factory=dict)
    warning: str | None = None
    redirect_url: str | None = None
