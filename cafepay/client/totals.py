"""Tip selection and charge total calculation.

The tip is either one of the preset percentages or a custom amount, never both.
Totals are derived on demand from the order subtotal and the selection so there
is no stored total that can drift from its inputs.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from cafepay.common.money import ZERO, format_money, quantize, to_decimal
from cafepay.common.tips import DEFAULT_TIP_PERCENT, TIP_PRESETS


def coerce_custom_tip(raw) -> Decimal:
    """Parse user tip input; anything negative, empty or non-numeric becomes 0."""

    if raw is None or isinstance(raw, bool):
        return ZERO
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return ZERO
    if not value.is_finite() or value < 0:
        return ZERO
    return value


@dataclass
class TipSelection:
    """Mutually exclusive preset-percentage or custom tip."""

    percent: int | None = DEFAULT_TIP_PERCENT
    custom: Decimal = ZERO

    def select_percent(self, percent: int) -> None:
        if percent not in TIP_PRESETS:
            raise ValueError(f"unsupported tip preset: {percent}")
        self.percent = percent
        self.custom = ZERO

    def set_custom(self, raw) -> None:
        # Typing in the custom field always deactivates the preset buttons.
        self.custom = coerce_custom_tip(raw)
        self.percent = None

    def reset(self) -> None:
        self.percent = DEFAULT_TIP_PERCENT
        self.custom = ZERO

    def tip_for(self, subtotal: Decimal) -> Decimal:
        if self.custom > 0:
            return self.custom
        return to_decimal(subtotal) * (self.percent or 0) / 100


@dataclass(frozen=True)
class ChargeBreakdown:
    """Full-precision subtotal/tip/total for one selection."""

    subtotal: Decimal
    tip: Decimal
    total: Decimal

    def rounded(self) -> "ChargeBreakdown":
        return ChargeBreakdown(quantize(self.subtotal), quantize(self.tip), quantize(self.total))

    def display(self, symbol: str = "$") -> dict[str, str]:
        return {
            "subtotal": format_money(self.subtotal, symbol),
            "tip": format_money(self.tip, symbol),
            "total": format_money(self.total, symbol),
        }


def compute_charge(subtotal, selection: TipSelection) -> ChargeBreakdown:
    """Derive tip and total; raises only for a negative subtotal."""

    subtotal = to_decimal(subtotal)
    if subtotal < 0:
        raise ValueError("subtotal must not be negative")
    tip = selection.tip_for(subtotal)
    return ChargeBreakdown(subtotal=subtotal, tip=tip, total=subtotal + tip)
