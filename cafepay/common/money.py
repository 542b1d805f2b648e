"""Decimal money helpers shared by the proxy and the checkout client.

Amounts are carried as `Decimal` at full precision and only rounded to currency
precision when displayed or sent to a provider/backend.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")
ZERO = Decimal("0")

# Stripe charges these in whole units rather than hundredths.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)


def to_decimal(value) -> Decimal:
    """Convert a JSON number/string to Decimal without float artifacts."""

    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"not a decimal amount: {value!r}") from exc


def quantize(amount: Decimal) -> Decimal:
    """Round to two decimals, half-up, for display and transmission."""

    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Provider amount in the currency's smallest unit (cents for USD)."""

    rounded = quantize(amount)
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(rounded.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((rounded * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return (Decimal(amount) / 100).quantize(CENT)


def format_money(amount: Decimal, symbol: str = "$") -> str:
    return f"{symbol}{quantize(amount)}"
