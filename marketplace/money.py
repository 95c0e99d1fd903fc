from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from marketplace.errors import ValidationError

CENT = Decimal("0.01")
MINIMUM_CHARGE = Decimal("0.50")

# Currencies Stripe charges in whole units
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})


def _as_decimal(amount) -> Decimal:
    if isinstance(amount, bool):
        raise ValidationError(f"Invalid amount: {amount!r}")
    if isinstance(amount, float):
        amount = str(amount)
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")
    return value


def _factor(currency: str) -> int:
    return 1 if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES else 100


def quantize(amount) -> Decimal:
    return _as_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount, currency: str = "usd") -> int:
    """Convert a decimal amount to the processor's integer minor units.

    Rounds half-up to the nearest minor unit; negative amounts are rejected.
    """
    value = _as_decimal(amount)
    if value < 0:
        raise ValidationError("Amount must not be negative")
    minor = (value * _factor(currency)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(minor)


def to_decimal(minor_units: int, currency: str = "usd") -> Decimal:
    if minor_units is None or int(minor_units) < 0:
        raise ValidationError(f"Invalid minor-unit amount: {minor_units!r}")
    return quantize(Decimal(int(minor_units)) / _factor(currency))


def validate_charge_amount(amount) -> Decimal:
    value = _as_decimal(amount)
    if value < MINIMUM_CHARGE:
        raise ValidationError("Amount must be at least 0.50")
    return quantize(value)
