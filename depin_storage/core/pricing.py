"""
Token amount calculations.

All amounts that reach the chain are integers in the token's base units.
Decimal arithmetic only; floats never touch a price.
"""

from decimal import Decimal, ROUND_UP, localcontext

# Precision assumed when the token contract cannot report its own
DEFAULT_TOKEN_DECIMALS = 18

# Enough digits for a uint256 amount
_PRECISION = 100


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a token amount to base units with conservative rounding.

    Args:
        amount: Amount in whole tokens
        decimals: Token decimal precision

    Returns:
        Integer base units, rounded UP to the smallest unit

    Raises:
        ValueError: If amount is negative or decimals out of range
    """
    if amount < 0:
        raise ValueError("amount must be >= 0")
    if decimals < 0 or decimals > 77:
        raise ValueError(f"Unsupported token decimals: {decimals}")

    with localcontext() as ctx:
        ctx.prec = _PRECISION
        scaled = Decimal(amount).scaleb(decimals)
        return int(scaled.to_integral_value(rounding=ROUND_UP))


def required_tokens(price_per_gb: Decimal, gb: int, decimals: int) -> int:
    """Cost in token base units of ``gb`` gigabytes at ``price_per_gb``."""
    if isinstance(gb, bool) or not isinstance(gb, int) or gb <= 0:
        raise ValueError("gb must be a positive integer")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        total = Decimal(price_per_gb) * gb
    return to_base_units(total, decimals)


def format_units(amount: int, decimals: int) -> str:
    """Render base units as a plain token amount without trailing zeros."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        value = Decimal(amount).scaleb(-decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
