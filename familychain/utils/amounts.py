"""
Fixed-point token amount helpers.

Every on-ledger amount is an integer in base units. Conversions to
human-readable values go through Decimal and never through float.
"""

from decimal import Decimal, ROUND_DOWN, localcontext
from typing import Union


UINT256_MAX = 2 ** 256 - 1


def convert_units(amount: int, from_decimals: int, to_decimals: int) -> int:
    """
    Rescale a base-unit amount between two decimal precisions.

    Scaling down floors toward zero so a payout never exceeds the reward.
    """
    if amount < 0:
        raise ValueError("Amount cannot be negative")
    if from_decimals == to_decimals:
        return amount
    if to_decimals > from_decimals:
        return amount * 10 ** (to_decimals - from_decimals)
    return amount // 10 ** (from_decimals - to_decimals)


def format_units(amount: int, decimals: int) -> Decimal:
    """Base units -> Decimal token value, e.g. 1500000000000000000, 18 -> 1.5."""
    with localcontext() as ctx:
        ctx.prec = 90
        return Decimal(amount) / (Decimal(10) ** decimals)


def parse_units(value: Union[int, str, Decimal], decimals: int) -> int:
    """Token value -> base units, truncating digits beyond the precision."""
    with localcontext() as ctx:
        ctx.prec = 90
        scaled = (Decimal(str(value)) * (Decimal(10) ** decimals)).quantize(
            Decimal(1), rounding=ROUND_DOWN
        )
    result = int(scaled)
    if result < 0 or result > UINT256_MAX:
        raise ValueError(f"Amount out of uint256 range: {value}")
    return result


def format_token_amount(amount: int, decimals: int, symbol: str = "FCT") -> str:
    """Display helper used by the CLI."""
    value = format_units(amount, decimals).normalize()
    if value == value.to_integral():
        value = value.quantize(Decimal(1))
    return f"{value:f} {symbol}"
