"""Money helpers. Amounts are stored as integer gwei (1 ETH = 10**9 gwei)."""
from decimal import Decimal, InvalidOperation
from typing import Union

from web3 import Web3

GWEI_PER_ETH = 10**9

Number = Union[str, int, Decimal]


def eth_to_gwei(amount: Number) -> int:
    """Convert a decimal ETH amount to integer gwei.

    Raises ValueError for non-numeric input or precision finer than one gwei.
    """
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    gwei = value * GWEI_PER_ETH
    if gwei != gwei.to_integral_value():
        raise ValueError("Amount has more precision than 1 gwei")
    return int(gwei)


def gwei_to_eth(amount: int) -> str:
    """Render integer gwei as a plain decimal ETH string."""
    value = Decimal(amount) / GWEI_PER_ETH
    text = format(value.normalize(), "f")
    return text


def gwei_to_wei(amount: int) -> int:
    return Web3.to_wei(amount, "gwei")
