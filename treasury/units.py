"""
Unit and display helpers.

USDC amounts live as integer minor units (6 implied decimals) everywhere past
the input edge. These helpers are the only place decimal strings are parsed or
produced.
"""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

USDC_DECIMALS = 6
MINOR_PER_UNIT = 10 ** USDC_DECIMALS
MAX_MINOR_UNITS = 2 ** 64 - 1

_AMOUNT_RE = re.compile(r"^\d+(\.\d*)?$|^\.\d+$")
_HEX_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

#: Integer amount scaled by 10**6
MinorUnits = int

#: Canonical wallet address (or other caller token)
Identity = str


class InvalidAmountError(ValueError):
    pass


def to_minor_units(value: Union[str, Decimal, int]) -> MinorUnits:
    if isinstance(value, bool):
        raise InvalidAmountError(f"Not an amount: {value!r}")
    if isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, Decimal):
        amount = value
    elif isinstance(value, str):
        text = value.strip()
        if not _AMOUNT_RE.match(text):
            raise InvalidAmountError(f"Not a decimal amount: {value!r}")
        try:
            amount = Decimal(text)
        except InvalidOperation:
            raise InvalidAmountError(f"Not a decimal amount: {value!r}")
    else:
        raise InvalidAmountError(f"Unsupported amount type: {type(value).__name__}")

    if not amount.is_finite() or amount < 0:
        raise InvalidAmountError(f"Amount must be a non-negative number, got {value!r}")
    if _fraction_digits(amount) > USDC_DECIMALS:
        raise InvalidAmountError(
            f"Amount {value!r} has more than {USDC_DECIMALS} fractional digits"
        )
    if amount * MINOR_PER_UNIT > MAX_MINOR_UNITS:
        raise InvalidAmountError(f"Amount {value!r} is out of range")
    # below 2**64 with at most 6 fractional digits the product is exact
    return int(amount * MINOR_PER_UNIT)


def _fraction_digits(amount: Decimal) -> int:
    _, digits, exponent = amount.as_tuple()
    digits = list(digits)
    while exponent < 0 and len(digits) > 1 and digits[-1] == 0:
        digits.pop()
        exponent += 1
    return max(0, -exponent)


def from_minor_units(minor: MinorUnits) -> Decimal:
    if minor < 0:
        raise InvalidAmountError(f"Minor units cannot be negative: {minor}")
    return (Decimal(minor) / MINOR_PER_UNIT).quantize(Decimal(1).scaleb(-USDC_DECIMALS))


def format_display(minor: MinorUnits, places: int = 2) -> str:
    """Render minor units the way the treasury card shows them, e.g. ``1,234.50``."""
    quantum = Decimal(1).scaleb(-places)
    value = from_minor_units(minor).quantize(quantum, rounding=ROUND_HALF_UP)
    return f"{value:,.{places}f}"


def canonical_identity(value: object) -> Identity:
    if value is None:
        return ""
    text = str(value).strip()
    if _HEX_ADDRESS_RE.match(text):
        return text.lower()
    return text


def is_bytes32_hex(value: str) -> bool:
    return bool(_BYTES32_RE.match(value or ""))


def short_identity(value: Identity) -> str:
    text = canonical_identity(value)
    if len(text) <= 10:
        return text
    return f"{text[:6]}…{text[-4:]}"


def short_hash(handle: str) -> str:
    if len(handle) <= 16:
        return handle
    return f"{handle[:10]}…{handle[-6:]}"


def explorer_url(base_url: str, handle: str) -> str:
    return f"{base_url.rstrip('/')}/{handle}"
