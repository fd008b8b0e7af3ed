from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from ..errors import AmountParseError


_PLAIN_DECIMAL_RE = re.compile(r"^[-+]?\d+(?:\.\d+)?$")
_CENT = Decimal("0.01")


def normalize_eu_amount(value: str) -> Decimal:
    """
    Parse amounts as rendered by the German web banking, e.g.:
    - "1.234,56"
    - "-12,00"
    - "+0,37"

    All "." are thousands separators and "," is the decimal separator. Anything that is not a plain
    signed decimal after normalization raises AmountParseError; nothing is ever coerced to zero.
    """
    if value is None:
        raise AmountParseError("amount is None")

    s = value.strip().replace("\xa0", "").replace(" ", "")
    if not s:
        raise AmountParseError("empty amount")

    s = s.replace(".", "").replace(",", ".")
    if not _PLAIN_DECIMAL_RE.match(s):
        raise AmountParseError(f"not a number after normalization: {value!r}")
    return Decimal(s)


def _exact_cents(dec: Decimal, value: object) -> int:
    # Trailing zeros ("1,500") are exact; sub-cent digits are refused, never rounded.
    try:
        cents = dec.quantize(_CENT)
    except InvalidOperation as e:
        raise AmountParseError(f"amount out of range: {value!r}") from e
    if dec != cents:
        raise AmountParseError(f"more than two decimal places: {value!r}")
    return int(cents * 100)


def eu_money_to_cents(value: str) -> int:
    return _exact_cents(normalize_eu_amount(value), value)


def decimal_str_to_cents(value: object) -> int:
    """
    Convert an API amount ("-12.34", 12.5, Decimal) into integer cents. Sub-cent precision raises.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise AmountParseError("empty amount")
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise AmountParseError(f"not a number: {value!r}") from e
    if not dec.is_finite():
        raise AmountParseError(f"not a finite number: {value!r}")
    return _exact_cents(dec, value)


def cents_to_money_str(cents: int, currency: str = "EUR") -> str:
    dec = (Decimal(cents) / 100).quantize(Decimal("0.01"))
    return f"{dec:,.2f} {currency}".strip()


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))
