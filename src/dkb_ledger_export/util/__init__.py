from .dates import format_de_date, parse_de_date, parse_iso_date, parse_iso_timestamp
from .money import cents_to_money_str, decimal_str_to_cents, eu_money_to_cents, normalize_eu_amount

__all__ = [
    "format_de_date",
    "parse_de_date",
    "parse_iso_date",
    "parse_iso_timestamp",
    "cents_to_money_str",
    "decimal_str_to_cents",
    "eu_money_to_cents",
    "normalize_eu_amount",
]
