from __future__ import annotations

import re
from datetime import date, datetime, timezone

from dateutil import parser as date_parser


_DE_DATE_RE = re.compile(r"^\d{1,2}\.\d{1,2}\.\d{4}$")


def parse_de_date(value: str) -> date:
    """
    Parse dates like:
    - "26.12.2025"
    - "01.02.2024"
    """
    if value is None:
        raise ValueError("parse_de_date: value is None")
    s = value.strip()
    if not s:
        raise ValueError("parse_de_date: empty string")
    if not _DE_DATE_RE.match(s):
        raise ValueError(f"parse_de_date: expected DD.MM.YYYY, got {value!r}")
    dt = date_parser.parse(s, dayfirst=True, yearfirst=False)
    return dt.date()


def format_de_date(d: date) -> str:
    return d.strftime("%d.%m.%Y")


def parse_iso_timestamp(value: str) -> datetime:
    """
    Parse API timestamps ("2023-04-01T10:11:12.123Z"). Naive values are taken as UTC so they stay comparable.
    """
    if not value or not str(value).strip():
        raise ValueError("parse_iso_timestamp: empty string")
    dt = date_parser.isoparse(str(value).strip())
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_date(value: str) -> date:
    if not value or not str(value).strip():
        raise ValueError("parse_iso_date: empty string")
    return date_parser.isoparse(str(value).strip()).date()
