from __future__ import annotations

import csv
import re
from datetime import date
from pathlib import Path
from typing import Iterable, Union

from .models import AccountSummary, LedgerBatch, TransactionRecord
from .util.money import cents_to_decimal


LEDGER_CSV_COLUMNS = [
    "account",
    "booking_date",
    "value_date",
    "amount",
    "currency",
    "counterpart",
    "purpose",
    "posting_text",
    "references",
]


def export_filename(account: AccountSummary, date_from: date, date_to: date) -> str:
    ident = re.sub(r"[^A-Za-z0-9]+", "", account.identifier) or "account"
    return f"{account.kind.value}_{ident}_{date_from.isoformat()}_{date_to.isoformat()}.csv"


def _row(record: TransactionRecord) -> list[str]:
    refs = " ".join(f"{k}={v}" for k, v in sorted(record.reference_codes.items()))
    return [
        record.account_identifier,
        record.booking_date.isoformat(),
        record.value_date.isoformat() if record.value_date else "",
        str(cents_to_decimal(record.amount_cents)),
        record.currency,
        record.counterpart,
        record.purpose_text,
        record.posting_text,
        refs,
    ]


def write_ledger_csv(records: Iterable[TransactionRecord], path: Union[str, Path]) -> Path:
    """UTF-8, comma separated, ISO dates and dot-decimal amounts; meant for spreadsheets and importers."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8", newline="") as f:
        w = csv.writer(f)
        w.writerow(LEDGER_CSV_COLUMNS)
        for r in records:
            w.writerow(_row(r))
    return out


def write_batch(
    account: AccountSummary,
    batch: LedgerBatch,
    *,
    output_dir: Union[str, Path],
    date_from: date,
    date_to: date,
) -> Path:
    return write_ledger_csv(batch.records, Path(output_dir) / export_filename(account, date_from, date_to))
