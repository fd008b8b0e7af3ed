from __future__ import annotations

import csv
import io
import json
import logging
import re
from datetime import date
from typing import Any, Callable, Iterable, Optional

from bs4 import BeautifulSoup

from ..errors import ExportFormatError, PageFieldMissing, RecordDecodeError
from ..models import AccountKind, AccountSummary, LedgerBatch, SkippedRow, TransactionRecord
from ..util.dates import parse_de_date, parse_iso_date
from ..util.money import cents_to_money_str, decimal_str_to_cents, eu_money_to_cents
from .selectors import WebSelectors


logger = logging.getLogger(__name__)

# The CSV export is ISO-8859-15 (latin-9), not UTF-8 or cp1252.
EXPORT_ENCODING = "iso-8859-15"
EXPORT_DELIMITER = ";"
# "Kontonummer", "Von", "Bis", "Kontostand", and blank separator lines precede the header row.
EXPORT_PREAMBLE_LINES = 6

CHECKING_COLUMNS = {
    "booking_date": "Buchungstag",
    "value_date": "Wertstellung",
    "posting_text": "Buchungstext",
    "counterpart": "Auftraggeber / Begünstigter",
    "purpose": "Verwendungszweck",
    "account_number": "Kontonummer",
    "bank_code": "Bankleitzahl",
    "amount": "Betrag (EUR)",
    "creditor_id": "Gläubiger-ID",
    "mandate_reference": "Mandatsreferenz",
    "customer_reference": "Kundenreferenz",
}
CHECKING_REQUIRED = ("booking_date", "value_date", "counterpart", "purpose", "amount")

CREDIT_CARD_COLUMNS = {
    "settled_flag": "Umsatz abgerechnet und nicht im Saldo enthalten",
    "value_date": "Wertstellung",
    "voucher_date": "Belegdatum",
    "description": "Beschreibung",
    "amount": "Betrag (EUR)",
    "original_amount": "Ursprünglicher Betrag",
}
CREDIT_CARD_REQUIRED = ("value_date", "voucher_date", "description", "amount")

_IBAN_RE = re.compile(r"^[A-Z]{2}\d{2}[A-Z0-9]{10,30}$")
_AMOUNT_IN_TEXT_RE = re.compile(r"[-+]?[\d.]+,\d+|[-+]?\d+")


# CSV export


def read_export_rows(
    raw: bytes,
    *,
    skip_lines: int = EXPORT_PREAMBLE_LINES,
    encoding: str = EXPORT_ENCODING,
) -> tuple[list[str], list[tuple[int, dict[str, str]]]]:
    """
    Decode an export, drop exactly `skip_lines` physical preamble lines and tokenize the rest.

    Returns the header row and `(line_number, row)` pairs; line numbers are 1-based in the original file.
    Blank lines after the header are ignored.
    """
    text = raw.decode(encoding)

    buf = io.StringIO(text, newline="")
    for i in range(skip_lines):
        if not buf.readline():
            raise ExportFormatError(f"Export ended inside the {skip_lines}-line preamble (line {i + 1})", step="export")

    reader = csv.reader(buf, delimiter=EXPORT_DELIMITER, quotechar='"')
    header: Optional[list[str]] = None
    rows: list[tuple[int, dict[str, str]]] = []
    for fields in reader:
        line_number = skip_lines + reader.line_num
        if header is None:
            # The header must be the very first line after the preamble.
            header = [(f or "").strip() for f in fields]
            continue
        if not any((f or "").strip() for f in fields):
            continue
        row = {name: (fields[i] if i < len(fields) else "").strip() for i, name in enumerate(header) if name}
        rows.append((line_number, row))

    if header is None:
        raise ExportFormatError("Export has no header row after the preamble", step="export")
    return header, rows


def _require_columns(header: list[str], columns: dict[str, str], required: Iterable[str]) -> None:
    missing = [columns[k] for k in required if columns[k] not in header]
    if missing:
        raise ExportFormatError(
            f"Export header is missing columns {missing}; got {header[:12]}",
            step="export",
        )


def _de_date(row: dict[str, str], column: str) -> date:
    value = row.get(column, "")
    try:
        return parse_de_date(value)
    except ValueError as e:
        raise RecordDecodeError(f"{column}: {e}") from e


def _optional_de_date(row: dict[str, str], column: str) -> Optional[date]:
    if not (row.get(column) or "").strip():
        return None
    return _de_date(row, column)


def _refs(**values: str) -> dict[str, str]:
    return {k: v for k, v in values.items() if v}


def decode_checking_row(row: dict[str, str], *, account_identifier: str = "") -> TransactionRecord:
    c = CHECKING_COLUMNS
    return TransactionRecord(
        booking_date=_de_date(row, c["booking_date"]),
        value_date=_optional_de_date(row, c["value_date"]),
        counterpart=row.get(c["counterpart"], ""),
        purpose_text=row.get(c["purpose"], ""),
        amount_cents=eu_money_to_cents(row.get(c["amount"], "")),
        posting_text=row.get(c["posting_text"], ""),
        reference_codes=_refs(
            account_number=row.get(c["account_number"], ""),
            bank_code=row.get(c["bank_code"], ""),
            creditor_id=row.get(c["creditor_id"], ""),
            mandate_reference=row.get(c["mandate_reference"], ""),
            customer_reference=row.get(c["customer_reference"], ""),
        ),
        account_identifier=account_identifier,
    )


def decode_credit_card_row(row: dict[str, str], *, account_identifier: str = "") -> TransactionRecord:
    c = CREDIT_CARD_COLUMNS
    return TransactionRecord(
        booking_date=_de_date(row, c["voucher_date"]),
        value_date=_optional_de_date(row, c["value_date"]),
        purpose_text=row.get(c["description"], ""),
        amount_cents=eu_money_to_cents(row.get(c["amount"], "")),
        reference_codes=_refs(
            settled_flag=row.get(c["settled_flag"], ""),
            original_amount=row.get(c["original_amount"], ""),
        ),
        account_identifier=account_identifier,
    )


def collect_records(
    rows: Iterable[tuple[int, Any]],
    decode: Callable[[Any], TransactionRecord],
    *,
    account_identifier: str = "",
    strict: bool = False,
) -> LedgerBatch:
    """
    Decode rows one by one. A row that fails is never coerced: it is recorded in `skipped` (default) or,
    with `strict=True`, aborts the whole batch.
    """
    batch = LedgerBatch(account_identifier=account_identifier)
    for line_number, row in rows:
        try:
            batch.records.append(decode(row))
        except RecordDecodeError as e:
            e.line_number = line_number
            e.account = e.account or account_identifier or None
            if strict:
                raise
            logger.warning("Skipping undecodable row (account=%s line=%d): %s", account_identifier, line_number, e)
            raw = {str(k): _raw_text(v) for k, v in row.items()} if isinstance(row, dict) else {"raw": _raw_text(row)}
            batch.skipped.append(SkippedRow(line_number=line_number, raw=raw, error=str(e)))
    return batch


def _raw_text(value: Any) -> str:
    # Nested JSON:API attributes stay valid JSON so a skipped item can be re-read.
    return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)


def parse_export(
    raw: bytes,
    *,
    kind: AccountKind,
    account_identifier: str = "",
    strict: bool = False,
    skip_lines: int = EXPORT_PREAMBLE_LINES,
) -> LedgerBatch:
    if kind is AccountKind.CHECKING:
        columns, required, decoder = CHECKING_COLUMNS, CHECKING_REQUIRED, decode_checking_row
    elif kind is AccountKind.CREDIT_CARD:
        columns, required, decoder = CREDIT_CARD_COLUMNS, CREDIT_CARD_REQUIRED, decode_credit_card_row
    else:
        raise ExportFormatError(f"No CSV export format for account kind {kind.value}", account=account_identifier)

    header, rows = read_export_rows(raw, skip_lines=skip_lines)
    _require_columns(header, columns, required)
    return collect_records(
        rows,
        lambda row: decoder(row, account_identifier=account_identifier),
        account_identifier=account_identifier,
        strict=strict,
    )


# Legacy HTML overview


def _looks_like_iban(identifier: str) -> bool:
    return bool(_IBAN_RE.match(identifier.replace(" ", "").upper()))


def _overview_balance(text: str) -> Optional[int]:
    m = _AMOUNT_IN_TEXT_RE.search(text or "")
    if not m:
        return None
    try:
        return eu_money_to_cents(m.group(0))
    except RecordDecodeError:
        logger.warning("Could not parse overview balance %r", text)
        return None


def _overview_date(text: str) -> Optional[date]:
    try:
        return parse_de_date(text)
    except ValueError:
        return None


def parse_overview_html(html: str, selectors: Optional[WebSelectors] = None) -> list[AccountSummary]:
    """
    Parse the financial status page. Columns are positional: name, identifier, date, balance, actions.
    The action cell decides the account kind.
    """
    sel = selectors or WebSelectors()
    soup = BeautifulSoup(html, "html.parser")

    out: list[AccountSummary] = []
    for row in soup.select(sel.overview_row):
        cols = row.select(sel.overview_cell)
        if len(cols) < 5:
            logger.debug("Skipping overview row with %d cells", len(cols))
            continue

        name_el = cols[0].select_one(sel.overview_name)
        name = (name_el or cols[0]).get_text(" ", strip=True)
        ident_el = cols[1].select_one(sel.overview_identifier)
        identifier = (ident_el or cols[1]).get_text(" ", strip=True)
        as_of = _overview_date(cols[2].get_text(" ", strip=True))
        balance = _overview_balance(cols[3].get_text(" ", strip=True))

        payment = cols[4].select_one(sel.overview_payment_link)
        if payment is not None:
            href = payment.get("href") or ""
            if "kreditkartenumsaetze" in href or not _looks_like_iban(identifier):
                kind = AccountKind.CREDIT_CARD
            else:
                kind = AccountKind.CHECKING
        else:
            depot = cols[4].select_one(sel.overview_depot_link)
            if depot is None:
                logger.debug("Skipping overview row without action links (name=%r)", name)
                continue
            kind = AccountKind.DEPOT
            href = depot.get("href") or ""

        out.append(
            AccountSummary(
                display_name=name,
                identifier=identifier,
                kind=kind,
                transaction_ref=href,
                balance_cents=balance,
                balance_as_of=as_of,
            )
        )
    return out


# JSON:API surface


def _obj(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _attrs(item: dict, *, what: str) -> dict:
    if not isinstance(item, dict) or not isinstance(item.get("attributes"), dict):
        raise RecordDecodeError(f"{what}: item without attributes")
    return item["attributes"]


def _money(obj: Any) -> tuple[Optional[int], str]:
    if not isinstance(obj, dict) or obj.get("value") in (None, ""):
        return None, "EUR"
    return decimal_str_to_cents(obj.get("value")), str(obj.get("currencyCode") or "EUR")


def _data_items(payload: Any, *, what: str) -> list[dict]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, list):
        raise PageFieldMissing(f"{what}: response has no data list", step="overview")
    return data


def decode_api_accounts(payload: Any) -> list[AccountSummary]:
    out = []
    for item in _data_items(payload, what="accounts"):
        a = _attrs(item, what="account")
        iban = str(a.get("iban") or "")
        if not item.get("id") or not iban:
            raise PageFieldMissing("account without id/iban", step="overview")
        balance, currency = _money(a.get("balance"))
        product = _obj(a.get("product"))
        out.append(
            AccountSummary(
                display_name=str(product.get("displayName") or a.get("holderName") or iban),
                identifier=iban,
                kind=AccountKind.CHECKING,
                transaction_ref=f"/api/accounts/accounts/{item['id']}/transactions",
                balance_cents=balance,
                currency=currency,
                balance_as_of=_optional_iso_date(a.get("updatedAt")),
            )
        )
    return out


def decode_api_cards(payload: Any) -> list[AccountSummary]:
    out = []
    for item in _data_items(payload, what="cards"):
        # The cards endpoint also lists debit cards; those book onto a checking account.
        if not isinstance(item, dict) or item.get("type") != "creditCard":
            continue
        a = _attrs(item, what="card")
        pan = str(a.get("maskedPan") or "")
        if not item.get("id") or not pan:
            raise PageFieldMissing("credit card without id/maskedPan", step="overview")
        balance, currency = _money(a.get("balance"))
        product = _obj(a.get("product"))
        out.append(
            AccountSummary(
                display_name=str(product.get("displayName") or pan),
                identifier=pan,
                kind=AccountKind.CREDIT_CARD,
                transaction_ref=f"/api/credit-card/cards/{item['id']}/transactions",
                balance_cents=balance,
                currency=currency,
            )
        )
    return out


def decode_api_depots(payload: Any) -> list[AccountSummary]:
    out = []
    for item in _data_items(payload, what="brokerage accounts"):
        a = _attrs(item, what="brokerage account")
        depot_id = str(a.get("depositAccountId") or item.get("id") or "")
        if not depot_id:
            raise PageFieldMissing("brokerage account without id", step="overview")
        perf = _obj(a.get("brokerageAccountPerformance"))
        balance, currency = _money(perf.get("currentCustodyValue"))
        out.append(
            AccountSummary(
                display_name=str(a.get("holderName") or "Depot"),
                identifier=depot_id,
                kind=AccountKind.DEPOT,
                transaction_ref=f"/api/broker/brokerage-accounts/{item.get('id') or depot_id}",
                balance_cents=balance,
                currency=currency,
            )
        )
    return out


def _optional_iso_date(value: Any) -> Optional[date]:
    if not value:
        return None
    try:
        return parse_iso_date(str(value))
    except ValueError:
        return None


def _iso_date(a: dict, key: str) -> date:
    value = a.get(key)
    if not value:
        raise RecordDecodeError(f"{key}: missing")
    try:
        return parse_iso_date(str(value))
    except ValueError as e:
        raise RecordDecodeError(f"{key}: {e}") from e


def is_booked(item: dict) -> bool:
    a = item.get("attributes") if isinstance(item, dict) else None
    status = str(_obj(a).get("status") or "booked").lower()
    return status == "booked"


def decode_api_checking_transaction(item: dict, *, account_identifier: str = "") -> TransactionRecord:
    a = _attrs(item, what="transaction")
    amount, currency = _money(a.get("amount"))
    if amount is None:
        raise RecordDecodeError("amount: missing")

    creditor = _obj(a.get("creditor"))
    debtor = _obj(a.get("debtor"))
    # Outgoing money goes to the creditor; incoming money comes from the debtor.
    party = creditor if amount < 0 else debtor
    party_account = _obj(party.get("creditorAccount") or party.get("debtorAccount"))

    return TransactionRecord(
        booking_date=_iso_date(a, "bookingDate"),
        value_date=_optional_iso_date(a.get("valueDate")),
        counterpart=str(party.get("name") or party.get("intermediaryName") or ""),
        purpose_text=str(a.get("description") or ""),
        amount_cents=amount,
        currency=currency,
        posting_text=str(a.get("transactionType") or ""),
        reference_codes=_refs(
            transaction_id=str(item.get("id") or ""),
            counterpart_iban=str(party_account.get("iban") or ""),
            creditor_id=str(creditor.get("id") or ""),
            mandate_reference=str(a.get("mandateId") or ""),
            end_to_end_id=str(a.get("endToEndId") or ""),
            purpose_code=str(a.get("purposeCode") or ""),
        ),
        account_identifier=account_identifier,
    )


def decode_api_credit_card_transaction(item: dict, *, account_identifier: str = "") -> TransactionRecord:
    a = _attrs(item, what="card transaction")
    amount, currency = _money(a.get("amount"))
    if amount is None:
        raise RecordDecodeError("amount: missing")
    original, original_currency = _money(a.get("originalAmount"))

    merchant = _obj(a.get("merchantCategory"))
    refs = _refs(
        transaction_id=str(item.get("id") or ""),
        merchant_category=str(merchant.get("code") or ""),
    )
    if original is not None and original_currency != currency:
        refs["original_amount"] = cents_to_money_str(original, original_currency)

    return TransactionRecord(
        booking_date=_iso_date(a, "bookingDate"),
        value_date=_optional_iso_date(a.get("authorizationDate")),
        purpose_text=str(a.get("description") or ""),
        amount_cents=amount,
        currency=currency,
        posting_text=str(a.get("transactionType") or ""),
        reference_codes=refs,
        account_identifier=account_identifier,
    )
