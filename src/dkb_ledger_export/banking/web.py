from __future__ import annotations

import logging
import time
from datetime import date
from typing import Optional

from bs4 import BeautifulSoup

from ..errors import (
    AmbiguousCredentials,
    ChallengeFailed,
    CredentialsRejected,
    ExportFormatError,
    FinalizationFailed,
    HandshakeError,
    HandshakeFieldMissing,
    LedgerError,
    PageFieldMissing,
    SessionExpired,
    UnsupportedAccountKind,
)
from ..models import AccountKind, AccountSummary, HandshakeResult, LedgerBatch, MFAChallenge, MFAMethod
from ..util.dates import format_de_date
from .base import BankCredentials, BankingSurface
from .ledger import parse_export, parse_overview_html
from .selectors import WebSelectors
from .session import Session
from .transport import HttpRequest, HttpResponse, Transport


logger = logging.getLogger(__name__)

LOGIN_PATH = "/banking"
OVERVIEW_PATH = "/DkbTransactionBanking/content/banking/financialstatus/FinancialComposite/FinancialStatus.xhtml"
CHECKING_SEARCH_PATH = "/banking/finanzstatus/kontoumsaetze"
CREDIT_CARD_SEARCH_PATH = "/banking/finanzstatus/kreditkartenumsaetze"


class WebSurface(BankingSurface):
    """
    Legacy server-rendered web banking (`https://www.dkb.de`).

    Login is a classic HTML form, the MFA push is polled on the confirmation form's action URL, accounts are
    scraped from the financial status table and transactions come from the CSV export of a date search.
    """

    name = "web"

    def __init__(
        self,
        transport: Transport,
        session: Optional[Session] = None,
        *,
        base_url: str = "https://www.dkb.de",
        debug_dir: str = "data/debug",
        strict_rows: bool = False,
        selectors: Optional[WebSelectors] = None,
    ) -> None:
        super().__init__(transport, session, base_url=base_url, debug_dir=debug_dir, strict_rows=strict_rows)
        self.selectors = selectors or WebSelectors()
        self._poll_id = 0

    def handshake(self, creds: BankCredentials) -> HandshakeResult:
        sel = self.selectors
        resp = self._send(HttpRequest("GET", self._url(LOGIN_PATH)), authenticated=False)
        if not resp.ok:
            raise HandshakeError(f"Login page returned HTTP {resp.status_code}")
        soup = BeautifulSoup(resp.text, "html.parser")

        session_id = self._input_value(soup, sel.login_session_id_input)
        form_token = self._input_value(soup, sel.login_token_input)
        if session_id is None or form_token is None:
            self._save_debug("login_page_fields_missing", resp.text)
            missing = [n for n, v in ((sel.login_session_id_field, session_id), (sel.login_token_field, form_token)) if v is None]
            raise HandshakeFieldMissing(f"Login page lacks hidden fields {missing}; the page layout changed")

        resp = self._send(
            HttpRequest(
                "POST",
                self._url(LOGIN_PATH),
                form={
                    sel.login_session_id_field: session_id,
                    sel.login_token_field: form_token,
                    sel.login_username_field: creds.username,
                    sel.login_password_field: creds.password,
                },
            ),
            authenticated=False,
        )
        if not resp.ok:
            raise AmbiguousCredentials(f"Login submit returned HTTP {resp.status_code}")
        soup = BeautifulSoup(resp.text, "html.parser")

        confirm = soup.select_one(sel.confirm_form)
        if confirm is None:
            if soup.select_one(sel.login_form) is not None:
                err = soup.select_one(sel.login_error)
                err_text = err.get_text(" ", strip=True) if err is not None else ""
                if err_text:
                    raise CredentialsRejected(f"Login rejected: {err_text}")
                raise AmbiguousCredentials("Login form was shown again without an error message")
            self._save_debug("confirm_form_missing", resp.text)
            raise HandshakeFieldMissing("Login response has neither the MFA confirmation form nor the login form")

        action = (confirm.get("action") or "").strip()
        xsrf = self._input_value(soup, sel.confirm_xsrf_input)
        if not action or not xsrf:
            self._save_debug("confirm_form_fields_missing", resp.text)
            raise HandshakeFieldMissing(
                f"Confirmation form lacks {'action' if not action else sel.confirm_xsrf_field}; the page layout changed"
            )

        self.session.rotate(xsrf)
        return HandshakeResult(confirmation_target=self._url(action), anti_forgery_token=xsrf)

    def list_mfa_methods(self, handshake: HandshakeResult) -> Optional[list[MFAMethod]]:
        # The push goes to the device the bank has on file; there is nothing to choose.
        return None

    def create_challenge(self, handshake: HandshakeResult, method: Optional[MFAMethod]) -> MFAChallenge:
        # Submitting the credentials already triggered the push; the confirmation URL identifies it.
        self._poll_id = int(time.time() * 1000) * 1000
        return MFAChallenge(id=handshake.confirmation_target)

    def fetch_challenge_status(self, challenge: MFAChallenge) -> str:
        self._poll_id += 1
        resp = self._send(
            HttpRequest(
                "GET",
                challenge.id,
                params={"$event": "pollingVerification", "$ignore.request": "true", "_": str(self._poll_id)},
            )
        )
        if not resp.ok:
            raise ChallengeFailed(f"Polling the confirmation returned HTTP {resp.status_code}", step="mfa.poll")
        try:
            payload = resp.json()
        except (ValueError, UnicodeDecodeError) as e:
            self._save_debug("poll_not_json", resp.content, suffix=".txt")
            raise PageFieldMissing("Poll response is not JSON", step="mfa.poll") from e
        state = payload.get("state") if isinstance(payload, dict) else None
        if not isinstance(state, str):
            raise PageFieldMissing("Poll response has no 'state'", step="mfa.poll")
        return state

    def finalize(self, handshake: HandshakeResult, challenge: MFAChallenge) -> None:
        sel = self.selectors
        resp = self._send(
            HttpRequest(
                "POST",
                challenge.id,
                form={"$event": "next", sel.confirm_xsrf_field: self.session.current_token()},
            )
        )
        if not resp.ok:
            raise FinalizationFailed(f"Confirming the login returned HTTP {resp.status_code}")

        soup = BeautifulSoup(resp.text, "html.parser")
        if soup.select_one(sel.login_form) is not None:
            self._save_debug("finalize_login_page", resp.text)
            raise FinalizationFailed("The bank returned to the login page after confirmation")

        # Some pages carry a fresh token after the confirmation; use it from now on.
        rotated = self._input_value(soup, sel.confirm_xsrf_input)
        if rotated:
            self.session.rotate(rotated)
        logger.info("Login confirmed (web surface)")

    def list_accounts(self) -> list[AccountSummary]:
        resp = self._send(HttpRequest("GET", self._url(OVERVIEW_PATH), params={"$event": "init"}))
        self._soup_or_expired(resp, step="overview")
        accounts = parse_overview_html(resp.text, self.selectors)
        if not accounts:
            self._save_debug("overview_no_accounts", resp.text)
            logger.warning("No accounts found on the financial status page")
        return accounts

    def fetch_transactions(self, account: AccountSummary, date_from: date, date_to: date) -> LedgerBatch:
        if account.kind is AccountKind.DEPOT:
            raise UnsupportedAccountKind("Depot accounts have no transaction export", account=account.identifier)
        if date_from > date_to:
            raise ValueError(f"date_from {date_from} is after date_to {date_to}")
        if not account.transaction_ref:
            raise PageFieldMissing("Account has no transaction link", step="export", account=account.identifier)

        sel = self.selectors
        resp = self._send(HttpRequest("GET", self._url(account.transaction_ref)))
        soup = self._soup_or_expired(resp, step="export", account=account.identifier)
        option = soup.select_one(sel.account_selected_option)
        selected = (option.get("value") or "").strip() if option is not None else ""
        if not selected:
            self._save_debug("account_selector_missing", resp.text)
            raise PageFieldMissing("No selected account on the transaction page", step="export", account=account.identifier)

        search_path = CREDIT_CARD_SEARCH_PATH if account.kind is AccountKind.CREDIT_CARD else CHECKING_SEARCH_PATH
        resp = self._send(
            HttpRequest(
                "POST",
                self._url(search_path),
                form={
                    "slTransactionStatus": "0",
                    "slSearchPeriod": "1",
                    "searchPeriodRadio": "1",
                    "transactionDate": format_de_date(date_from),
                    "toTransactionDate": format_de_date(date_to),
                    "$event": "search",
                    sel.account_select_field: selected,
                },
            )
        )
        self._soup_or_expired(resp, step="export", account=account.identifier)

        resp = self._send(HttpRequest("GET", self._url(search_path), params={"$event": "csvExport"}))
        if not resp.ok:
            raise LedgerError(f"CSV export returned HTTP {resp.status_code}", step="export", account=account.identifier)
        if resp.content.lstrip()[:1] == b"<":
            self._soup_or_expired(resp, step="export", account=account.identifier)
            self._save_debug("export_is_html", resp.text)
            raise ExportFormatError("CSV export returned an HTML page", step="export", account=account.identifier)

        try:
            batch = parse_export(
                resp.content,
                kind=account.kind,
                account_identifier=account.identifier,
                strict=self.strict_rows,
            )
        except ExportFormatError as e:
            e.account = e.account or account.identifier
            self._save_debug("export_unparseable", resp.content, suffix=".csv")
            raise
        logger.info(
            "Fetched %d transactions (%d skipped) for %s",
            len(batch.records),
            len(batch.skipped),
            account.identifier,
        )
        return batch

    def _soup_or_expired(self, resp: HttpResponse, *, step: str, account: Optional[str] = None) -> BeautifulSoup:
        if resp.status_code in (401, 403):
            raise SessionExpired(f"HTTP {resp.status_code}; log in again", step=step, account=account)
        if not resp.ok:
            raise LedgerError(f"HTTP {resp.status_code}", step=step, account=account)
        soup = BeautifulSoup(resp.text, "html.parser")
        if soup.select_one(self.selectors.login_form) is not None:
            raise SessionExpired("The bank redirected to the login page; log in again", step=step, account=account)
        return soup

    @staticmethod
    def _input_value(soup: BeautifulSoup, selector: str) -> Optional[str]:
        el = soup.select_one(selector)
        if el is None:
            return None
        value = el.get("value")
        return value if value else None
