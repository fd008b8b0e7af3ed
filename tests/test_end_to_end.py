from __future__ import annotations

import threading
from datetime import date

import pytest

from conftest import FakeTransport, bytes_response, html_response, json_response
from test_export_parsing import CHECKING_EXPORT
from test_web_surface import ACCOUNT_PAGE, CONFIRM_PAGE, CONFIRM_PATH, LOGIN_PAGE
from dkb_ledger_export.banking.api import ApiSurface
from dkb_ledger_export.banking.base import BankCredentials
from dkb_ledger_export.banking.mfa import ChallengePoller
from dkb_ledger_export.banking.web import WebSurface
from dkb_ledger_export.client import BankingClient
from dkb_ledger_export.errors import ChallengeCancelled, MFATimedOut, NoEnrolledMethods
from dkb_ledger_export.models import AccountKind, ChallengeStatus


CREDS = BankCredentials(username="erika", password="s3cret")
WEB = "https://www.dkb.de"
API = "https://banking.dkb.de"

OVERVIEW_HTML = """
<table>
  <tr class="mainRow">
    <td><div class="forceWrap">Girokonto</div></td>
    <td><div class="iban">DE12 1203 0000 0012 3456 78</div></td>
    <td>31.01.2024</td><td>1.234,56 EUR</td>
    <td><a class="evt-paymentTransaction" href="/banking/finanzstatus/kontoumsaetze?$event=init&row=0">Umsätze</a></td>
  </tr>
  <tr class="mainRow">
    <td><div class="forceWrap">Depot</div></td>
    <td><div class="iban">501234567</div></td>
    <td>30.01.2024</td><td>10.000,00 EUR</td>
    <td><a class="evt-depot" href="/banking/depotstatus?$event=init&row=1">Depot</a></td>
  </tr>
</table>
"""


def _poller(clock, attempts: int = 60) -> ChallengePoller:
    return ChallengePoller(interval_seconds=3.0, max_attempts=attempts, clock=clock, sleep=clock.sleep)


def _web_bank(transport: FakeTransport, *, polls: list) -> None:
    confirm = f"{WEB}{CONFIRM_PATH}"
    transport.add("GET", f"{WEB}/banking", html_response(LOGIN_PAGE))
    transport.add("POST", f"{WEB}/banking", html_response(CONFIRM_PAGE))
    transport.add("GET", confirm, *polls)
    transport.add("POST", confirm, html_response("<html><body>Willkommen</body></html>"))
    transport.add(
        "GET",
        f"{WEB}/DkbTransactionBanking/content/banking/financialstatus/FinancialComposite/FinancialStatus.xhtml",
        html_response(OVERVIEW_HTML),
    )
    page = f"{WEB}/banking/finanzstatus/kontoumsaetze"
    transport.add("GET", page, html_response(ACCOUNT_PAGE), bytes_response(CHECKING_EXPORT.encode("iso-8859-15")))
    transport.add("POST", page, html_response("<html/>"))


def test_web_login_third_poll_processed_then_export(transport: FakeTransport, clock) -> None:
    pending = json_response({"state": "PENDING"})
    _web_bank(transport, polls=[pending, pending, json_response({"state": "PROCESSED"})])

    client = BankingClient(WebSurface(transport, debug_dir=""), poller=_poller(clock))
    challenge = client.login(CREDS)

    assert challenge.status is ChallengeStatus.PROCESSED
    assert len(transport.sent("GET", f"{WEB}{CONFIRM_PATH}")) == 3
    assert len(transport.sent("POST", f"{WEB}{CONFIRM_PATH}")) == 1

    accounts = client.list_accounts()
    assert [a.kind for a in accounts] == [AccountKind.CHECKING, AccountKind.DEPOT]

    exports = client.export_all(date(2024, 1, 1), date(2024, 1, 31))
    assert len(exports) == 1
    account, batch = exports[0]
    assert account.kind is AccountKind.CHECKING
    assert [r.amount_cents for r in batch.records] == [-8500, 250000]
    assert batch.complete


def test_web_login_never_confirmed_times_out(transport: FakeTransport, clock) -> None:
    _web_bank(transport, polls=[json_response({"state": "PENDING"})])
    client = BankingClient(WebSurface(transport, debug_dir=""), poller=_poller(clock, attempts=4))

    with pytest.raises(MFATimedOut):
        client.login(CREDS)
    # Finalization never runs for an unconfirmed challenge.
    assert transport.sent("POST", f"{WEB}{CONFIRM_PATH}") == []
    assert len(transport.sent("GET", f"{WEB}{CONFIRM_PATH}")) == 4


def test_web_login_cancelled(transport: FakeTransport, clock) -> None:
    _web_bank(transport, polls=[json_response({"state": "PENDING"})])
    ev = threading.Event()
    ev.set()
    client = BankingClient(WebSurface(transport, debug_dir=""), poller=_poller(clock))
    with pytest.raises(ChallengeCancelled):
        client.login(CREDS, cancel_event=ev)


def _api_bank(transport: FakeTransport, methods: list) -> None:
    transport.set_cookie("__Host-xsrf", "xsrf-1", "banking.dkb.de")
    transport.add("GET", f"{API}/login", html_response("<html/>"))
    transport.add(
        "POST",
        f"{API}/api/token",
        json_response({"mfa_id": "mfa-1", "access_token": "acc-1", "expires_in": 3600}),
        json_response({"access_token": "acc-2", "expires_in": 3600}),
    )
    transport.add("GET", f"{API}/api/mfa/mfa/methods", json_response({"data": methods}))
    transport.add("POST", f"{API}/api/mfa/mfa/challenges", json_response({"data": {"id": "ch-1"}}))

    def status(value: str):
        return json_response({"data": {"id": "ch-1", "attributes": {"verificationStatus": value}}})

    transport.add("GET", f"{API}/api/mfa/mfa/challenges/ch-1", status("pending"), status("pending"), status("processed"))
    transport.add(
        "GET",
        f"{API}/api/accounts/accounts",
        json_response(
            {
                "data": [
                    {
                        "id": "acc-1",
                        "attributes": {"iban": "DE12120300000012345678", "balance": {"value": "1234.56", "currencyCode": "EUR"}},
                    }
                ]
            }
        ),
    )
    transport.add("GET", f"{API}/api/credit-card/cards", json_response({"data": []}))
    transport.add(
        "GET",
        f"{API}/api/broker/brokerage-accounts",
        json_response({"data": [{"id": "d-1", "attributes": {"depositAccountId": "501234567"}}]}),
    )
    transport.add(
        "GET",
        f"{API}/api/accounts/accounts/acc-1/transactions",
        json_response(
            {
                "data": [
                    {
                        "id": "t1",
                        "attributes": {
                            "status": "booked",
                            "bookingDate": "2024-01-02",
                            "amount": {"value": "-85.00", "currencyCode": "EUR"},
                            "creditor": {"name": "Stadtwerke"},
                        },
                    },
                    {
                        "id": "t2",
                        "attributes": {
                            "status": "booked",
                            "bookingDate": "2024-01-15",
                            "amount": {"value": "2500.00", "currencyCode": "EUR"},
                            "debtor": {"name": "Arbeitgeber GmbH"},
                        },
                    },
                ]
            }
        ),
    )


METHODS = [
    {"id": "m-old", "attributes": {"deviceName": "old phone", "enrolledAt": "2022-01-01T00:00:00Z"}},
    {"id": "m-new", "attributes": {"deviceName": "new phone", "enrolledAt": "2024-01-01T00:00:00Z"}},
]


def test_api_login_picks_latest_device_and_exports(transport: FakeTransport, clock) -> None:
    _api_bank(transport, METHODS)
    client = BankingClient(ApiSurface(transport, debug_dir=""), poller=_poller(clock))

    challenge = client.login(CREDS)

    assert challenge.method_id == "m-new"
    assert challenge.status is ChallengeStatus.PROCESSED
    token_posts = transport.sent("POST", f"{API}/api/token")
    assert [p.form["grant_type"] for p in token_posts] == ["banking_user_sca", "banking_user_mfa"]
    assert token_posts[1].form["mfa_id"] == "mfa-1"
    assert token_posts[1].form["access_token"] == "acc-1"
    assert client.surface.session.access_token == "acc-2"

    exports = client.export_all(date(2024, 1, 1), date(2024, 1, 31))
    assert [a.kind for a, _ in exports] == [AccountKind.CHECKING]
    _, batch = exports[0]
    assert [(r.counterpart, r.amount_cents) for r in batch.records] == [("Stadtwerke", -8500), ("Arbeitgeber GmbH", 250000)]


def test_api_login_with_explicit_device_choice(transport: FakeTransport, clock) -> None:
    _api_bank(transport, METHODS)
    client = BankingClient(ApiSurface(transport, debug_dir=""), poller=_poller(clock))

    seen = []

    def chooser(methods):
        seen.extend(m.id for m in methods)
        return "1"

    challenge = client.login(CREDS, method_chooser=chooser)
    assert seen == ["m-old", "m-new"]
    assert challenge.method_id == "m-old"


def test_api_login_without_devices(transport: FakeTransport, clock) -> None:
    _api_bank(transport, [])
    client = BankingClient(ApiSurface(transport, debug_dir=""), poller=_poller(clock))
    with pytest.raises(NoEnrolledMethods):
        client.login(CREDS)
    assert transport.sent("POST", f"{API}/api/mfa/mfa/challenges") == []


def test_login_requires_credentials(transport: FakeTransport) -> None:
    client = BankingClient(ApiSurface(transport, debug_dir=""))
    with pytest.raises(ValueError):
        client.login(BankCredentials(username="erika", password=""))
    assert transport.requests == []
