from __future__ import annotations

import json
from datetime import date, datetime, timezone

import pytest

from conftest import FakeTransport, html_response, json_response
from dkb_ledger_export.banking.api import ApiSurface
from dkb_ledger_export.banking.base import BankCredentials
from dkb_ledger_export.banking.session import ANTI_FORGERY_HEADER, Session
from dkb_ledger_export.errors import (
    AmbiguousCredentials,
    CredentialsRejected,
    FinalizationFailed,
    HandshakeFieldMissing,
    RecordDecodeError,
    SessionExpired,
    UnsupportedAccountKind,
)
from dkb_ledger_export.models import AccountKind, AccountSummary, HandshakeResult, MFAChallenge, MFAMethod


BASE = "https://banking.dkb.de"
CREDS = BankCredentials(username="erika", password="s3cret")

GIRO = AccountSummary(
    display_name="Girokonto",
    identifier="DE12120300000012345678",
    kind=AccountKind.CHECKING,
    transaction_ref="/api/accounts/accounts/acc-1/transactions",
)
CARD = AccountSummary(
    display_name="DKB-VISA-Card",
    identifier="4930********1234",
    kind=AccountKind.CREDIT_CARD,
    transaction_ref="/api/credit-card/cards/card-1/transactions",
)


def _surface(transport: FakeTransport, clock=None, *, strict: bool = False) -> ApiSurface:
    session = Session(clock=clock) if clock is not None else Session()
    return ApiSurface(transport, session, debug_dir="", strict_rows=strict)


def _logged_in(transport: FakeTransport, clock=None, *, strict: bool = False) -> ApiSurface:
    s = _surface(transport, clock, strict=strict)
    s.session.rotate("xsrf-1")
    s.session.set_access_token("acc-token", expires_in=600)
    return s


def test_handshake_stores_mfa_id_and_uses_cookie_token(transport: FakeTransport) -> None:
    transport.set_cookie("__Host-xsrf", "xsrf-1", "banking.dkb.de")
    transport.add("GET", f"{BASE}/login", html_response("<html/>"))

    def token(req):
        # The server rotates the cookie together with the token grant.
        transport.set_cookie("__Host-xsrf", "xsrf-2", "banking.dkb.de")
        return json_response({"mfa_id": "mfa-1", "access_token": "acc-1", "expires_in": 300})

    transport.add("POST", f"{BASE}/api/token", token)

    s = _surface(transport)
    hs = s.handshake(CREDS)

    (post,) = transport.sent("POST", f"{BASE}/api/token")
    assert post.form == {"grant_type": "banking_user_sca", "sca_type": "web-login", "username": "erika", "password": "s3cret"}
    assert post.headers[ANTI_FORGERY_HEADER] == "xsrf-1"

    assert hs.mfa_correlation_id == "mfa-1"
    assert hs.bootstrap_access_token == "acc-1"
    assert hs.anti_forgery_token == "xsrf-2"
    assert s.session.current_token() == "xsrf-2"
    assert s.session.access_token == "acc-1"
    assert "s3cret" not in repr(hs)


def test_handshake_without_xsrf_cookie(transport: FakeTransport) -> None:
    transport.add("GET", f"{BASE}/login", html_response("<html/>"))
    with pytest.raises(HandshakeFieldMissing):
        _surface(transport).handshake(CREDS)


def test_handshake_rejected_credentials(transport: FakeTransport) -> None:
    transport.set_cookie("__Host-xsrf", "xsrf-1", "banking.dkb.de")
    transport.add("GET", f"{BASE}/login", html_response("<html/>"))
    transport.add("POST", f"{BASE}/api/token", json_response({"error": "invalid_grant"}, status=400))
    with pytest.raises(CredentialsRejected) as ei:
        _surface(transport).handshake(CREDS)
    assert ei.value.step == "handshake"


def test_handshake_ambiguous_refusal(transport: FakeTransport) -> None:
    transport.set_cookie("__Host-xsrf", "xsrf-1", "banking.dkb.de")
    transport.add("GET", f"{BASE}/login", html_response("<html/>"))
    transport.add("POST", f"{BASE}/api/token", html_response("<h1>Forbidden</h1>", status=403))
    with pytest.raises(AmbiguousCredentials):
        _surface(transport).handshake(CREDS)


def test_handshake_missing_mfa_id(transport: FakeTransport) -> None:
    transport.set_cookie("__Host-xsrf", "xsrf-1", "banking.dkb.de")
    transport.add("GET", f"{BASE}/login", html_response("<html/>"))
    transport.add("POST", f"{BASE}/api/token", json_response({"access_token": "acc-1"}))
    with pytest.raises(HandshakeFieldMissing):
        _surface(transport).handshake(CREDS)


def test_create_challenge_posts_jsonapi_body(transport: FakeTransport) -> None:
    transport.add("POST", f"{BASE}/api/mfa/mfa/challenges", json_response({"data": {"id": "ch-1", "type": "mfa-challenge"}}))
    s = _logged_in(transport)
    hs = HandshakeResult(confirmation_target=f"{BASE}/api/mfa/mfa/challenges", anti_forgery_token="xsrf-1", mfa_correlation_id="mfa-1")
    # Whatever type the methods listing reports, the challenge is always requested as seal_one.
    method = MFAMethod(id="m-1", enrolled_at=datetime(2024, 1, 1, tzinfo=timezone.utc), method_type="SEAL_ONE_V2")

    ch = s.create_challenge(hs, method)

    assert ch.id == "ch-1"
    (req,) = transport.sent("POST", f"{BASE}/api/mfa/mfa/challenges")
    assert req.headers["Content-Type"] == "application/vnd.api+json"
    assert json.loads(req.body) == {
        "data": {"type": "mfa-challenge", "attributes": {"methodId": "m-1", "methodType": "seal_one", "mfaId": "mfa-1"}}
    }


def test_finalize_failure_is_not_retried(transport: FakeTransport) -> None:
    transport.add("POST", f"{BASE}/api/token", json_response({"error": "server_error"}, status=500))
    s = _logged_in(transport)
    hs = HandshakeResult(confirmation_target="", anti_forgery_token="xsrf-1", mfa_correlation_id="mfa-1")
    with pytest.raises(FinalizationFailed):
        s.finalize(hs, MFAChallenge(id="ch-1", correlation_id="mfa-1"))
    assert len(transport.sent("POST", f"{BASE}/api/token")) == 1


def _tx(tid: str, booking: str, value: str, *, status: str = "booked") -> dict:
    return {
        "id": tid,
        "type": "accountTransaction",
        "attributes": {
            "status": status,
            "bookingDate": booking,
            "amount": {"currencyCode": "EUR", "value": value},
            "description": f"tx {tid}",
            "creditor": {"name": "Shop"},
            "debtor": {"name": "Employer"},
        },
    }


def test_fetch_transactions_follows_pagination_and_filters(transport: FakeTransport) -> None:
    page1 = f"{BASE}/api/accounts/accounts/acc-1/transactions"
    page2 = f"{BASE}/api/accounts/accounts/acc-1/transactions/page2"
    transport.add(
        "GET",
        page1,
        json_response(
            {
                "data": [
                    _tx("t1", "2024-01-20", "-10.00"),
                    _tx("t2", "2024-01-21", "-5.00", status="pending"),
                ],
                "links": {"next": "/api/accounts/accounts/acc-1/transactions/page2"},
            }
        ),
    )
    transport.add(
        "GET",
        page2,
        json_response(
            {
                "data": [
                    _tx("t3", "2024-01-10", "100.00"),
                    _tx("t4", "2023-12-31", "-1.00"),
                ],
                "links": {},
            }
        ),
    )

    batch = _logged_in(transport).fetch_transactions(GIRO, date(2024, 1, 1), date(2024, 1, 31))

    assert [r.reference_codes["transaction_id"] for r in batch.records] == ["t1", "t3"]
    assert [r.amount_cents for r in batch.records] == [-1000, 10000]
    assert batch.records[0].counterpart == "Shop"
    assert batch.records[1].counterpart == "Employer"
    assert batch.complete


def test_fetch_transactions_stops_on_repeated_next_link(transport: FakeTransport) -> None:
    url = f"{BASE}/api/credit-card/cards/card-1/transactions"
    transport.add(
        "GET",
        url,
        json_response({"data": [], "links": {"next": "/api/credit-card/cards/card-1/transactions"}}),
    )
    batch = _logged_in(transport).fetch_transactions(CARD, date(2024, 1, 1), date(2024, 1, 31))
    assert batch.records == []
    assert len(transport.requests) == 1


def test_bad_item_is_skipped_or_aborts(transport: FakeTransport) -> None:
    url = f"{BASE}/api/accounts/accounts/acc-1/transactions"
    bad = _tx("t2", "2024-01-05", "n/a")
    transport.add("GET", url, json_response({"data": [_tx("t1", "2024-01-04", "-1.00"), bad]}))

    batch = _logged_in(transport).fetch_transactions(GIRO, date(2024, 1, 1), date(2024, 1, 31))
    assert len(batch.records) == 1
    assert batch.skipped[0].line_number == 2

    with pytest.raises(RecordDecodeError):
        _logged_in(transport, strict=True).fetch_transactions(GIRO, date(2024, 1, 1), date(2024, 1, 31))


def test_http_401_means_session_expired(transport: FakeTransport) -> None:
    transport.add("GET", f"{BASE}/api/accounts/accounts/acc-1/transactions", json_response({}, status=401))
    with pytest.raises(SessionExpired) as ei:
        _logged_in(transport).fetch_transactions(GIRO, date(2024, 1, 1), date(2024, 1, 31))
    assert ei.value.account == GIRO.identifier


def test_access_token_near_expiry_is_refused(transport: FakeTransport, clock) -> None:
    s = _logged_in(transport, clock)
    clock.now += 580
    with pytest.raises(SessionExpired):
        s.fetch_transactions(GIRO, date(2024, 1, 1), date(2024, 1, 31))
    assert transport.requests == []


def test_depot_is_unsupported(transport: FakeTransport) -> None:
    depot = AccountSummary(display_name="Depot", identifier="501234567", kind=AccountKind.DEPOT)
    with pytest.raises(UnsupportedAccountKind):
        _logged_in(transport).fetch_transactions(depot, date(2024, 1, 1), date(2024, 1, 31))


def test_bad_item_outside_range_is_not_reported(transport: FakeTransport) -> None:
    url = f"{BASE}/api/accounts/accounts/acc-1/transactions"
    old = _tx("old", "2019-03-01", "abc")
    no_date = _tx("nodate", "", "-2.00")
    transport.add(
        "GET",
        url,
        json_response({"data": [old, _tx("t1", "2024-01-04", "-1.00"), no_date]}),
    )

    batch = _logged_in(transport).fetch_transactions(GIRO, date(2024, 1, 1), date(2024, 1, 31))

    assert [r.reference_codes["transaction_id"] for r in batch.records] == ["t1"]
    # An item without a readable booking date cannot be placed; it is reported, not dropped.
    assert [s.line_number for s in batch.skipped] == [3]
    assert json.loads(batch.skipped[0].raw["attributes"])["amount"] == {"currencyCode": "EUR", "value": "-2.00"}


def test_non_object_counterpart_does_not_abort_the_batch(transport: FakeTransport) -> None:
    url = f"{BASE}/api/accounts/accounts/acc-1/transactions"
    odd = _tx("t2", "2024-01-05", "-3.00")
    odd["attributes"]["creditor"] = "ACME"
    transport.add("GET", url, json_response({"data": [_tx("t1", "2024-01-04", "-1.00"), odd]}))

    batch = _logged_in(transport).fetch_transactions(GIRO, date(2024, 1, 1), date(2024, 1, 31))

    assert [r.amount_cents for r in batch.records] == [-100, -300]
    assert batch.records[1].counterpart == ""
    assert batch.skipped == []
