from __future__ import annotations

import json
import logging
from datetime import date
from typing import Any, Callable, Iterator, Optional

from ..errors import (
    AmbiguousCredentials,
    BankingError,
    ChallengeFailed,
    CredentialsRejected,
    FinalizationFailed,
    HandshakeError,
    HandshakeFieldMissing,
    PageFieldMissing,
    SessionExpired,
    UnsupportedAccountKind,
)
from ..models import AccountKind, AccountSummary, HandshakeResult, LedgerBatch, MFAChallenge, MFAMethod, TransactionRecord
from ..util.dates import parse_iso_date, parse_iso_timestamp
from .base import BankCredentials, BankingSurface
from .ledger import (
    collect_records,
    decode_api_accounts,
    decode_api_cards,
    decode_api_checking_transaction,
    decode_api_credit_card_transaction,
    decode_api_depots,
    is_booked,
)
from .session import Session
from .transport import HttpRequest, HttpResponse, Transport


logger = logging.getLogger(__name__)

JSONAPI_CONTENT_TYPE = "application/vnd.api+json"

LOGIN_PATH = "/login"
TOKEN_PATH = "/api/token"
MFA_METHODS_PATH = "/api/mfa/mfa/methods"
MFA_CHALLENGES_PATH = "/api/mfa/mfa/challenges"
ACCOUNTS_PATH = "/api/accounts/accounts"
CARDS_PATH = "/api/credit-card/cards"
DEPOTS_PATH = "/api/broker/brokerage-accounts"

MFA_METHOD_TYPE = "seal_one"
ACCESS_TOKEN_MARGIN_SECONDS = 30.0

# Safety net against a server that keeps handing out the same `next` link.
MAX_TRANSACTION_PAGES = 500


def decode_mfa_methods(payload: Any) -> list[MFAMethod]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, list):
        raise PageFieldMissing("MFA methods response has no data list", step="mfa")

    out: list[MFAMethod] = []
    for item in data:
        a = item.get("attributes") if isinstance(item, dict) else None
        if not isinstance(a, dict) or not item.get("id"):
            raise PageFieldMissing("MFA method without id/attributes", step="mfa")
        enrolled_raw = a.get("enrolledAt")
        if not enrolled_raw:
            raise PageFieldMissing(f"MFA method {item['id']} has no enrolledAt", step="mfa")
        try:
            enrolled_at = parse_iso_timestamp(str(enrolled_raw))
        except ValueError as e:
            raise PageFieldMissing(f"MFA method {item['id']}: bad enrolledAt {enrolled_raw!r}", step="mfa") from e

        remaining = a.get("remainingValidationAttempts")
        out.append(
            MFAMethod(
                id=str(item["id"]),
                device_label=str(a.get("deviceName") or ""),
                enrolled_at=enrolled_at,
                locked=bool(a.get("locked")),
                remaining_attempts=int(remaining) if isinstance(remaining, int) else None,
                method_type=str(a.get("methodType") or MFA_METHOD_TYPE),
            )
        )
    return out


def _may_fall_in(item: Any, date_from: date, date_to: date) -> bool:
    """
    Range check on the raw `bookingDate`, before decoding. Items whose date cannot be read are kept so the
    decoder reports them instead of dropping them silently.
    """
    a = item.get("attributes") if isinstance(item, dict) else None
    raw = a.get("bookingDate") if isinstance(a, dict) else None
    try:
        booked = parse_iso_date(str(raw))
    except ValueError:
        return True
    return date_from <= booked <= date_to


class ApiSurface(BankingSurface):
    """
    JSON:API banking at `https://banking.dkb.de`.

    Every request carries the `__Host-xsrf` cookie value as `x-xsrf-token`. The token grant issues an
    `mfa_id`/`access_token` pair which is upgraded by the `banking_user_mfa` grant once the push is confirmed.
    """

    name = "api"

    def __init__(
        self,
        transport: Transport,
        session: Optional[Session] = None,
        *,
        base_url: str = "https://banking.dkb.de",
        debug_dir: str = "data/debug",
        strict_rows: bool = False,
    ) -> None:
        super().__init__(transport, session, base_url=base_url, debug_dir=debug_dir, strict_rows=strict_rows)

    # Credential handshake

    def handshake(self, creds: BankCredentials) -> HandshakeResult:
        resp = self._send(HttpRequest("GET", self._url(LOGIN_PATH)), authenticated=False)
        if not resp.ok:
            raise HandshakeError(f"Login page returned HTTP {resp.status_code}")

        xsrf = self._jar_xsrf_token()
        if not xsrf:
            raise HandshakeFieldMissing("The login page did not set the __Host-xsrf cookie")
        self.session.rotate(xsrf)

        resp = self._send(
            HttpRequest(
                "POST",
                self._url(TOKEN_PATH),
                form={
                    "grant_type": "banking_user_sca",
                    "sca_type": "web-login",
                    "username": creds.username,
                    "password": creds.password,
                },
            )
        )
        payload = self._token_response(resp)

        mfa_id = str(payload.get("mfa_id") or "")
        access_token = str(payload.get("access_token") or "")
        if not mfa_id or not access_token:
            missing = [k for k, v in (("mfa_id", mfa_id), ("access_token", access_token)) if not v]
            raise HandshakeFieldMissing(f"Token response lacks {missing}")
        expires_in = payload.get("expires_in")
        expires_in = int(expires_in) if isinstance(expires_in, (int, float)) and expires_in > 0 else None

        self.session.mfa_correlation_id = mfa_id
        self.session.set_access_token(access_token, expires_in=expires_in)
        self._refresh_xsrf()

        return HandshakeResult(
            confirmation_target=self._url(MFA_CHALLENGES_PATH),
            anti_forgery_token=self.session.current_token(),
            mfa_correlation_id=mfa_id,
            bootstrap_access_token=access_token,
            bootstrap_expires_in=expires_in,
        )

    def _token_response(self, resp: HttpResponse) -> dict:
        body: Any = None
        try:
            body = resp.json()
        except (ValueError, UnicodeDecodeError):
            body = None

        if resp.ok:
            if not isinstance(body, dict):
                self._save_debug("token_not_json", resp.content, suffix=".txt")
                raise HandshakeFieldMissing(f"Token endpoint returned HTTP {resp.status_code} without a JSON object")
            return body

        if resp.status_code in (400, 401, 403) and isinstance(body, dict) and body.get("error"):
            detail = body.get("error_description") or body.get("error")
            raise CredentialsRejected(f"Token endpoint rejected the credentials: {detail}")
        if 400 <= resp.status_code < 500:
            raise AmbiguousCredentials(
                f"Token endpoint returned HTTP {resp.status_code}; cannot tell wrong credentials from a changed API"
            )
        raise HandshakeError(f"Token endpoint returned HTTP {resp.status_code}")

    def _refresh_xsrf(self) -> None:
        xsrf = self._jar_xsrf_token()
        if xsrf:
            self.session.rotate(xsrf)

    # MFA

    def list_mfa_methods(self, handshake: HandshakeResult) -> Optional[list[MFAMethod]]:
        payload = self._get_json(MFA_METHODS_PATH, params={"filter[methodType]": MFA_METHOD_TYPE}, step="mfa")
        methods = decode_mfa_methods(payload)
        logger.info("Found %d enrolled MFA method(s)", len(methods))
        return methods

    def create_challenge(self, handshake: HandshakeResult, method: Optional[MFAMethod]) -> MFAChallenge:
        if method is None:
            raise ValueError("The api surface needs an MFA method to create a challenge")
        mfa_id = handshake.mfa_correlation_id or self.session.mfa_correlation_id or ""
        body = {
            "data": {
                "type": "mfa-challenge",
                "attributes": {"methodId": method.id, "methodType": MFA_METHOD_TYPE, "mfaId": mfa_id},
            }
        }
        resp = self._send(
            HttpRequest(
                "POST",
                self._url(MFA_CHALLENGES_PATH),
                body=json.dumps(body).encode("utf-8"),
                headers={"Content-Type": JSONAPI_CONTENT_TYPE, "Accept": JSONAPI_CONTENT_TYPE},
            )
        )
        if not resp.ok:
            raise ChallengeFailed(f"Creating the MFA challenge returned HTTP {resp.status_code}", step="mfa.challenge")
        payload = self._json_or_missing(resp, step="mfa.challenge")
        data = payload.get("data") if isinstance(payload, dict) else None
        challenge_id = str((data or {}).get("id") or "") if isinstance(data, dict) else ""
        if not challenge_id:
            raise PageFieldMissing("Challenge response has no data.id", step="mfa.challenge")
        return MFAChallenge(id=challenge_id, method_id=method.id, correlation_id=mfa_id)

    def fetch_challenge_status(self, challenge: MFAChallenge) -> str:
        payload = self._get_json(f"{MFA_CHALLENGES_PATH}/{challenge.id}", step="mfa.poll")
        data = payload.get("data") if isinstance(payload, dict) else None
        attrs = data.get("attributes") if isinstance(data, dict) else None
        status = attrs.get("verificationStatus") if isinstance(attrs, dict) else None
        if not isinstance(status, str):
            raise PageFieldMissing("Challenge response has no verificationStatus", step="mfa.poll")
        return status

    def finalize(self, handshake: HandshakeResult, challenge: MFAChallenge) -> None:
        access_token = self.session.access_token or handshake.bootstrap_access_token or ""
        resp = self._send(
            HttpRequest(
                "POST",
                self._url(TOKEN_PATH),
                form={
                    "grant_type": "banking_user_mfa",
                    "mfa_id": challenge.correlation_id or self.session.mfa_correlation_id or "",
                    "access_token": access_token,
                },
            )
        )
        if not resp.ok:
            raise FinalizationFailed(f"MFA token grant returned HTTP {resp.status_code}")

        try:
            payload = resp.json()
        except (ValueError, UnicodeDecodeError):
            payload = None
        if isinstance(payload, dict) and payload.get("access_token"):
            expires_in = payload.get("expires_in")
            self.session.set_access_token(
                str(payload["access_token"]),
                expires_in=int(expires_in) if isinstance(expires_in, (int, float)) and expires_in > 0 else None,
            )
        self._refresh_xsrf()
        logger.info("Login confirmed (api surface)")

    # Ledger retrieval

    def list_accounts(self) -> list[AccountSummary]:
        self.session.ensure_not_expired(margin_seconds=ACCESS_TOKEN_MARGIN_SECONDS)
        accounts = decode_api_accounts(self._get_json(ACCOUNTS_PATH, step="overview"))
        cards = decode_api_cards(self._get_json(CARDS_PATH, step="overview"))
        depots = decode_api_depots(self._get_json(DEPOTS_PATH, step="overview"))
        logger.info("Found %d checking, %d credit card and %d depot account(s)", len(accounts), len(cards), len(depots))
        return [*accounts, *cards, *depots]

    def fetch_transactions(self, account: AccountSummary, date_from: date, date_to: date) -> LedgerBatch:
        if account.kind is AccountKind.DEPOT:
            raise UnsupportedAccountKind("Depot accounts have no transaction list", account=account.identifier)
        if date_from > date_to:
            raise ValueError(f"date_from {date_from} is after date_to {date_to}")
        if not account.transaction_ref:
            raise PageFieldMissing("Account has no transaction link", step="export", account=account.identifier)
        self.session.ensure_not_expired(margin_seconds=ACCESS_TOKEN_MARGIN_SECONDS)

        decoder: Callable[..., TransactionRecord]
        if account.kind is AccountKind.CREDIT_CARD:
            decoder = decode_api_credit_card_transaction
        else:
            decoder = decode_api_checking_transaction

        items = (
            (n, item)
            for n, item in enumerate(self._iter_transaction_items(account), start=1)
            if is_booked(item) and _may_fall_in(item, date_from, date_to)
        )
        batch = collect_records(
            items,
            lambda item: decoder(item, account_identifier=account.identifier),
            account_identifier=account.identifier,
            strict=self.strict_rows,
        )
        batch.records = [r for r in batch.records if date_from <= r.booking_date <= date_to]
        logger.info(
            "Fetched %d transactions (%d skipped) for %s",
            len(batch.records),
            len(batch.skipped),
            account.identifier,
        )
        return batch

    def _iter_transaction_items(self, account: AccountSummary) -> Iterator[dict]:
        url: Optional[str] = self._url(account.transaction_ref)
        seen: set[str] = set()
        while url:
            if url in seen or len(seen) >= MAX_TRANSACTION_PAGES:
                logger.warning("Stopping pagination for %s at repeated/excess page %s", account.identifier, url)
                return
            seen.add(url)
            payload = self._get_json(url, step="export", account=account.identifier)
            data = payload.get("data") if isinstance(payload, dict) else None
            if not isinstance(data, list):
                raise PageFieldMissing("Transaction page has no data list", step="export", account=account.identifier)
            yield from data

            links = payload.get("links") if isinstance(payload, dict) else None
            nxt = links.get("next") if isinstance(links, dict) else None
            url = self._url(str(nxt)) if nxt else None

    # Plumbing

    def _get_json(
        self,
        path_or_url: str,
        *,
        params: Optional[dict[str, str]] = None,
        step: str,
        account: Optional[str] = None,
    ) -> Any:
        resp = self._send(
            HttpRequest(
                "GET",
                self._url(path_or_url),
                params=dict(params or {}),
                headers={"Accept": JSONAPI_CONTENT_TYPE},
            )
        )
        if resp.status_code == 401:
            raise SessionExpired("HTTP 401; log in again", step=step, account=account)
        if not resp.ok:
            raise BankingError(f"GET {path_or_url} returned HTTP {resp.status_code}", step=step, account=account)
        return self._json_or_missing(resp, step=step, account=account)

    def _json_or_missing(self, resp: HttpResponse, *, step: str, account: Optional[str] = None) -> Any:
        try:
            return resp.json()
        except (ValueError, UnicodeDecodeError) as e:
            self._save_debug(f"{step.replace('.', '_')}_not_json", resp.content, suffix=".txt")
            raise PageFieldMissing("Response is not JSON", step=step, account=account) from e
