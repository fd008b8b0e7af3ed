from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Union
from urllib.parse import urljoin, urlparse

from ..models import AccountSummary, HandshakeResult, LedgerBatch, MFAChallenge, MFAMethod
from ..util.debug_bundle import save_debug_artifact
from .session import ANTI_FORGERY_COOKIE, Session
from .transport import HttpRequest, HttpResponse, Transport


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BankCredentials:
    username: str
    password: str = field(repr=False)


class BankingSurface(ABC):
    """
    One generation of the bank's web banking.

    Implementations share the Session and transport handling here and differ in how they log in,
    run the MFA challenge and fetch ledgers. All steps are strictly sequential on one session.
    """

    name: str = ""

    def __init__(
        self,
        transport: Transport,
        session: Optional[Session] = None,
        *,
        base_url: str,
        debug_dir: str = "data/debug",
        strict_rows: bool = False,
    ) -> None:
        self.transport = transport
        self.session = session or Session()
        self.base_url = base_url.rstrip("/")
        self.debug_dir = debug_dir
        self.strict_rows = strict_rows
        self._host = (urlparse(self.base_url).hostname or "").lower()

    # Credential handshake

    @abstractmethod
    def handshake(self, creds: BankCredentials) -> HandshakeResult: ...

    # MFA

    @abstractmethod
    def list_mfa_methods(self, handshake: HandshakeResult) -> Optional[list[MFAMethod]]:
        """Enrolled devices to choose from, or None when the bank picks the device itself."""

    @abstractmethod
    def create_challenge(self, handshake: HandshakeResult, method: Optional[MFAMethod]) -> MFAChallenge: ...

    @abstractmethod
    def fetch_challenge_status(self, challenge: MFAChallenge) -> str:
        """One full round trip; returns the raw status string."""

    @abstractmethod
    def finalize(self, handshake: HandshakeResult, challenge: MFAChallenge) -> None: ...

    # Ledger retrieval

    @abstractmethod
    def list_accounts(self) -> list[AccountSummary]: ...

    @abstractmethod
    def fetch_transactions(self, account: AccountSummary, date_from: date, date_to: date) -> LedgerBatch: ...

    # Shared plumbing

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return urljoin(self.base_url + "/", path_or_url.lstrip("/"))

    def _send(self, request: HttpRequest, *, authenticated: bool = True) -> HttpResponse:
        if authenticated:
            if request.token_generation is None:
                self.session.apply(request)
            self.session.ensure_current(request)
        return self.transport.do(request)

    def _jar_xsrf_token(self) -> Optional[str]:
        for cookie in self.transport.jar_cookies(self._host):
            if cookie.name == ANTI_FORGERY_COOKIE and cookie.value:
                return cookie.value
        return None

    def _save_debug(self, name_prefix: str, content: Union[bytes, str], *, suffix: str = ".html") -> None:
        path = save_debug_artifact(self.debug_dir, name_prefix=f"{self.name}_{name_prefix}", content=content, suffix=suffix)
        if path is not None:
            logger.info("Saved debug artifact: %s", path)
