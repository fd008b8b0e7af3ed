from __future__ import annotations

import logging
import threading
import time
from datetime import date
from typing import Callable, Iterable, Iterator, Optional

from .banking.api import ApiSurface
from .banking.base import BankCredentials, BankingSurface
from .banking.mfa import ChallengePoller, MethodChooser, MfaOrchestrator
from .banking.transport import RequestsTransport, Transport
from .banking.web import WebSurface
from .config import AppConfig
from .models import AccountKind, AccountSummary, LedgerBatch, MFAChallenge


logger = logging.getLogger(__name__)

_SURFACES: dict[str, type[BankingSurface]] = {
    ApiSurface.name: ApiSurface,
    WebSurface.name: WebSurface,
}


class BankingClient:
    """
    Front door for one export run: log in (handshake + MFA), then walk the accounts.

    Everything runs on one session, one request at a time.
    """

    def __init__(
        self,
        surface: BankingSurface,
        *,
        poller: Optional[ChallengePoller] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.surface = surface
        self._poller = poller or ChallengePoller()
        self._clock = clock
        self.challenge: Optional[MFAChallenge] = None

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        *,
        transport: Optional[Transport] = None,
        debug_dir: str = "data/debug",
    ) -> "BankingClient":
        surface_cls = _SURFACES[cfg.bank.surface]
        transport = transport or RequestsTransport(
            timeout_seconds=cfg.http.timeout_seconds,
            user_agent=cfg.http.user_agent,
        )
        surface = surface_cls(
            transport,
            base_url=cfg.bank.base_url,
            debug_dir=debug_dir,
            strict_rows=cfg.export.strict_rows,
        )
        poller = ChallengePoller(
            interval_seconds=cfg.mfa.poll_interval_seconds,
            max_attempts=cfg.mfa.max_poll_attempts,
        )
        return cls(surface, poller=poller)

    def login(
        self,
        creds: BankCredentials,
        *,
        method_chooser: Optional[MethodChooser] = None,
        cancel_event: Optional[threading.Event] = None,
        timeout_seconds: Optional[float] = None,
    ) -> MFAChallenge:
        if not creds.username or not creds.password:
            raise ValueError("Username and password are required")

        t0 = self._clock()
        logger.info("Logging in (surface=%s user=%s)", self.surface.name, creds.username)
        handshake = self.surface.handshake(creds)
        logger.info("Credentials accepted; starting MFA")

        deadline = (t0 + timeout_seconds) if timeout_seconds else None
        orchestrator = MfaOrchestrator(self.surface, poller=self._poller)
        self.challenge = orchestrator.confirm(
            handshake,
            method_chooser=method_chooser,
            cancel_event=cancel_event,
            deadline=deadline,
        )
        logger.info("Logged in (seconds=%.2f)", self._clock() - t0)
        return self.challenge

    def list_accounts(self) -> list[AccountSummary]:
        return self.surface.list_accounts()

    def fetch_transactions(self, account: AccountSummary, date_from: date, date_to: date) -> LedgerBatch:
        return self.surface.fetch_transactions(account, date_from, date_to)

    def iter_exports(
        self,
        date_from: date,
        date_to: date,
        accounts: Optional[Iterable[AccountSummary]] = None,
    ) -> Iterator[tuple[AccountSummary, LedgerBatch]]:
        """Yield (account, batch) per exportable account, in overview order. Depots are skipped."""
        for account in (self.list_accounts() if accounts is None else accounts):
            if account.kind is AccountKind.DEPOT:
                logger.info("Skipping depot %s (no transaction export)", account.identifier)
                continue
            yield account, self.fetch_transactions(account, date_from, date_to)

    def export_all(
        self,
        date_from: date,
        date_to: date,
        accounts: Optional[Iterable[AccountSummary]] = None,
    ) -> list[tuple[AccountSummary, LedgerBatch]]:
        return list(self.iter_exports(date_from, date_to, accounts))
