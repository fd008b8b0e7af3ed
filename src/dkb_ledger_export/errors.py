from __future__ import annotations

from typing import Optional


class BankingError(RuntimeError):
    """
    Base class for everything the banking core raises.

    `step` names the stage that failed (e.g. "handshake", "mfa.poll", "export") and `account` the account
    identifier when the failure is scoped to one account, so callers can decide between re-prompting the
    user and aborting the run.
    """

    step: str = ""

    def __init__(self, message: str, *, step: str = "", account: Optional[str] = None) -> None:
        super().__init__(message)
        if step:
            self.step = step
        self.account = account

    def __str__(self) -> str:
        msg = super().__str__()
        ctx = []
        if self.step:
            ctx.append(f"step={self.step}")
        if self.account:
            ctx.append(f"account={self.account}")
        return f"{msg} ({' '.join(ctx)})" if ctx else msg


class TransportError(BankingError):
    """Network/transport failure. Never retried inside the core."""

    step = "transport"


# Session state


class NotAuthenticated(BankingError):
    step = "session"


class StaleAntiForgeryToken(BankingError):
    step = "session"


class SessionExpired(BankingError):
    step = "session"


# Credential handshake


class HandshakeError(BankingError):
    step = "handshake"


class PageFieldMissing(BankingError):
    """An expected field/element was absent from a page that otherwise loaded fine (layout changed)."""


class HandshakeFieldMissing(PageFieldMissing, HandshakeError):
    pass


class CredentialsRejected(HandshakeError):
    pass


class AmbiguousCredentials(HandshakeError):
    """The identity endpoint refused the request but its response does not say whether the credentials were wrong."""


# MFA


class MFAError(BankingError):
    step = "mfa"


class NoEnrolledMethods(MFAError):
    pass


class InvalidSelection(MFAError):
    pass


class ChallengeExpired(MFAError):
    pass


class ChallengeFailed(MFAError):
    pass


class MFATimedOut(MFAError):
    pass


class ChallengeCancelled(MFAError):
    pass


class FinalizationFailed(MFAError):
    """The confirmed challenge could not be exchanged. The challenge is consumed; restart the whole login."""

    step = "mfa.finalize"


# Ledger retrieval


class LedgerError(BankingError):
    step = "ledger"


class UnsupportedAccountKind(LedgerError):
    pass


class ExportFormatError(LedgerError):
    pass


class RecordDecodeError(LedgerError):
    """A single transaction row could not be decoded."""

    def __init__(
        self,
        message: str,
        *,
        step: str = "",
        account: Optional[str] = None,
        line_number: Optional[int] = None,
    ) -> None:
        super().__init__(message, step=step, account=account)
        self.line_number = line_number


class AmountParseError(RecordDecodeError):
    pass
