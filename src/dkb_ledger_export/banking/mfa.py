from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional, Sequence, Union

from ..errors import (
    ChallengeCancelled,
    ChallengeExpired,
    ChallengeFailed,
    InvalidSelection,
    MFATimedOut,
    NoEnrolledMethods,
)
from ..models import ChallengeStatus, HandshakeResult, MFAChallenge, MFAMethod

if TYPE_CHECKING:
    from .base import BankingSurface


logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 3.0
DEFAULT_MAX_POLL_ATTEMPTS = 60

# Receives the enrolled methods in display order, returns a 1-based index (int or the raw typed string).
MethodChooser = Callable[[Sequence[MFAMethod]], Union[int, str]]

_EXPIRED_STATUSES = {"expired", "canceled", "cancelled", "timeout", "timed_out"}
_FAILED_STATUSES = {"failed", "rejected", "declined", "error", "locked"}


class ChallengeState(str, Enum):
    NO_CHALLENGE = "no_challenge"
    CREATED = "created"
    POLLING = "polling"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PollOutcome:
    state: ChallengeState
    attempts: int
    last_status: str
    elapsed_seconds: float


def normalize_status(raw: Optional[str]) -> ChallengeStatus:
    """
    Map a surface-specific status string onto ChallengeStatus.

    The JSON:API surface reports "processed", the legacy HTML surface "PROCESSED"; comparison is
    case-insensitive. Anything unknown counts as still pending.
    """
    s = (raw or "").strip().lower()
    if s == ChallengeStatus.PROCESSED.value:
        return ChallengeStatus.PROCESSED
    if s in _EXPIRED_STATUSES:
        return ChallengeStatus.EXPIRED
    if s in _FAILED_STATUSES:
        return ChallengeStatus.FAILED
    return ChallengeStatus.PENDING


def select_latest_enrolled(methods: Sequence[MFAMethod]) -> MFAMethod:
    """
    Pick the most recently enrolled unlocked method. Ties keep the first one seen.
    """
    if not methods:
        raise NoEnrolledMethods("No MFA methods are enrolled for this login")
    candidates = [m for m in methods if not m.locked]
    if not candidates:
        raise NoEnrolledMethods(f"All {len(methods)} enrolled MFA methods are locked")

    best = candidates[0]
    for m in candidates[1:]:
        if m.enrolled_at > best.enrolled_at:
            best = m
    return best


def select_by_index(methods: Sequence[MFAMethod], index: Union[int, str]) -> MFAMethod:
    if not methods:
        raise NoEnrolledMethods("No MFA methods are enrolled for this login")

    if isinstance(index, bool):
        raise InvalidSelection(f"Invalid MFA device selection: {index!r}")
    if isinstance(index, str):
        s = index.strip()
        if not s.isdigit():
            raise InvalidSelection(f"Invalid MFA device selection: {index!r} (expected a number)")
        index = int(s)

    if index < 1 or index > len(methods):
        raise InvalidSelection(f"Invalid MFA device selection: {index} (choose 1-{len(methods)})")
    chosen = methods[index - 1]
    if chosen.locked:
        raise InvalidSelection(f"MFA device {index} ({chosen.device_label or chosen.id}) is locked")
    return chosen


def _default_sleep(seconds: float, cancel_event: Optional[threading.Event]) -> bool:
    """Returns True when cancelled while waiting."""
    if seconds <= 0:
        return bool(cancel_event is not None and cancel_event.is_set())
    if cancel_event is not None:
        return cancel_event.wait(seconds)
    time.sleep(seconds)
    return False


class ChallengePoller:
    """
    Bounded poll loop: at most `max_attempts` full request/response round trips, `interval_seconds` apart.

    Only the last observed status is kept between ticks.
    """

    def __init__(
        self,
        *,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float, Optional[threading.Event]], bool] = _default_sleep,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.interval_seconds = float(interval_seconds)
        self.max_attempts = int(max_attempts)
        self._clock = clock
        self._sleep = sleep

    def poll(
        self,
        fetch_status: Callable[[], str],
        *,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> PollOutcome:
        """
        `deadline` is an absolute value of the poller's clock (time.monotonic by default).
        """
        started = self._clock()
        last_status = ""
        attempts = 0

        def _outcome(state: ChallengeState) -> PollOutcome:
            return PollOutcome(
                state=state,
                attempts=attempts,
                last_status=last_status,
                elapsed_seconds=self._clock() - started,
            )

        while attempts < self.max_attempts:
            if cancel_event is not None and cancel_event.is_set():
                return _outcome(ChallengeState.CANCELLED)
            if deadline is not None and self._clock() >= deadline:
                logger.warning("MFA poll deadline reached after %d attempts", attempts)
                return _outcome(ChallengeState.TIMED_OUT)

            attempts += 1
            last_status = fetch_status()
            status = normalize_status(last_status)
            logger.debug("MFA poll %d/%d status=%r", attempts, self.max_attempts, last_status)

            if status is ChallengeStatus.PROCESSED:
                return _outcome(ChallengeState.CONFIRMED)
            if status is ChallengeStatus.EXPIRED:
                return _outcome(ChallengeState.EXPIRED)
            if status is ChallengeStatus.FAILED:
                return _outcome(ChallengeState.FAILED)

            if attempts >= self.max_attempts:
                break

            delay = self.interval_seconds
            if deadline is not None:
                delay = max(0.0, min(delay, deadline - self._clock()))
            if self._sleep(delay, cancel_event):
                return _outcome(ChallengeState.CANCELLED)

        # Attempts exhausted without a terminal status. Never treated as confirmed.
        return _outcome(ChallengeState.TIMED_OUT)


class MfaOrchestrator:
    """
    NO_CHALLENGE -> CREATED -> POLLING -> {CONFIRMED, EXPIRED, TIMED_OUT, FAILED, CANCELLED}.

    CONFIRMED is followed by the surface's finalization (single use, never retried). Every other exit
    raises.
    """

    def __init__(self, surface: "BankingSurface", *, poller: Optional[ChallengePoller] = None) -> None:
        self._surface = surface
        self._poller = poller or ChallengePoller()
        self.state = ChallengeState.NO_CHALLENGE
        self.last_outcome: Optional[PollOutcome] = None

    def confirm(
        self,
        handshake: HandshakeResult,
        *,
        method_chooser: Optional[MethodChooser] = None,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> MFAChallenge:
        if self.state is not ChallengeState.NO_CHALLENGE:
            raise RuntimeError("MfaOrchestrator is single use; start a new login for a new challenge")

        methods = self._surface.list_mfa_methods(handshake)
        method: Optional[MFAMethod] = None
        if methods is not None:
            method = self._select(methods, method_chooser)
            logger.info(
                "Using MFA device %r (id=%s enrolled_at=%s)",
                method.device_label,
                method.id,
                method.enrolled_at.isoformat(),
            )

        challenge = self._surface.create_challenge(handshake, method)
        self.state = ChallengeState.CREATED
        logger.info("MFA challenge created; confirm the login on your device.")

        self.state = ChallengeState.POLLING
        outcome = self._poller.poll(
            lambda: self._surface.fetch_challenge_status(challenge),
            cancel_event=cancel_event,
            deadline=deadline,
        )
        self.last_outcome = outcome
        self.state = outcome.state
        logger.info(
            "MFA poll finished (state=%s attempts=%d seconds=%.1f)",
            outcome.state.value,
            outcome.attempts,
            outcome.elapsed_seconds,
        )

        if outcome.state is ChallengeState.CONFIRMED:
            confirmed = challenge.model_copy(update={"status": ChallengeStatus.PROCESSED})
            self._surface.finalize(handshake, confirmed)
            return confirmed
        if outcome.state is ChallengeState.EXPIRED:
            raise ChallengeExpired(f"MFA challenge expired (last status {outcome.last_status!r})", step="mfa.poll")
        if outcome.state is ChallengeState.FAILED:
            raise ChallengeFailed(f"MFA challenge failed (last status {outcome.last_status!r})", step="mfa.poll")
        if outcome.state is ChallengeState.CANCELLED:
            raise ChallengeCancelled("MFA polling cancelled by caller", step="mfa.poll")
        raise MFATimedOut(
            f"MFA challenge not confirmed after {outcome.attempts} polls "
            f"({outcome.elapsed_seconds:.0f}s, last status {outcome.last_status!r})",
            step="mfa.poll",
        )

    def _select(self, methods: Sequence[MFAMethod], method_chooser: Optional[MethodChooser]) -> MFAMethod:
        if method_chooser is None:
            return select_latest_enrolled(methods)
        if not methods:
            raise NoEnrolledMethods("No MFA methods are enrolled for this login")
        return select_by_index(methods, method_chooser(methods))
