from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from ..errors import NotAuthenticated, SessionExpired, StaleAntiForgeryToken
from ..logging_config import mask_secret
from .transport import HttpRequest


logger = logging.getLogger(__name__)

ANTI_FORGERY_HEADER = "x-xsrf-token"
ANTI_FORGERY_COOKIE = "__Host-xsrf"


class Session:
    """
    Rotating credentials of one authenticated run.

    Cookies live in the transport's jar; this object only holds what has to be attached by hand. It is
    mutated by the handshake and the MFA orchestrator and read by every outgoing request. Nothing here
    does I/O or blocks.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._anti_forgery_token: Optional[str] = None
        self.mfa_correlation_id: Optional[str] = None
        self.access_token: Optional[str] = None
        self.access_token_expires_at: Optional[float] = None
        self.generation = 0

    @property
    def authenticated(self) -> bool:
        return self._anti_forgery_token is not None

    def current_token(self) -> str:
        if self._anti_forgery_token is None:
            raise NotAuthenticated("No anti-forgery token yet; run the credential handshake first.")
        return self._anti_forgery_token

    def rotate(self, new_token: str) -> None:
        if not new_token:
            raise ValueError("rotate: empty anti-forgery token")
        if new_token == self._anti_forgery_token:
            return
        self._anti_forgery_token = new_token
        self.generation += 1
        logger.debug("Anti-forgery token rotated (generation=%d token=%s)", self.generation, mask_secret(new_token))

    def apply(self, request: HttpRequest) -> HttpRequest:
        request.headers[ANTI_FORGERY_HEADER] = self.current_token()
        request.token_generation = self.generation
        return request

    def ensure_current(self, request: HttpRequest) -> None:
        """
        Fail fast if `request` was decorated with a token that has been rotated away since.
        """
        if request.token_generation is None:
            return
        if request.token_generation != self.generation:
            raise StaleAntiForgeryToken(
                f"Request was prepared with token generation {request.token_generation}, "
                f"current generation is {self.generation}"
            )

    def set_access_token(self, token: str, *, expires_in: Optional[int] = None) -> None:
        self.access_token = token
        self.access_token_expires_at = (self._clock() + expires_in) if expires_in else None

    def ensure_not_expired(self, *, margin_seconds: float = 30.0) -> None:
        if self.access_token_expires_at is None:
            return
        remaining = self.access_token_expires_at - self._clock()
        if remaining <= margin_seconds:
            raise SessionExpired(f"Access token expires in {remaining:.0f}s; log in again")

    def clear(self) -> None:
        self._anti_forgery_token = None
        self.mfa_correlation_id = None
        self.access_token = None
        self.access_token_expires_at = None
        self.generation += 1
