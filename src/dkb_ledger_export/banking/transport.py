from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from http.cookiejar import Cookie
from typing import Any, Optional, Protocol

import requests

from ..errors import TransportError


logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120 Safari/537.36"


@dataclass
class HttpRequest:
    method: str
    url: str
    params: dict[str, str] = field(default_factory=dict)
    form: Optional[dict[str, str]] = None
    body: Optional[bytes] = None
    headers: dict[str, str] = field(default_factory=dict)
    # Set by Session.apply(); lets the session reject requests decorated before a token rotation.
    token_generation: Optional[int] = None


@dataclass
class HttpResponse:
    status_code: int
    url: str
    content: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    encoding: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding or "utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content.decode("utf-8"))


class Transport(Protocol):
    """
    HTTP collaborator: a cookie-jar backed client. The banking core never opens sockets itself.
    """

    def do(self, request: HttpRequest) -> HttpResponse: ...

    def jar_cookies(self, domain: str) -> list[Cookie]: ...


class RequestsTransport:
    """
    `Transport` on top of a `requests.Session`.

    Redirects are followed (the legacy confirmation flow depends on a redirect chain) and every hop is logged.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        user_agent: str = "",
        session: Optional[requests.Session] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent or DEFAULT_USER_AGENT})
        self._log = log or logger

    @property
    def cookies(self) -> requests.cookies.RequestsCookieJar:
        return self._session.cookies

    def do(self, request: HttpRequest) -> HttpResponse:
        try:
            resp = self._session.request(
                request.method,
                request.url,
                params=request.params or None,
                data=request.form if request.form is not None else request.body,
                headers=request.headers or None,
                timeout=self._timeout,
                allow_redirects=True,
            )
        except requests.RequestException as e:
            raise TransportError(f"{request.method} {_strip_query(request.url)} failed: {e}") from e

        for hop in resp.history:
            self._log.info(
                "Redirect %s %s -> %s",
                hop.status_code,
                _strip_query(hop.url),
                _strip_query(hop.headers.get("Location", "")),
            )
        self._log.debug("%s %s -> %s", request.method, _strip_query(request.url), resp.status_code)

        return HttpResponse(
            status_code=resp.status_code,
            url=resp.url,
            content=resp.content,
            headers=dict(resp.headers),
            encoding=resp.encoding,
        )

    def jar_cookies(self, domain: str) -> list[Cookie]:
        wanted = (domain or "").lstrip(".").lower()
        out: list[Cookie] = []
        for c in self._session.cookies:
            cd = (c.domain or "").lstrip(".").lower()
            if cd == wanted or wanted.endswith("." + cd):
                out.append(c)
        return out


def _strip_query(url: str) -> str:
    # Query strings can carry poll ids and tokens; keep logs to scheme/host/path.
    return (url or "").split("?", 1)[0]
