from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Optional, Union


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import pytest  # noqa: E402
from requests.cookies import create_cookie  # noqa: E402

from dkb_ledger_export.banking.transport import HttpRequest, HttpResponse  # noqa: E402


Reply = Union[HttpResponse, Callable[[HttpRequest], HttpResponse]]


def html_response(body: str, *, status: int = 200, url: str = "") -> HttpResponse:
    return HttpResponse(status_code=status, url=url, content=body.encode("utf-8"), encoding="utf-8")


def json_response(payload: Any, *, status: int = 200, url: str = "") -> HttpResponse:
    return HttpResponse(
        status_code=status,
        url=url,
        content=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        encoding="utf-8",
    )


def bytes_response(body: bytes, *, status: int = 200, url: str = "") -> HttpResponse:
    return HttpResponse(status_code=status, url=url, content=body, encoding="iso-8859-15")


class FakeTransport:
    """
    In-memory Transport: replies are queued per (METHOD, url without query). The last queued reply of a
    route is repeated once the queue drains. Every request is recorded.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Reply]] = {}
        self.requests: list[HttpRequest] = []
        self.cookies: list = []
        self._on_request: list[Callable[[HttpRequest], None]] = []

    def add(self, method: str, url: str, *replies: Reply) -> "FakeTransport":
        self.routes.setdefault((method.upper(), url), []).extend(replies)
        return self

    def set_cookie(self, name: str, value: str, domain: str) -> None:
        self.cookies = [c for c in self.cookies if not (c.name == name and c.domain == domain)]
        self.cookies.append(create_cookie(name, value, domain=domain))

    def on_request(self, hook: Callable[[HttpRequest], None]) -> None:
        self._on_request.append(hook)

    def do(self, request: HttpRequest) -> HttpResponse:
        self.requests.append(request)
        for hook in self._on_request:
            hook(request)
        key = (request.method.upper(), request.url.split("?", 1)[0])
        queue = self.routes.get(key)
        if not queue:
            raise AssertionError(f"Unexpected request {key}")
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        return reply(request) if callable(reply) else reply

    def jar_cookies(self, domain: str) -> list:
        wanted = domain.lstrip(".").lower()
        return [c for c in self.cookies if c.domain.lstrip(".").lower() == wanted]

    def sent(self, method: str, url: str) -> list[HttpRequest]:
        return [r for r in self.requests if r.method == method and r.url.split("?", 1)[0] == url]


class FakeClock:
    """Monotonic clock + sleep pair for the poll loop; sleeping advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float, cancel_event: Optional[Any] = None) -> bool:
        self.sleeps.append(seconds)
        self.now += seconds
        return bool(cancel_event is not None and cancel_event.is_set())


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # A developer's .env / shell must not leak into config tests.
    for name in (
        "DKB_SURFACE",
        "DKB_BASE_URL",
        "DKB_USERNAME",
        "DKB_PASSWORD",
        "DKB_MFA_SELECTION",
        "DKB_MFA_POLL_INTERVAL_SECONDS",
        "DKB_MFA_MAX_POLL_ATTEMPTS",
        "DKB_RUN_TIMEOUT_SECONDS",
        "DKB_HTTP_TIMEOUT_SECONDS",
        "DKB_USER_AGENT",
        "DKB_STRICT_ROWS",
        "EXPORT_DIR",
        "LOG_LEVEL",
        "LOG_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
