from .api import ApiSurface
from .base import BankCredentials, BankingSurface
from .mfa import ChallengePoller, ChallengeState, MfaOrchestrator, select_by_index, select_latest_enrolled
from .session import Session
from .transport import HttpRequest, HttpResponse, RequestsTransport, Transport
from .web import WebSurface

__all__ = [
    "ApiSurface",
    "BankCredentials",
    "BankingSurface",
    "ChallengePoller",
    "ChallengeState",
    "HttpRequest",
    "HttpResponse",
    "MfaOrchestrator",
    "RequestsTransport",
    "Session",
    "Transport",
    "WebSurface",
    "select_by_index",
    "select_latest_enrolled",
]
