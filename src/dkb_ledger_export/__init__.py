from .client import BankingClient
from .config import AppConfig, load_config
from .models import AccountKind, AccountSummary, LedgerBatch, TransactionRecord

__version__ = "0.1.0"

__all__ = [
    "AccountKind",
    "AccountSummary",
    "AppConfig",
    "BankingClient",
    "LedgerBatch",
    "TransactionRecord",
    "load_config",
]
