from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .util.money import cents_to_decimal


class AccountKind(str, Enum):
    CHECKING = "checking"
    DEPOT = "depot"
    CREDIT_CARD = "creditCard"


class ChallengeStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    EXPIRED = "expired"
    FAILED = "failed"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class MFAMethod(_Frozen):
    id: str
    device_label: str = ""
    enrolled_at: datetime
    locked: bool = False
    remaining_attempts: Optional[int] = None
    method_type: str = "seal_one"


class MFAChallenge(_Frozen):
    id: str
    method_id: str = ""
    correlation_id: str = ""
    status: ChallengeStatus = ChallengeStatus.PENDING


class HandshakeResult(_Frozen):
    confirmation_target: str
    anti_forgery_token: str = Field(repr=False)
    mfa_correlation_id: Optional[str] = None
    bootstrap_access_token: Optional[str] = Field(default=None, repr=False)
    bootstrap_expires_in: Optional[int] = None


class AccountSummary(_Frozen):
    display_name: str
    identifier: str
    kind: AccountKind
    transaction_ref: str = ""

    # Optional overview metadata
    balance_cents: Optional[int] = None
    currency: str = "EUR"
    balance_as_of: Optional[date] = None


class TransactionRecord(_Frozen):
    booking_date: date
    value_date: Optional[date] = None
    counterpart: str = ""
    purpose_text: str = ""
    amount_cents: int
    currency: str = "EUR"
    posting_text: str = ""
    reference_codes: dict[str, str] = Field(default_factory=dict)
    account_identifier: str = ""

    @property
    def amount(self):
        return cents_to_decimal(self.amount_cents)


class SkippedRow(_Frozen):
    line_number: int
    raw: dict[str, str] = Field(default_factory=dict)
    error: str


class LedgerBatch(BaseModel):
    account_identifier: str = ""
    records: list[TransactionRecord] = Field(default_factory=list)
    skipped: list[SkippedRow] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.skipped
