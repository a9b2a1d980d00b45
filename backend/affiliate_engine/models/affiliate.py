"""
Affiliate Program Models

Domain types for the affiliate attribution & commission engine:
- Closed status enums with explicit transition tables
- Program settings, affiliate, referral, commission and payout records
- The client-held referral token (last-click-wins attribution)
- The billing "payment posted" event contract

Monetary values are integer cents, rates are basis points (2000 = 20%).
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any, FrozenSet, Mapping, MutableMapping

from pydantic import BaseModel, Field, field_validator

from affiliate_engine.utils.errors import InvalidTransitionError


BASIS_POINTS_DENOMINATOR = 10000

# Client-held storage keys for the referral token
REFERRAL_CODE_KEY = "affiliate_ref"
REFERRAL_TIME_KEY = "affiliate_ref_time"
REFERRAL_CLICK_ID_KEY = "affiliate_click_id"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# STATUS ENUMS
# ============================================================

class AffiliateStatus(str, Enum):
    """Application / membership status of an affiliate."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"

    def allowed_transitions(self) -> FrozenSet["AffiliateStatus"]:
        return _AFFILIATE_TRANSITIONS[self]

    def can_transition_to(self, target: "AffiliateStatus") -> bool:
        return target in self.allowed_transitions()


class CommissionType(str, Enum):
    """Whether a referral earns once or on every payment."""
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class CommissionStatus(str, Enum):
    """Lifecycle of a commission ledger entry."""
    EARNED = "earned"
    PENDING_PAYOUT = "pending_payout"
    PAID = "paid"

    def allowed_transitions(self) -> FrozenSet["CommissionStatus"]:
        return _COMMISSION_TRANSITIONS[self]

    def can_transition_to(self, target: "CommissionStatus") -> bool:
        return target in self.allowed_transitions()


class PayoutStatus(str, Enum):
    """Lifecycle of a payout request."""
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def allowed_transitions(self) -> FrozenSet["PayoutStatus"]:
        return _PAYOUT_TRANSITIONS[self]

    def can_transition_to(self, target: "PayoutStatus") -> bool:
        return target in self.allowed_transitions()

    @property
    def is_open(self) -> bool:
        """Still awaiting an outcome from payout processing."""
        return self in OPEN_PAYOUT_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.allowed_transitions()


class PayoutMethod(str, Enum):
    """How an affiliate gets paid."""
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    E_TRANSFER = "e_transfer"

    @property
    def uses_email(self) -> bool:
        return self in (PayoutMethod.PAYPAL, PayoutMethod.E_TRANSFER)


class PayoutSchedule(str, Enum):
    """Label describing how often payouts are batched by operations."""
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


# Every enum member must appear as a key: a missing key fails at import time
_AFFILIATE_TRANSITIONS: Dict[AffiliateStatus, FrozenSet[AffiliateStatus]] = {
    AffiliateStatus.PENDING: frozenset({AffiliateStatus.APPROVED, AffiliateStatus.REJECTED}),
    AffiliateStatus.APPROVED: frozenset({AffiliateStatus.SUSPENDED}),
    AffiliateStatus.SUSPENDED: frozenset({AffiliateStatus.APPROVED}),
    AffiliateStatus.REJECTED: frozenset(),
}

_COMMISSION_TRANSITIONS: Dict[CommissionStatus, FrozenSet[CommissionStatus]] = {
    CommissionStatus.EARNED: frozenset({CommissionStatus.PENDING_PAYOUT}),
    # back to earned only when the payout holding it fails or is cancelled
    CommissionStatus.PENDING_PAYOUT: frozenset({CommissionStatus.PAID, CommissionStatus.EARNED}),
    CommissionStatus.PAID: frozenset(),
}

_PAYOUT_TRANSITIONS: Dict[PayoutStatus, FrozenSet[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({
        PayoutStatus.APPROVED, PayoutStatus.FAILED, PayoutStatus.CANCELLED,
    }),
    PayoutStatus.APPROVED: frozenset({PayoutStatus.PROCESSING, PayoutStatus.FAILED}),
    PayoutStatus.PROCESSING: frozenset({PayoutStatus.COMPLETED, PayoutStatus.FAILED}),
    PayoutStatus.COMPLETED: frozenset(),
    PayoutStatus.FAILED: frozenset(),
    PayoutStatus.CANCELLED: frozenset(),
}

for _enum, _table in (
    (AffiliateStatus, _AFFILIATE_TRANSITIONS),
    (CommissionStatus, _COMMISSION_TRANSITIONS),
    (PayoutStatus, _PAYOUT_TRANSITIONS),
):
    _missing = set(_enum) - set(_table)
    if _missing:
        raise RuntimeError(f"Transition table for {_enum.__name__} missing {sorted(m.value for m in _missing)}")

OPEN_PAYOUT_STATUSES: FrozenSet[PayoutStatus] = frozenset({
    PayoutStatus.PENDING, PayoutStatus.APPROVED, PayoutStatus.PROCESSING,
})


def assert_transition(entity: str, current: Enum, target: Enum) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if not current.can_transition_to(target):
        raise InvalidTransitionError(entity, current.value, target.value)


def sources_for(target: PayoutStatus) -> FrozenSet[PayoutStatus]:
    """All payout statuses from which target is reachable in one step."""
    return frozenset(s for s in PayoutStatus if s.can_transition_to(target))


# ============================================================
# PROGRAM SETTINGS
# ============================================================

class ProgramSettings(BaseModel):
    """Singleton program configuration (one row of affiliate_settings)."""
    commission_type: CommissionType = CommissionType.RECURRING
    commission_rate_bps: int = Field(2000, ge=0, le=BASIS_POINTS_DENOMINATOR)
    recurring_months: Optional[int] = Field(None, ge=1, description="None = unlimited")
    attribution_window_days: int = Field(30, ge=1, le=365)
    cookie_duration_days: int = Field(30, ge=1, le=365)
    minimum_payout_cents: int = Field(5000, ge=0)
    payout_schedule: PayoutSchedule = PayoutSchedule.MONTHLY
    program_active: bool = True
    require_approval: bool = True
    allow_self_referral: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ProgramSettings":
        fields = {k: v for k, v in row.items() if k in cls.model_fields and v is not None}
        # recurring_months None is meaningful (unlimited)
        fields["recurring_months"] = row.get("recurring_months")
        return cls(**fields)


# ============================================================
# RECORDS
# ============================================================

class Affiliate(BaseModel):
    """A program participant and its running totals."""
    id: str
    user_id: str
    referral_code: str
    status: AffiliateStatus
    company_name: Optional[str] = None
    website_url: Optional[str] = None
    promotional_methods: Optional[str] = None
    payout_method: Optional[PayoutMethod] = None
    payout_email: Optional[str] = None
    payout_bank_reference: Optional[str] = None
    total_clicks: int = 0
    total_signups: int = 0
    total_paid_signups: int = 0
    total_commission_earned_cents: int = 0
    total_commission_paid_cents: int = 0
    pending_commission_cents: int = 0
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    suspension_reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def payout_destination(self) -> Optional[str]:
        """Where money goes: an email for PayPal/e-transfer, a bank reference otherwise."""
        if self.payout_method is None:
            return None
        if self.payout_method.uses_email:
            return self.payout_email
        return self.payout_bank_reference or self.payout_email

    @property
    def can_receive_payouts(self) -> bool:
        return self.status == AffiliateStatus.APPROVED and bool(self.payout_destination)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Affiliate":
        data = {k: v for k, v in row.items() if k in cls.model_fields}
        for counter in (
            "total_clicks", "total_signups", "total_paid_signups",
            "total_commission_earned_cents", "total_commission_paid_cents",
            "pending_commission_cents",
        ):
            data[counter] = data.get(counter) or 0
        return cls(**data)


class Referral(BaseModel):
    """One tracked visit and its conversion progress."""
    id: str
    affiliate_id: str
    click_id: str
    clicked_at: datetime
    attribution_expires_at: Optional[datetime] = None
    landing_page: Optional[str] = None
    referrer_url: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    converted: bool = False
    signup_at: Optional[datetime] = None
    referred_user_id: Optional[str] = None
    referred_organization_id: Optional[str] = None
    first_payment_at: Optional[datetime] = None
    first_payment_amount_cents: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Referral":
        data = {k: v for k, v in row.items() if k in cls.model_fields}
        data["converted"] = bool(data.get("converted"))
        return cls(**data)


class Commission(BaseModel):
    """One accrual ledger entry tied to a billing payment."""
    id: str
    affiliate_id: str
    referral_id: str
    commission_type: CommissionType
    billing_month: str
    payment_amount_cents: int
    commission_rate_bps: int
    commission_amount_cents: int
    status: CommissionStatus = CommissionStatus.EARNED
    payout_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Commission":
        return cls(**{k: v for k, v in row.items() if k in cls.model_fields})


class Payout(BaseModel):
    """One payout request and its processing outcome."""
    id: str
    affiliate_id: str
    amount_cents: int
    commission_count: int = 0
    payout_method: Optional[PayoutMethod] = None
    payout_destination: Optional[str] = None
    status: PayoutStatus = PayoutStatus.PENDING
    requested_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Payout":
        return cls(**{k: v for k, v in row.items() if k in cls.model_fields})


# ============================================================
# CLIENT-HELD ATTRIBUTION TOKEN
# ============================================================

class ReferralToken(BaseModel):
    """
    Attribution token held by the visitor between click and signup.

    Stored as three flat keys so it fits cookies or any browser key/value
    store. A token is only usable when all three keys are present; partial
    state is treated as absent and never repaired.
    """
    code: str
    click_id: str
    clicked_at: datetime

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return value.strip().upper()

    @classmethod
    def from_storage(cls, storage: Mapping[str, str]) -> Optional["ReferralToken"]:
        code = storage.get(REFERRAL_CODE_KEY)
        click_id = storage.get(REFERRAL_CLICK_ID_KEY)
        timestamp = storage.get(REFERRAL_TIME_KEY)
        if not code or not click_id or not timestamp:
            return None
        try:
            clicked_at = datetime.fromtimestamp(int(timestamp) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return None
        return cls(code=code, click_id=click_id, clicked_at=clicked_at)

    def to_storage(self) -> Dict[str, str]:
        return {
            REFERRAL_CODE_KEY: self.code,
            REFERRAL_CLICK_ID_KEY: self.click_id,
            REFERRAL_TIME_KEY: str(int(self.clicked_at.timestamp() * 1000)),
        }

    def write_to(self, storage: MutableMapping[str, str]) -> None:
        storage.update(self.to_storage())

    def expires_at(self, ttl_days: int) -> datetime:
        return self.clicked_at + timedelta(days=ttl_days)

    def is_expired(self, now: datetime, ttl_days: int) -> bool:
        return now > self.expires_at(ttl_days)


# ============================================================
# BILLING CONTRACT
# ============================================================

class PaymentPostedEvent(BaseModel):
    """A payment that posted for an organization (billing collaborator contract)."""
    organization_id: str = Field(..., min_length=1)
    amount_cents: int = Field(..., ge=0, description="Integer minor currency units")
    billing_month: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$", description="YYYY-MM")
    payment_reference: Optional[str] = Field(None, description="Billing-side payment id, for logs")
