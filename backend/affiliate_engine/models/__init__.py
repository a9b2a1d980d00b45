from .affiliate import (
    utcnow,
    AffiliateStatus,
    CommissionType,
    CommissionStatus,
    PayoutStatus,
    PayoutMethod,
    PayoutSchedule,
    OPEN_PAYOUT_STATUSES,
    assert_transition,
    sources_for,
    ProgramSettings,
    Affiliate,
    Referral,
    Commission,
    Payout,
    ReferralToken,
    PaymentPostedEvent,
)

__all__ = [
    "utcnow",
    "AffiliateStatus",
    "CommissionType",
    "CommissionStatus",
    "PayoutStatus",
    "PayoutMethod",
    "PayoutSchedule",
    "OPEN_PAYOUT_STATUSES",
    "assert_transition",
    "sources_for",
    "ProgramSettings",
    "Affiliate",
    "Referral",
    "Commission",
    "Payout",
    "ReferralToken",
    "PaymentPostedEvent",
]
