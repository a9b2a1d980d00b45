"""
Affiliate Router - Affiliate Program API

Endpoints for referral tracking, signup attribution, the affiliate
dashboard and payout requests.

Public endpoints (no auth):
- POST /affiliate/clicks - Track a referral link click, set attribution cookies
- GET /affiliate/validate/{code} - Validate a referral code

Authenticated endpoints:
- POST /affiliate/signup/link - Link the caller's signup to the stored click
- GET /affiliate/status - Check if current user is an affiliate
- POST /affiliate/apply - Apply to become an affiliate
- PATCH /affiliate/profile - Update profile and payout details
- GET /affiliate/dashboard - Get affiliate dashboard data
- GET /affiliate/referrals - List referrals with pagination
- GET /affiliate/commissions - List commissions with pagination
- GET /affiliate/payouts - List payouts with pagination
- POST /affiliate/payouts - Request a payout of the pending balance
"""

import os
import logging
from typing import Optional, List, Dict, Any
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from affiliate_engine.deps import get_user_org
from affiliate_engine.models.affiliate import (
    Affiliate,
    Commission,
    CommissionStatus,
    Payout,
    PayoutMethod,
    ProgramSettings,
    Referral,
)
from affiliate_engine.services.affiliate_service import get_affiliate_service
from affiliate_engine.services.click_tracker import (
    ReferralTokenStore,
    build_referral_url,
    get_click_tracker,
)
from affiliate_engine.services.commission_service import get_commission_service
from affiliate_engine.services.payout_service import get_payout_service
from affiliate_engine.services.program_settings import get_program_settings_service
from affiliate_engine.services.signup_linker import SignupLinkResult, get_signup_linker
from affiliate_engine.utils.errors import handle_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/affiliate", tags=["affiliate"])

REFERRAL_COOKIE_SECURE = os.getenv("REFERRAL_COOKIE_SECURE", "true").lower() == "true"


# =============================================================================
# Request/Response Models
# =============================================================================

class TrackClickRequest(BaseModel):
    """Request to track an affiliate click."""
    referral_code: str = Field(..., min_length=1, max_length=32, description="Code from the ?ref= parameter")
    click_id: Optional[str] = Field(None, max_length=64, description="Client-generated id, makes retries safe")
    landing_page: Optional[str] = Field(None, description="Page they landed on")
    referrer_url: Optional[str] = Field(None, description="Where they came from")


class TrackClickResponse(BaseModel):
    """Response for click tracking."""
    success: bool
    click_id: Optional[str] = None
    message: Optional[str] = None


class ValidateCodeResponse(BaseModel):
    """Response for referral code validation."""
    valid: bool


class LinkSignupRequest(BaseModel):
    """Explicit token for clients that keep it outside cookies."""
    click_id: Optional[str] = Field(None, description="Click id from client storage; cookies are used when omitted")


class LinkSignupResponse(BaseModel):
    linked: bool
    reason: str
    message: str


class AffiliateResponse(BaseModel):
    """The caller's affiliate account."""
    id: str
    referral_code: str
    referral_url: str
    status: str
    company_name: Optional[str] = None
    website_url: Optional[str] = None
    promotional_methods: Optional[str] = None
    payout_method: Optional[str] = None
    payout_email: Optional[str] = None
    payout_bank_reference: Optional[str] = None
    rejection_reason: Optional[str] = None
    suspension_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class AffiliateStatusResponse(BaseModel):
    """Response for affiliate status check."""
    is_affiliate: bool
    affiliate: Optional[AffiliateResponse] = None


class AffiliateApplicationRequest(BaseModel):
    """Request to apply as affiliate."""
    company_name: Optional[str] = Field(None, max_length=200)
    website_url: Optional[str] = Field(None, max_length=500)
    promotional_methods: Optional[str] = Field(
        None,
        description="How you plan to promote the product",
        max_length=2000
    )
    payout_method: Optional[PayoutMethod] = None
    payout_email: Optional[str] = Field(None, max_length=320)
    payout_bank_reference: Optional[str] = Field(None, max_length=200)


class UpdateProfileRequest(BaseModel):
    """Partial profile update; the referral code cannot be changed."""
    company_name: Optional[str] = Field(None, max_length=200)
    website_url: Optional[str] = Field(None, max_length=500)
    promotional_methods: Optional[str] = Field(None, max_length=2000)
    payout_method: Optional[PayoutMethod] = None
    payout_email: Optional[str] = Field(None, max_length=320)
    payout_bank_reference: Optional[str] = Field(None, max_length=200)


class AffiliateStatsResponse(BaseModel):
    """Affiliate statistics."""
    total_clicks: int
    total_signups: int
    total_paid_signups: int
    conversion_rate: float
    total_commission_earned_cents: int
    total_commission_paid_cents: int
    pending_commission_cents: int
    this_month_clicks: int
    this_month_signups: int
    this_month_commission_cents: int


class AffiliateDashboardResponse(BaseModel):
    """Full affiliate dashboard data."""
    affiliate: AffiliateResponse
    stats: AffiliateStatsResponse
    recent_referrals: List[Referral]
    recent_commissions: List[Commission]
    recent_payouts: List[Payout]
    minimum_payout_cents: int
    can_request_payout: bool


class ReferralsListResponse(BaseModel):
    """Paginated referrals list."""
    referrals: List[Referral]
    limit: int
    offset: int
    has_more: bool


class CommissionsListResponse(BaseModel):
    """Paginated commissions list."""
    commissions: List[Commission]
    limit: int
    offset: int
    has_more: bool


class PayoutsListResponse(BaseModel):
    """Paginated payouts list."""
    payouts: List[Payout]
    limit: int
    offset: int
    has_more: bool


def _affiliate_response(affiliate: Affiliate) -> AffiliateResponse:
    return AffiliateResponse(
        **affiliate.model_dump(mode="json", include=set(AffiliateResponse.model_fields)),
        referral_url=build_referral_url(affiliate.referral_code),
    )


async def _require_affiliate(user_id: str) -> Affiliate:
    try:
        affiliate = await get_affiliate_service().get_affiliate_by_user(user_id)
    except Exception as e:
        raise handle_exception(e, "affiliate_lookup", user_id=user_id)
    if not affiliate:
        raise HTTPException(status_code=404, detail="Not an affiliate")
    return affiliate


# =============================================================================
# Attribution cookies
# =============================================================================

def _cookie_store(request: Request) -> ReferralTokenStore:
    """Token store seeded from the request cookies."""
    return ReferralTokenStore({
        key: value for key, value in request.cookies.items()
        if key in ReferralTokenStore.KEYS
    })


def _write_cookies(response: Response, store: ReferralTokenStore, max_age_days: int) -> None:
    for key in ReferralTokenStore.KEYS:
        if key in store.storage:
            response.set_cookie(
                key,
                store.storage[key],
                max_age=max_age_days * 86400,
                secure=REFERRAL_COOKIE_SECURE,
                samesite="lax",
            )


def _clear_cookies(response: Response) -> None:
    for key in ReferralTokenStore.KEYS:
        response.delete_cookie(key)


async def _cookie_duration_days() -> int:
    try:
        settings = await get_program_settings_service().get_settings()
    except Exception as e:
        logger.warning(f"Using default cookie duration, settings unavailable: {e}")
        settings = ProgramSettings()
    return settings.cookie_duration_days


# =============================================================================
# PUBLIC ENDPOINTS (No Auth)
# =============================================================================

@router.post("/clicks", response_model=TrackClickResponse)
async def track_click(
    request: TrackClickRequest,
    http_request: Request,
    response: Response,
):
    """
    Track an affiliate link click.

    Called from frontend when user lands with ?ref= parameter.
    No authentication required. Never fails: an invalid code or an
    unavailable store returns success=False.
    """
    tracker = get_click_tracker()
    store = _cookie_store(http_request)

    ip_address = http_request.client.host if http_request.client else None
    user_agent = http_request.headers.get("user-agent")

    click_id = await tracker.track_click(
        request.referral_code,
        landing_page=request.landing_page,
        referrer_url=request.referrer_url,
        user_agent=user_agent,
        ip_address=ip_address,
        click_id=request.click_id,
        store=store,
    )

    if not click_id:
        return TrackClickResponse(success=False, message="Invalid referral code")

    _write_cookies(response, store, await _cookie_duration_days())
    return TrackClickResponse(success=True, click_id=click_id)


@router.get("/validate/{code}", response_model=ValidateCodeResponse)
async def validate_referral_code(code: str):
    """
    Validate that a referral code belongs to an approved affiliate.

    No authentication required.
    """
    validation = await get_click_tracker().validate_code(code)
    return ValidateCodeResponse(valid=validation.is_valid)


# =============================================================================
# AUTHENTICATED ENDPOINTS
# =============================================================================

@router.post("/signup/link", response_model=LinkSignupResponse)
async def link_signup(
    http_request: Request,
    response: Response,
    request: Optional[LinkSignupRequest] = None,
    user_org: tuple = Depends(get_user_org)
):
    """
    Link the caller's new account to the referral click that brought them in.

    Called once after registration. The attribution cookies are cleared when
    the link succeeds; rejections (expired window, already used, ...) leave
    them untouched.
    """
    user_id, organization_id = user_org
    linker = get_signup_linker()
    store = _cookie_store(http_request)

    try:
        if request and request.click_id:
            result: SignupLinkResult = await linker.link_signup(request.click_id, user_id, organization_id)
        else:
            result = await linker.link_stored_referral(store, user_id, organization_id)
    except HTTPException:
        raise
    except Exception as e:
        raise handle_exception(e, "signup_link", user_id=user_id, organization_id=organization_id)

    if result.linked:
        _clear_cookies(response)

    return LinkSignupResponse(linked=result.linked, reason=result.reason, message=result.message)


@router.get("/status", response_model=AffiliateStatusResponse)
async def get_affiliate_status(
    user_org: tuple = Depends(get_user_org)
):
    """
    Check if the current user is an affiliate.

    Returns affiliate record if they are one, otherwise is_affiliate=False.
    """
    user_id, organization_id = user_org

    try:
        affiliate = await get_affiliate_service().get_affiliate_by_user(user_id)
    except Exception as e:
        raise handle_exception(e, "affiliate_status", user_id=user_id)

    if not affiliate:
        return AffiliateStatusResponse(is_affiliate=False)
    return AffiliateStatusResponse(is_affiliate=True, affiliate=_affiliate_response(affiliate))


@router.post("/apply", response_model=AffiliateStatusResponse)
async def apply_to_become_affiliate(
    request: AffiliateApplicationRequest,
    user_org: tuple = Depends(get_user_org)
):
    """
    Apply to become an affiliate.

    Creates a new affiliate record. Depending on program settings,
    the affiliate may be auto-approved or require manual review.
    """
    user_id, organization_id = user_org

    try:
        affiliate = await get_affiliate_service().apply_to_become_affiliate(
            user_id=user_id,
            company_name=request.company_name,
            website_url=request.website_url,
            promotional_methods=request.promotional_methods,
            payout_method=request.payout_method.value if request.payout_method else None,
            payout_email=request.payout_email,
            payout_bank_reference=request.payout_bank_reference,
        )
    except Exception as e:
        raise handle_exception(e, "affiliate_apply", user_id=user_id)

    return AffiliateStatusResponse(is_affiliate=True, affiliate=_affiliate_response(affiliate))


@router.patch("/profile", response_model=AffiliateResponse)
async def update_profile(
    request: UpdateProfileRequest,
    user_org: tuple = Depends(get_user_org)
):
    """Update profile and payout details."""
    user_id, organization_id = user_org
    affiliate = await _require_affiliate(user_id)

    changes = request.model_dump(mode="json", exclude_unset=True)

    try:
        updated = await get_affiliate_service().update_profile(affiliate.id, changes)
    except Exception as e:
        raise handle_exception(e, "affiliate_profile_update", user_id=user_id, resource_id=affiliate.id)

    return _affiliate_response(updated)


@router.get("/dashboard", response_model=AffiliateDashboardResponse)
async def get_dashboard(
    user_org: tuple = Depends(get_user_org)
):
    """
    Get affiliate dashboard data.

    Stats, recent referrals, commissions and payouts in one call.
    """
    user_id, organization_id = user_org
    affiliate = await _require_affiliate(user_id)

    try:
        dashboard: Dict[str, Any] = await get_affiliate_service().get_dashboard(affiliate.id)
    except Exception as e:
        raise handle_exception(e, "affiliate_dashboard", user_id=user_id, resource_id=affiliate.id)

    return AffiliateDashboardResponse(
        **{**dashboard, "affiliate": _affiliate_response(dashboard["affiliate"])}
    )


@router.get("/referrals", response_model=ReferralsListResponse)
async def get_referrals(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    converted: Optional[bool] = None,
    user_org: tuple = Depends(get_user_org)
):
    """
    Get paginated list of referrals, most recent click first.
    """
    user_id, organization_id = user_org
    affiliate = await _require_affiliate(user_id)

    try:
        # one extra row tells us whether another page exists
        referrals = await get_affiliate_service().get_referrals(
            affiliate.id, limit=limit + 1, offset=offset, converted=converted
        )
    except Exception as e:
        raise handle_exception(e, "affiliate_referrals", user_id=user_id)

    return ReferralsListResponse(
        referrals=referrals[:limit],
        limit=limit,
        offset=offset,
        has_more=len(referrals) > limit,
    )


@router.get("/commissions", response_model=CommissionsListResponse)
async def get_commissions(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: Optional[CommissionStatus] = None,
    user_org: tuple = Depends(get_user_org)
):
    """
    Get paginated list of commissions, newest first.
    """
    user_id, organization_id = user_org
    affiliate = await _require_affiliate(user_id)

    try:
        commissions = await get_commission_service().get_commissions(
            affiliate.id, limit=limit + 1, offset=offset, status=status
        )
    except Exception as e:
        raise handle_exception(e, "affiliate_commissions", user_id=user_id)

    return CommissionsListResponse(
        commissions=commissions[:limit],
        limit=limit,
        offset=offset,
        has_more=len(commissions) > limit,
    )


@router.get("/payouts", response_model=PayoutsListResponse)
async def get_payouts(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_org: tuple = Depends(get_user_org)
):
    """
    Get paginated list of payouts, most recent request first.
    """
    user_id, organization_id = user_org
    affiliate = await _require_affiliate(user_id)

    try:
        payouts = await get_payout_service().get_payouts(affiliate.id, limit=limit + 1, offset=offset)
    except Exception as e:
        raise handle_exception(e, "affiliate_payouts", user_id=user_id)

    return PayoutsListResponse(
        payouts=payouts[:limit],
        limit=limit,
        offset=offset,
        has_more=len(payouts) > limit,
    )


@router.post("/payouts", response_model=Payout, status_code=201)
async def request_payout(
    user_org: tuple = Depends(get_user_org)
):
    """
    Request a payout of the full pending commission balance.

    Rejected with 409 when the balance is below the program minimum, a payout
    is already open, or no payout method is configured.
    """
    user_id, organization_id = user_org
    affiliate = await _require_affiliate(user_id)

    try:
        return await get_payout_service().request_payout(affiliate.id, requested_by=user_id)
    except Exception as e:
        raise handle_exception(e, "payout_request", user_id=user_id, resource_id=affiliate.id)
