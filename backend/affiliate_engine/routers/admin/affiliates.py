"""
Admin Affiliates Router - Affiliate Program Management for Admins

Endpoints for reviewing affiliates, tuning program settings and driving
payouts through their state machine.

Access Levels:
- super_admin, admin: Approvals, settings, payout transitions
- support, viewer: Read-only access
"""

import logging
from typing import Optional, List, Dict, Any
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from affiliate_engine.deps import get_admin_user, AdminContext, require_admin_role
from affiliate_engine.models.affiliate import (
    Affiliate,
    AffiliateStatus,
    CommissionType,
    Payout,
    PayoutSchedule,
    PayoutStatus,
    ProgramSettings,
)
from affiliate_engine.services.affiliate_service import get_affiliate_service
from affiliate_engine.services.payout_service import get_payout_service
from affiliate_engine.services.program_settings import get_program_settings_service
from affiliate_engine.utils.errors import handle_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/affiliates", tags=["admin-affiliates"])


# =============================================================================
# Request/Response Models
# =============================================================================

class AffiliateListResponse(BaseModel):
    """Paginated affiliate list."""
    affiliates: List[Affiliate]
    limit: int
    offset: int
    has_more: bool


class AffiliateDetailResponse(BaseModel):
    """Full affiliate details."""
    affiliate: Affiliate
    stats: Dict[str, Any]


class ReasonRequest(BaseModel):
    """Reason for rejecting or suspending an affiliate."""
    reason: str = Field(..., min_length=1, max_length=1000)


class UpdateNotesRequest(BaseModel):
    notes: str = Field(..., max_length=5000)


class UpdateSettingsRequest(BaseModel):
    """Partial update of program settings."""
    commission_type: Optional[CommissionType] = None
    commission_rate_bps: Optional[int] = Field(None, ge=0, le=10000)
    recurring_months: Optional[int] = Field(None, ge=1, description="Send null to remove the cap")
    attribution_window_days: Optional[int] = Field(None, ge=1, le=365)
    cookie_duration_days: Optional[int] = Field(None, ge=1, le=365)
    minimum_payout_cents: Optional[int] = Field(None, ge=0)
    payout_schedule: Optional[PayoutSchedule] = None
    program_active: Optional[bool] = None
    require_approval: Optional[bool] = None
    allow_self_referral: Optional[bool] = None


class PayoutListResponse(BaseModel):
    """Paginated payout list."""
    payouts: List[Payout]
    limit: int
    offset: int
    has_more: bool


class CompletePayoutRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1, max_length=200, description="External payment reference")


class FailPayoutRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class ProgramReportResponse(BaseModel):
    """Overall affiliate program statistics."""
    total_affiliates: int
    active_affiliates: int
    pending_applications: int
    total_referrals: int
    total_conversions: int
    total_commission_earned_cents: int
    total_commission_paid_cents: int
    pending_commission_cents: int
    open_payouts_count: int
    open_payouts_cents: int


class MonthlyCommissionSummary(BaseModel):
    month: str
    total_cents: int
    count: int


# =============================================================================
# LIST & REPORT ENDPOINTS
# =============================================================================

@router.get("", response_model=AffiliateListResponse)
async def list_affiliates(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: Optional[AffiliateStatus] = Query(None),
    admin: AdminContext = Depends(get_admin_user)
):
    """
    List all affiliates, newest first, optionally filtered by status.
    """
    try:
        affiliates = await get_affiliate_service().list_affiliates(
            status=status, limit=limit + 1, offset=offset
        )
    except Exception as e:
        raise handle_exception(e, "admin_list_affiliates", user_id=admin.user_id)

    return AffiliateListResponse(
        affiliates=affiliates[:limit],
        limit=limit,
        offset=offset,
        has_more=len(affiliates) > limit,
    )


@router.get("/report", response_model=ProgramReportResponse)
async def get_program_report(
    admin: AdminContext = Depends(get_admin_user)
):
    """
    Program-wide totals.
    """
    try:
        report = await get_affiliate_service().get_program_report()
    except Exception as e:
        raise handle_exception(e, "admin_program_report", user_id=admin.user_id)
    return ProgramReportResponse(**report)


@router.get("/report/monthly", response_model=List[MonthlyCommissionSummary])
async def get_monthly_commission_summary(
    months: int = Query(12, ge=1, le=36),
    admin: AdminContext = Depends(get_admin_user)
):
    """Commission totals per billing month."""
    try:
        summary = await get_affiliate_service().get_monthly_commission_summary(months)
    except Exception as e:
        raise handle_exception(e, "admin_monthly_summary", user_id=admin.user_id)
    return [MonthlyCommissionSummary(**row) for row in summary]


# =============================================================================
# PROGRAM SETTINGS
# =============================================================================

@router.get("/settings", response_model=ProgramSettings)
async def get_settings(
    admin: AdminContext = Depends(get_admin_user)
):
    try:
        return await get_program_settings_service().get_settings()
    except Exception as e:
        raise handle_exception(e, "admin_get_settings", user_id=admin.user_id)


@router.patch("/settings", response_model=ProgramSettings)
async def update_settings(
    request: UpdateSettingsRequest,
    admin: AdminContext = Depends(require_admin_role("super_admin", "admin"))
):
    """
    Update program settings. Changes apply from the next click, signup or
    payment; existing commissions keep the rate they were created with.
    """
    changes = request.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No settings to update")

    try:
        settings = await get_program_settings_service().update_settings(changes)
    except Exception as e:
        raise handle_exception(e, "admin_update_settings", user_id=admin.user_id)

    logger.info(f"Admin {admin.admin_id} updated affiliate settings: {sorted(changes)}")
    return settings


# =============================================================================
# PAYOUTS
# =============================================================================

@router.get("/payouts", response_model=PayoutListResponse)
async def list_payouts(
    status: Optional[PayoutStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: AdminContext = Depends(get_admin_user)
):
    """
    List payouts, most recent request first.
    """
    try:
        payouts = await get_payout_service().list_payouts(status=status, limit=limit + 1, offset=offset)
    except Exception as e:
        raise handle_exception(e, "admin_list_payouts", user_id=admin.user_id)

    return PayoutListResponse(
        payouts=payouts[:limit],
        limit=limit,
        offset=offset,
        has_more=len(payouts) > limit,
    )


@router.post("/payouts/{payout_id}/approve", response_model=Payout)
async def approve_payout(
    payout_id: str,
    admin: AdminContext = Depends(require_admin_role("super_admin", "admin"))
):
    try:
        return await get_payout_service().approve_payout(payout_id, approved_by=admin.admin_id)
    except Exception as e:
        raise handle_exception(e, "admin_approve_payout", user_id=admin.user_id, resource_id=payout_id)


@router.post("/payouts/{payout_id}/processing", response_model=Payout)
async def start_processing_payout(
    payout_id: str,
    admin: AdminContext = Depends(require_admin_role("super_admin", "admin"))
):
    try:
        return await get_payout_service().start_processing(payout_id)
    except Exception as e:
        raise handle_exception(e, "admin_process_payout", user_id=admin.user_id, resource_id=payout_id)


@router.post("/payouts/{payout_id}/complete", response_model=Payout)
async def complete_payout(
    payout_id: str,
    request: CompletePayoutRequest,
    admin: AdminContext = Depends(require_admin_role("super_admin", "admin"))
):
    """
    Mark a processing payout as paid out.
    """
    try:
        return await get_payout_service().complete_payout(payout_id, request.transaction_id)
    except Exception as e:
        raise handle_exception(e, "admin_complete_payout", user_id=admin.user_id, resource_id=payout_id)


@router.post("/payouts/{payout_id}/fail", response_model=Payout)
async def fail_payout(
    payout_id: str,
    request: FailPayoutRequest,
    admin: AdminContext = Depends(require_admin_role("super_admin", "admin"))
):
    """
    Mark a payout as failed; its commissions return to the pending balance.
    """
    try:
        return await get_payout_service().fail_payout(payout_id, request.reason)
    except Exception as e:
        raise handle_exception(e, "admin_fail_payout", user_id=admin.user_id, resource_id=payout_id)


@router.post("/payouts/{payout_id}/cancel", response_model=Payout)
async def cancel_payout(
    payout_id: str,
    admin: AdminContext = Depends(require_admin_role("super_admin", "admin"))
):
    try:
        return await get_payout_service().cancel_payout(payout_id)
    except Exception as e:
        raise handle_exception(e, "admin_cancel_payout", user_id=admin.user_id, resource_id=payout_id)


# =============================================================================
# AFFILIATE DETAIL & ACTIONS
# =============================================================================

@router.get("/{affiliate_id}", response_model=AffiliateDetailResponse)
async def get_affiliate_detail(
    affiliate_id: str,
    admin: AdminContext = Depends(get_admin_user)
):
    """
    Get affiliate record and stats.
    """
    service = get_affiliate_service()
    try:
        affiliate = await service.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            raise HTTPException(status_code=404, detail="Affiliate not found")
        stats = await service.get_stats(affiliate_id)
    except HTTPException:
        raise
    except Exception as e:
        raise handle_exception(e, "admin_affiliate_detail", user_id=admin.user_id, resource_id=affiliate_id)

    return AffiliateDetailResponse(affiliate=affiliate, stats=stats)


@router.post("/{affiliate_id}/approve", response_model=Affiliate)
async def approve_affiliate(
    affiliate_id: str,
    admin: AdminContext = Depends(require_admin_role("super_admin", "admin"))
):
    try:
        return await get_affiliate_service().approve_affiliate(affiliate_id, admin_id=admin.admin_id)
    except Exception as e:
        raise handle_exception(e, "admin_approve_affiliate", user_id=admin.user_id, resource_id=affiliate_id)


@router.post("/{affiliate_id}/reject", response_model=Affiliate)
async def reject_affiliate(
    affiliate_id: str,
    request: ReasonRequest,
    admin: AdminContext = Depends(require_admin_role("super_admin", "admin"))
):
    try:
        return await get_affiliate_service().reject_affiliate(
            affiliate_id, request.reason, admin_id=admin.admin_id
        )
    except Exception as e:
        raise handle_exception(e, "admin_reject_affiliate", user_id=admin.user_id, resource_id=affiliate_id)


@router.post("/{affiliate_id}/suspend", response_model=Affiliate)
async def suspend_affiliate(
    affiliate_id: str,
    request: ReasonRequest,
    admin: AdminContext = Depends(require_admin_role("super_admin", "admin"))
):
    """
    Suspend an approved affiliate. Their referral code stops validating.
    """
    try:
        return await get_affiliate_service().suspend_affiliate(
            affiliate_id, request.reason, admin_id=admin.admin_id
        )
    except Exception as e:
        raise handle_exception(e, "admin_suspend_affiliate", user_id=admin.user_id, resource_id=affiliate_id)


@router.post("/{affiliate_id}/reactivate", response_model=Affiliate)
async def reactivate_affiliate(
    affiliate_id: str,
    admin: AdminContext = Depends(require_admin_role("super_admin", "admin"))
):
    try:
        return await get_affiliate_service().reactivate_affiliate(affiliate_id, admin_id=admin.admin_id)
    except Exception as e:
        raise handle_exception(e, "admin_reactivate_affiliate", user_id=admin.user_id, resource_id=affiliate_id)


@router.patch("/{affiliate_id}/notes", response_model=Affiliate)
async def update_notes(
    affiliate_id: str,
    request: UpdateNotesRequest,
    admin: AdminContext = Depends(get_admin_user)
):
    """Internal admin notes on an affiliate."""
    try:
        return await get_affiliate_service().update_notes(affiliate_id, request.notes)
    except Exception as e:
        raise handle_exception(e, "admin_affiliate_notes", user_id=admin.user_id, resource_id=affiliate_id)
