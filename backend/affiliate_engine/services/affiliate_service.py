"""
Affiliate Service

Affiliate lifecycle and reporting for the referral program.

Key features:
- Applications with unique, immutable 8-character referral codes
- Admin review: approve / reject / suspend / reactivate, each checked
  against the affiliate status transition table
- Profile and payout-destination management
- Stats (conversion rate = paid signups / clicks) and dashboard data
- Program-wide report for admins

Attribution, accrual and payouts live in their own services; this one reads
the totals they maintain and never writes them.
"""

import logging
import secrets
from typing import Optional, Dict, Any, List, Callable
from datetime import datetime

from supabase import Client

from affiliate_engine.database import get_supabase_service, first_row
from affiliate_engine.models.affiliate import (
    Affiliate,
    AffiliateStatus,
    Commission,
    Payout,
    PayoutMethod,
    OPEN_PAYOUT_STATUSES,
    Referral,
    assert_transition,
    utcnow,
)
from affiliate_engine.services.click_tracker import build_referral_url, normalize_code
from affiliate_engine.services.program_settings import ProgramSettingsService
from affiliate_engine.utils.errors import (
    AppError,
    InvalidTransitionError,
    NotFoundError,
    StateConflictError,
    ValidationFailedError,
    translate_store_error,
)

logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

# No 0/O or 1/I so codes survive being read aloud or retyped
REFERRAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REFERRAL_CODE_LENGTH = 8
MAX_CODE_ATTEMPTS = 10

PROFILE_FIELDS = frozenset({
    "company_name",
    "website_url",
    "promotional_methods",
    "payout_method",
    "payout_email",
    "payout_bank_reference",
})

RECENT_ITEMS = 5


def generate_referral_code() -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


def conversion_rate(paid_signups: int, clicks: int) -> float:
    """Paid signups per click, as a percentage rounded to 2 decimals."""
    if clicks <= 0:
        return 0.0
    return round(paid_signups / clicks * 100, 2)


def _validate_payout_details(
    payout_method: Optional[str],
    payout_email: Optional[str],
    payout_bank_reference: Optional[str],
) -> None:
    if payout_method is None:
        return
    try:
        method = PayoutMethod(payout_method)
    except ValueError:
        raise ValidationFailedError(f"Unknown payout method: {payout_method}", field="payout_method") from None

    if method.uses_email:
        if not payout_email or "@" not in payout_email:
            raise ValidationFailedError(
                f"A valid email is required for {method.value} payouts",
                field="payout_email",
            )
    elif not (payout_bank_reference or payout_email):
        raise ValidationFailedError(
            f"Payout details are required for {method.value} payouts",
            field="payout_bank_reference",
        )


class AffiliateService:
    """
    Central affiliate management service.

    Usage:
        affiliate_service = get_affiliate_service()

        # Check if user is an affiliate
        affiliate = await affiliate_service.get_affiliate_by_user(user_id)

        # Apply to become affiliate
        affiliate = await affiliate_service.apply_to_become_affiliate(
            user_id=user_id,
            company_name="Acme Sales Training",
            payout_method="paypal",
            payout_email="payouts@acme.example",
        )

        # Admin review
        await affiliate_service.approve_affiliate(affiliate.id, admin_id=admin_id)
    """

    def __init__(
        self,
        supabase: Optional[Client] = None,
        settings_service: Optional[ProgramSettingsService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.supabase = supabase or get_supabase_service()
        if self.supabase is None:
            logger.error("Failed to initialize Supabase client for AffiliateService")
        self.settings_service = settings_service or ProgramSettingsService(self.supabase)
        self.clock = clock

    # =========================================================================
    # AFFILIATE LOOKUP
    # =========================================================================

    async def get_affiliate_by_user(self, user_id: str) -> Optional[Affiliate]:
        """Get affiliate record for a user, if they are an affiliate."""
        return await self._get_affiliate_where("user_id", user_id)

    async def get_affiliate_by_id(self, affiliate_id: str) -> Optional[Affiliate]:
        return await self._get_affiliate_where("id", affiliate_id)

    async def get_affiliate_by_code(self, referral_code: str) -> Optional[Affiliate]:
        """Any status; use ClickTracker.validate_code to check a code is live."""
        return await self._get_affiliate_where("referral_code", normalize_code(referral_code))

    async def _get_affiliate_where(self, column: str, value: str) -> Optional[Affiliate]:
        try:
            row = first_row(
                self.supabase.table("affiliates").select("*").eq(
                    column, value
                ).maybe_single().execute()
            )
        except Exception as e:
            raise translate_store_error(e) from e
        return Affiliate.from_row(row) if row else None

    async def _require_affiliate(self, affiliate_id: str) -> Affiliate:
        affiliate = await self.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            raise NotFoundError("Affiliate", affiliate_id)
        return affiliate

    async def list_affiliates(
        self,
        status: Optional[AffiliateStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Affiliate]:
        """All affiliates (admin), newest first."""
        try:
            query = self.supabase.table("affiliates").select("*")
            if status:
                query = query.eq("status", status.value)
            response = query.order(
                "created_at", desc=True
            ).range(offset, offset + limit - 1).execute()
        except Exception as e:
            raise translate_store_error(e) from e
        return [Affiliate.from_row(row) for row in response.data or []]

    # =========================================================================
    # APPLICATION & PROFILE
    # =========================================================================

    async def apply_to_become_affiliate(
        self,
        user_id: str,
        company_name: Optional[str] = None,
        website_url: Optional[str] = None,
        promotional_methods: Optional[str] = None,
        payout_method: Optional[str] = None,
        payout_email: Optional[str] = None,
        payout_bank_reference: Optional[str] = None,
    ) -> Affiliate:
        """
        Apply to become an affiliate.

        Returns:
            The created affiliate: pending, or approved right away when the
            program does not require approval

        Raises:
            StateConflictError: program paused or user already an affiliate
            ValidationFailedError: payout details inconsistent with the method
        """
        settings = await self.settings_service.get_settings()
        if not settings.program_active:
            raise StateConflictError("The affiliate program is not accepting applications")

        if await self.get_affiliate_by_user(user_id):
            raise StateConflictError("You already have an affiliate account")

        _validate_payout_details(payout_method, payout_email, payout_bank_reference)

        referral_code = await self._generate_referral_code()
        now = self.clock().isoformat()

        initial_status = (
            AffiliateStatus.PENDING if settings.require_approval else AffiliateStatus.APPROVED
        )

        affiliate_data = {
            "user_id": user_id,
            "referral_code": referral_code,
            "status": initial_status.value,
            "company_name": company_name,
            "website_url": website_url,
            "promotional_methods": promotional_methods,
            "payout_method": payout_method,
            "payout_email": payout_email,
            "payout_bank_reference": payout_bank_reference,
            "approved_at": now if initial_status == AffiliateStatus.APPROVED else None,
            "created_at": now,
        }

        try:
            response = self.supabase.table("affiliates").insert(affiliate_data).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        row = first_row(response)
        if not row:
            raise AppError("Failed to create affiliate")

        logger.info(
            f"New affiliate application: user={user_id}, "
            f"code={referral_code}, status={initial_status.value}"
        )
        return Affiliate.from_row(row)

    async def update_profile(self, affiliate_id: str, changes: Dict[str, Any]) -> Affiliate:
        """
        Update profile and payout details.

        The referral code is immutable: links already shared must keep working.
        """
        if "referral_code" in changes:
            raise ValidationFailedError("Referral code cannot be changed", field="referral_code")

        unknown = set(changes) - PROFILE_FIELDS
        if unknown:
            raise ValidationFailedError(
                f"Unknown profile fields: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        if not changes:
            raise ValidationFailedError("No changes provided")

        affiliate = await self._require_affiliate(affiliate_id)
        merged = {**affiliate.model_dump(mode="json"), **changes}
        _validate_payout_details(
            merged.get("payout_method"),
            merged.get("payout_email"),
            merged.get("payout_bank_reference"),
        )

        try:
            response = self.supabase.table("affiliates").update(
                {**changes, "updated_at": self.clock().isoformat()}
            ).eq("id", affiliate_id).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        logger.info(f"Affiliate {affiliate_id} profile updated: {sorted(changes)}")
        row = first_row(response)
        return Affiliate.from_row(row) if row else affiliate.model_copy(update=changes)

    async def update_notes(self, affiliate_id: str, notes: str) -> Affiliate:
        """Admin-only internal notes."""
        await self._require_affiliate(affiliate_id)
        try:
            response = self.supabase.table("affiliates").update({
                "notes": notes,
                "updated_at": self.clock().isoformat(),
            }).eq("id", affiliate_id).execute()
        except Exception as e:
            raise translate_store_error(e) from e
        return Affiliate.from_row(first_row(response))

    # =========================================================================
    # ADMIN REVIEW
    # =========================================================================

    async def approve_affiliate(self, affiliate_id: str, admin_id: Optional[str] = None) -> Affiliate:
        return await self._transition(
            affiliate_id,
            AffiliateStatus.APPROVED,
            {
                "approved_at": self.clock().isoformat(),
                "approved_by": admin_id,
                "rejection_reason": None,
            },
            admin_id,
        )

    async def reject_affiliate(
        self,
        affiliate_id: str,
        reason: str,
        admin_id: Optional[str] = None,
    ) -> Affiliate:
        if not reason:
            raise ValidationFailedError("A rejection reason is required", field="reason")
        return await self._transition(
            affiliate_id, AffiliateStatus.REJECTED, {"rejection_reason": reason}, admin_id
        )

    async def suspend_affiliate(
        self,
        affiliate_id: str,
        reason: str,
        admin_id: Optional[str] = None,
    ) -> Affiliate:
        """Suspended affiliates stop earning: their codes no longer validate."""
        if not reason:
            raise ValidationFailedError("A suspension reason is required", field="reason")
        return await self._transition(
            affiliate_id, AffiliateStatus.SUSPENDED, {"suspension_reason": reason}, admin_id
        )

    async def reactivate_affiliate(self, affiliate_id: str, admin_id: Optional[str] = None) -> Affiliate:
        return await self._transition(
            affiliate_id, AffiliateStatus.APPROVED, {"suspension_reason": None}, admin_id
        )

    async def _transition(
        self,
        affiliate_id: str,
        target: AffiliateStatus,
        extra: Dict[str, Any],
        admin_id: Optional[str],
    ) -> Affiliate:
        affiliate = await self._require_affiliate(affiliate_id)
        assert_transition("affiliate", affiliate.status, target)

        # Conditional on the status we validated against
        try:
            response = self.supabase.table("affiliates").update({
                "status": target.value,
                "updated_at": self.clock().isoformat(),
                **extra,
            }).eq(
                "id", affiliate_id
            ).eq(
                "status", affiliate.status.value
            ).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        row = first_row(response)
        if not row:
            current = await self._require_affiliate(affiliate_id)
            raise InvalidTransitionError("affiliate", current.status.value, target.value)

        logger.info(
            f"Affiliate {affiliate_id} status changed {affiliate.status.value} -> {target.value} "
            f"by {admin_id or 'system'}"
        )
        return Affiliate.from_row(row)

    # =========================================================================
    # REFERRALS, STATS & DASHBOARD
    # =========================================================================

    async def get_referrals(
        self,
        affiliate_id: str,
        limit: int = 20,
        offset: int = 0,
        converted: Optional[bool] = None,
    ) -> List[Referral]:
        """Referrals for an affiliate, most recent click first."""
        try:
            query = self.supabase.table("affiliate_referrals").select("*").eq(
                "affiliate_id", affiliate_id
            )
            if converted is not None:
                query = query.eq("converted", converted)
            response = query.order(
                "clicked_at", desc=True
            ).range(offset, offset + limit - 1).execute()
        except Exception as e:
            raise translate_store_error(e) from e
        return [Referral.from_row(row) for row in response.data or []]

    async def get_stats(self, affiliate_id: str) -> Dict[str, Any]:
        """Lifetime totals plus this calendar month's activity (UTC)."""
        affiliate = await self._require_affiliate(affiliate_id)
        month_start = self.clock().replace(day=1, hour=0, minute=0, second=0, microsecond=0).isoformat()

        try:
            clicks = self.supabase.table("affiliate_referrals").select(
                "id", count="exact"
            ).eq(
                "affiliate_id", affiliate_id
            ).gte("clicked_at", month_start).execute()

            signups = self.supabase.table("affiliate_referrals").select(
                "id", count="exact"
            ).eq(
                "affiliate_id", affiliate_id
            ).gte("signup_at", month_start).execute()

            commissions = self.supabase.table("affiliate_commissions").select(
                "commission_amount_cents"
            ).eq(
                "affiliate_id", affiliate_id
            ).gte("created_at", month_start).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        return {
            "total_clicks": affiliate.total_clicks,
            "total_signups": affiliate.total_signups,
            "total_paid_signups": affiliate.total_paid_signups,
            "conversion_rate": conversion_rate(affiliate.total_paid_signups, affiliate.total_clicks),
            "total_commission_earned_cents": affiliate.total_commission_earned_cents,
            "total_commission_paid_cents": affiliate.total_commission_paid_cents,
            "pending_commission_cents": affiliate.pending_commission_cents,
            "this_month_clicks": clicks.count or 0,
            "this_month_signups": signups.count or 0,
            "this_month_commission_cents": sum(
                c.get("commission_amount_cents") or 0 for c in commissions.data or []
            ),
        }

    async def get_dashboard(self, affiliate_id: str) -> Dict[str, Any]:
        """Everything the affiliate dashboard shows in one call."""
        affiliate = await self._require_affiliate(affiliate_id)
        settings = await self.settings_service.get_settings()
        stats = await self.get_stats(affiliate_id)
        recent_referrals = await self.get_referrals(affiliate_id, limit=RECENT_ITEMS)

        try:
            commissions = self.supabase.table("affiliate_commissions").select("*").eq(
                "affiliate_id", affiliate_id
            ).order("created_at", desc=True).limit(RECENT_ITEMS).execute()

            payouts = self.supabase.table("affiliate_payouts").select("*").eq(
                "affiliate_id", affiliate_id
            ).order("requested_at", desc=True).limit(RECENT_ITEMS).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        return {
            "affiliate": affiliate,
            "referral_url": build_referral_url(affiliate.referral_code),
            "stats": stats,
            "recent_referrals": recent_referrals,
            "recent_commissions": [Commission.from_row(r) for r in commissions.data or []],
            "recent_payouts": [Payout.from_row(r) for r in payouts.data or []],
            "minimum_payout_cents": settings.minimum_payout_cents,
            "can_request_payout": (
                affiliate.can_receive_payouts
                and affiliate.pending_commission_cents > 0
                and affiliate.pending_commission_cents >= settings.minimum_payout_cents
            ),
        }

    # =========================================================================
    # PROGRAM REPORTING (ADMIN)
    # =========================================================================

    async def get_program_report(self) -> Dict[str, Any]:
        """Program-wide totals for the admin overview."""
        try:
            affiliates = self.supabase.table("affiliates").select(
                "status, total_commission_earned_cents, total_commission_paid_cents, pending_commission_cents"
            ).execute()

            referrals = self.supabase.table("affiliate_referrals").select(
                "id", count="exact"
            ).execute()

            conversions = self.supabase.table("affiliate_referrals").select(
                "id", count="exact"
            ).eq("converted", True).execute()

            open_payouts = self.supabase.table("affiliate_payouts").select(
                "amount_cents"
            ).in_(
                "status", [s.value for s in OPEN_PAYOUT_STATUSES]
            ).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        rows = affiliates.data or []
        payout_rows = open_payouts.data or []

        return {
            "total_affiliates": len(rows),
            "active_affiliates": sum(1 for a in rows if a.get("status") == AffiliateStatus.APPROVED.value),
            "pending_applications": sum(1 for a in rows if a.get("status") == AffiliateStatus.PENDING.value),
            "total_referrals": referrals.count or 0,
            "total_conversions": conversions.count or 0,
            "total_commission_earned_cents": sum(a.get("total_commission_earned_cents") or 0 for a in rows),
            "total_commission_paid_cents": sum(a.get("total_commission_paid_cents") or 0 for a in rows),
            "pending_commission_cents": sum(a.get("pending_commission_cents") or 0 for a in rows),
            "open_payouts_count": len(payout_rows),
            "open_payouts_cents": sum(p.get("amount_cents") or 0 for p in payout_rows),
        }

    async def get_monthly_commission_summary(self, months: int = 12) -> List[Dict[str, Any]]:
        """Commission totals per billing month, oldest first."""
        now = self.clock()
        index = now.year * 12 + now.month - 1 - (months - 1)
        start = f"{index // 12:04d}-{index % 12 + 1:02d}"

        try:
            response = self.supabase.table("affiliate_commissions").select(
                "billing_month, commission_amount_cents"
            ).gte("billing_month", start).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        summary: Dict[str, Dict[str, int]] = {}
        for row in response.data or []:
            month = summary.setdefault(row["billing_month"], {"total_cents": 0, "count": 0})
            month["total_cents"] += row.get("commission_amount_cents") or 0
            month["count"] += 1

        return [{"month": month, **totals} for month, totals in sorted(summary.items())]

    # =========================================================================
    # PRIVATE HELPERS
    # =========================================================================

    async def _generate_referral_code(self) -> str:
        """Generate a referral code not used by any affiliate."""
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_referral_code()
            try:
                existing = first_row(
                    self.supabase.table("affiliates").select("id").eq(
                        "referral_code", code
                    ).maybe_single().execute()
                )
            except Exception as e:
                raise translate_store_error(e) from e
            if not existing:
                return code

        raise AppError("Could not generate a unique referral code")


# =============================================================================
# SINGLETON FACTORY
# =============================================================================

_affiliate_service: Optional[AffiliateService] = None


def get_affiliate_service() -> AffiliateService:
    """Get singleton AffiliateService instance."""
    global _affiliate_service
    if _affiliate_service is None:
        _affiliate_service = AffiliateService()
    return _affiliate_service
