"""
Tests for affiliate applications, admin review, profile and reporting.
"""

import pytest

from affiliate_engine.models.affiliate import (
    AffiliateStatus,
    PaymentPostedEvent,
    PayoutMethod,
    ProgramSettings,
)
from affiliate_engine.services.affiliate_service import (
    REFERRAL_CODE_ALPHABET,
    REFERRAL_CODE_LENGTH,
    conversion_rate,
    generate_referral_code,
)
from affiliate_engine.utils.errors import (
    InvalidTransitionError,
    NotFoundError,
    StateConflictError,
    ValidationFailedError,
)


class TestReferralCodes:

    def test_shape(self):
        for _ in range(20):
            code = generate_referral_code()
            assert len(code) == REFERRAL_CODE_LENGTH
            assert set(code) <= set(REFERRAL_CODE_ALPHABET)

    def test_ambiguous_characters_excluded(self):
        assert not set("01OI") & set(REFERRAL_CODE_ALPHABET)


class TestConversionRate:

    def test_no_clicks(self):
        assert conversion_rate(0, 0) == 0.0

    def test_rounded_percentage(self):
        assert conversion_rate(1, 3) == 33.33
        assert conversion_rate(5, 20) == 25.0


class TestApplication:

    async def test_pending_when_approval_required(self, affiliate_service, supabase):
        affiliate = await affiliate_service.apply_to_become_affiliate(
            "user-1", company_name="Acme", payout_method="paypal", payout_email="pay@acme.example",
        )

        assert affiliate.status == AffiliateStatus.PENDING
        assert affiliate.approved_at is None
        assert len(affiliate.referral_code) == REFERRAL_CODE_LENGTH
        assert supabase.find("affiliates", user_id="user-1") is not None

    async def test_auto_approved(self, affiliate_service, supabase, clock):
        supabase.set_settings(ProgramSettings(require_approval=False))
        affiliate = await affiliate_service.apply_to_become_affiliate("user-1")

        assert affiliate.status == AffiliateStatus.APPROVED
        assert affiliate.approved_at == clock()

    async def test_one_account_per_user(self, affiliate_service):
        await affiliate_service.apply_to_become_affiliate("user-1")
        with pytest.raises(StateConflictError):
            await affiliate_service.apply_to_become_affiliate("user-1")

    async def test_paused_program_rejects_applications(self, affiliate_service, supabase):
        supabase.set_settings(ProgramSettings(program_active=False))
        with pytest.raises(StateConflictError):
            await affiliate_service.apply_to_become_affiliate("user-1")

    @pytest.mark.parametrize("method, email, bank", [
        ("paypal", None, None),
        ("paypal", "not-an-email", None),
        ("bank_transfer", None, None),
        ("carrier_pigeon", "a@b.example", None),
    ])
    async def test_payout_details_validated(self, affiliate_service, method, email, bank):
        with pytest.raises(ValidationFailedError):
            await affiliate_service.apply_to_become_affiliate(
                "user-1", payout_method=method, payout_email=email, payout_bank_reference=bank,
            )

    async def test_code_collisions_retried(self, affiliate_service, supabase, monkeypatch):
        supabase.add_affiliate(referral_code="TAKEN111")
        codes = iter(["TAKEN111", "FRESH222"])
        monkeypatch.setattr(
            "affiliate_engine.services.affiliate_service.generate_referral_code", lambda: next(codes)
        )

        affiliate = await affiliate_service.apply_to_become_affiliate("user-1")
        assert affiliate.referral_code == "FRESH222"


class TestLookup:

    async def test_by_code_is_case_insensitive(self, affiliate_service, affiliate):
        found = await affiliate_service.get_affiliate_by_code(" abc123 ")
        assert found.id == affiliate["id"]

    async def test_by_user_and_missing(self, affiliate_service, affiliate):
        assert (await affiliate_service.get_affiliate_by_user("affiliate-user")).id == affiliate["id"]
        assert await affiliate_service.get_affiliate_by_user("nobody") is None

    async def test_list_by_status(self, affiliate_service, supabase, affiliate):
        supabase.add_affiliate(referral_code="PEND01", status="pending")
        pending = await affiliate_service.list_affiliates(status=AffiliateStatus.PENDING)
        assert [a.referral_code for a in pending] == ["PEND01"]
        assert len(await affiliate_service.list_affiliates()) == 2


class TestProfile:

    async def test_update_payout_details(self, affiliate_service, supabase, affiliate):
        updated = await affiliate_service.update_profile(affiliate["id"], {
            "payout_method": "bank_transfer",
            "payout_bank_reference": "NL00BANK0123",
        })

        assert updated.payout_method == PayoutMethod.BANK_TRANSFER
        assert updated.payout_destination == "NL00BANK0123"
        assert supabase.row("affiliates", affiliate["id"])["payout_bank_reference"] == "NL00BANK0123"

    async def test_referral_code_is_immutable(self, affiliate_service, affiliate):
        with pytest.raises(ValidationFailedError):
            await affiliate_service.update_profile(affiliate["id"], {"referral_code": "NEWCODE1"})

    async def test_unknown_and_empty_changes(self, affiliate_service, affiliate):
        with pytest.raises(ValidationFailedError):
            await affiliate_service.update_profile(affiliate["id"], {"pending_commission_cents": 10**6})
        with pytest.raises(ValidationFailedError):
            await affiliate_service.update_profile(affiliate["id"], {})

    async def test_merged_details_validated(self, affiliate_service, affiliate):
        # switching to e-transfer keeps the existing email, which is valid
        await affiliate_service.update_profile(affiliate["id"], {"payout_method": "e_transfer"})
        with pytest.raises(ValidationFailedError):
            await affiliate_service.update_profile(affiliate["id"], {"payout_email": None})

    async def test_notes(self, affiliate_service, affiliate):
        updated = await affiliate_service.update_notes(affiliate["id"], "Top partner")
        assert updated.notes == "Top partner"


class TestAdminReview:

    @pytest.fixture
    def pending(self, supabase):
        return supabase.add_affiliate(referral_code="PEND01", status="pending")

    async def test_approve(self, affiliate_service, supabase, pending):
        approved = await affiliate_service.approve_affiliate(pending["id"], admin_id="admin-1")
        assert approved.status == AffiliateStatus.APPROVED
        assert supabase.row("affiliates", pending["id"])["approved_by"] == "admin-1"

    async def test_reject_requires_reason(self, affiliate_service, pending):
        with pytest.raises(ValidationFailedError):
            await affiliate_service.reject_affiliate(pending["id"], "")
        rejected = await affiliate_service.reject_affiliate(pending["id"], "Spam website")
        assert rejected.status == AffiliateStatus.REJECTED
        assert rejected.rejection_reason == "Spam website"

    async def test_rejected_is_final(self, affiliate_service, pending):
        await affiliate_service.reject_affiliate(pending["id"], "Spam website")
        with pytest.raises(InvalidTransitionError):
            await affiliate_service.approve_affiliate(pending["id"])

    async def test_suspend_and_reactivate(self, affiliate_service, click_tracker, affiliate):
        suspended = await affiliate_service.suspend_affiliate(affiliate["id"], "Coupon abuse")
        assert suspended.suspension_reason == "Coupon abuse"
        assert not (await click_tracker.validate_code("ABC123")).is_valid

        reactivated = await affiliate_service.reactivate_affiliate(affiliate["id"])
        assert reactivated.status == AffiliateStatus.APPROVED
        assert reactivated.suspension_reason is None
        assert (await click_tracker.validate_code("ABC123")).is_valid

    async def test_cannot_suspend_pending(self, affiliate_service, pending):
        with pytest.raises(InvalidTransitionError):
            await affiliate_service.suspend_affiliate(pending["id"], "reason")

    async def test_unknown_affiliate(self, affiliate_service):
        with pytest.raises(NotFoundError):
            await affiliate_service.approve_affiliate("missing")


class TestReporting:

    @pytest.fixture
    async def activity(self, click_tracker, signup_linker, commission_service, affiliate, clock):
        clicks = [await click_tracker.track_click("ABC123") for _ in range(4)]
        await signup_linker.link_signup(clicks[0], "customer-1", "org-1")
        await signup_linker.link_signup(clicks[1], "customer-2", "org-2")
        await commission_service.accrue(
            PaymentPostedEvent(organization_id="org-1", amount_cents=10000, billing_month="2025-01")
        )
        return clicks

    async def test_stats(self, affiliate_service, affiliate, activity):
        stats = await affiliate_service.get_stats(affiliate["id"])

        assert stats["total_clicks"] == 4
        assert stats["total_signups"] == 2
        assert stats["total_paid_signups"] == 1
        assert stats["conversion_rate"] == 25.0
        assert stats["this_month_clicks"] == 4
        assert stats["this_month_signups"] == 2
        assert stats["this_month_commission_cents"] == 2000
        assert stats["pending_commission_cents"] == 2000

    async def test_this_month_resets(self, affiliate_service, affiliate, activity, clock):
        clock.advance(days=31)
        stats = await affiliate_service.get_stats(affiliate["id"])
        assert stats["this_month_clicks"] == 0
        assert stats["total_clicks"] == 4

    async def test_dashboard(self, affiliate_service, affiliate, activity):
        dashboard = await affiliate_service.get_dashboard(affiliate["id"])

        assert dashboard["referral_url"].endswith("/register?ref=ABC123")
        assert len(dashboard["recent_referrals"]) == 4
        assert len(dashboard["recent_commissions"]) == 1
        assert dashboard["recent_payouts"] == []
        assert dashboard["minimum_payout_cents"] == 5000
        assert dashboard["can_request_payout"] is False

    async def test_referrals_filtered_by_conversion(self, affiliate_service, affiliate, activity):
        converted = await affiliate_service.get_referrals(affiliate["id"], converted=True)
        assert {r.referred_organization_id for r in converted} == {"org-1", "org-2"}
        assert len(await affiliate_service.get_referrals(affiliate["id"], converted=False)) == 2

    async def test_program_report(self, affiliate_service, supabase, affiliate, activity):
        supabase.add_affiliate(referral_code="PEND01", status="pending")
        report = await affiliate_service.get_program_report()

        assert report["total_affiliates"] == 2
        assert report["active_affiliates"] == 1
        assert report["pending_applications"] == 1
        assert report["total_referrals"] == 4
        assert report["total_conversions"] == 2
        assert report["total_commission_earned_cents"] == 2000
        assert report["open_payouts_count"] == 0

    async def test_monthly_summary(self, affiliate_service, commission_service, affiliate, activity):
        await commission_service.accrue(
            PaymentPostedEvent(organization_id="org-2", amount_cents=5000, billing_month="2025-01")
        )
        summary = await affiliate_service.get_monthly_commission_summary(months=12)
        assert summary == [{"month": "2025-01", "total_cents": 3000, "count": 2}]

    async def test_monthly_summary_window(self, affiliate_service, affiliate, activity, clock):
        clock.advance(days=365)
        assert await affiliate_service.get_monthly_commission_summary(months=3) == []
