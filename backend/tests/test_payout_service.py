"""
Tests for payout requests and the payout state machine.

Conservation: every earned cent is in exactly one of the affiliate's pending
balance, an open payout, or paid out.
"""

import pytest

from affiliate_engine.models.affiliate import PaymentPostedEvent, PayoutStatus, ProgramSettings
from affiliate_engine.utils.errors import (
    IntegrityViolationError,
    InsufficientBalanceError,
    InvalidTransitionError,
    NotFoundError,
    PayoutAlreadyOpenError,
    PayoutNotAllowedError,
    ValidationFailedError,
)


ORG = "org-paying"


@pytest.fixture
async def earn(click_tracker, signup_linker, commission_service, affiliate):
    """Accrue commissions for the given billing months on one referred org."""
    click_id = await click_tracker.track_click("ABC123")
    assert (await signup_linker.link_signup(click_id, "customer-user", ORG)).linked

    async def _earn(*months, amount_cents=10000):
        for month in months:
            await commission_service.accrue(
                PaymentPostedEvent(organization_id=ORG, amount_cents=amount_cents, billing_month=month)
            )

    return _earn


def assert_conserved(supabase, affiliate_id):
    affiliate = supabase.row("affiliates", affiliate_id)
    commissions = supabase.rows("affiliate_commissions", affiliate_id=affiliate_id)
    earned = sum(c["commission_amount_cents"] for c in commissions if c["status"] == "earned")
    held = sum(c["commission_amount_cents"] for c in commissions if c["status"] == "pending_payout")
    paid = sum(c["commission_amount_cents"] for c in commissions if c["status"] == "paid")
    open_payouts = sum(
        p["amount_cents"] for p in supabase.rows("affiliate_payouts", affiliate_id=affiliate_id)
        if p["status"] in ("pending", "approved", "processing")
    )

    assert affiliate["pending_commission_cents"] == earned
    assert open_payouts == held
    assert affiliate["total_commission_paid_cents"] == paid
    assert earned + held + paid == affiliate["total_commission_earned_cents"]


class TestRequestPayout:

    async def test_moves_whole_balance(self, payout_service, supabase, affiliate, earn):
        await earn("2025-01", "2025-02", "2025-03")

        payout = await payout_service.request_payout(affiliate["id"])

        assert payout.amount_cents == 6000
        assert payout.commission_count == 3
        assert payout.status == PayoutStatus.PENDING
        assert payout.payout_destination == "payouts@partner.example"
        assert supabase.row("affiliates", affiliate["id"])["pending_commission_cents"] == 0
        assert {c["status"] for c in supabase.rows("affiliate_commissions")} == {"pending_payout"}
        assert {c["payout_id"] for c in supabase.rows("affiliate_commissions")} == {payout.id}
        assert_conserved(supabase, affiliate["id"])

    async def test_below_minimum(self, payout_service, supabase, affiliate, earn):
        await earn("2025-01")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await payout_service.request_payout(affiliate["id"])

        assert exc_info.value.pending_cents == 2000
        assert exc_info.value.minimum_cents == 5000
        assert exc_info.value.message == "Minimum payout is $50.00, you have $20.00"
        assert supabase.rows("affiliate_payouts") == []

    async def test_exact_minimum_is_enough(self, payout_service, supabase, affiliate, earn):
        await earn("2025-01", amount_cents=25000)
        payout = await payout_service.request_payout(affiliate["id"])
        assert payout.amount_cents == 5000

    async def test_zero_balance_rejected_even_without_minimum(self, payout_service, supabase, affiliate):
        supabase.set_settings(ProgramSettings(minimum_payout_cents=0))
        with pytest.raises(InsufficientBalanceError):
            await payout_service.request_payout(affiliate["id"])

    async def test_one_open_payout(self, payout_service, supabase, affiliate, earn):
        await earn("2025-01", "2025-02", "2025-03")
        first = await payout_service.request_payout(affiliate["id"])

        # new earnings arrive while the first payout is still open
        supabase.set_settings(ProgramSettings(recurring_months=None, minimum_payout_cents=0))
        await earn("2025-04")

        with pytest.raises(PayoutAlreadyOpenError) as exc_info:
            await payout_service.request_payout(affiliate["id"])
        assert exc_info.value.details == {"payout_id": first.id}

    async def test_unknown_affiliate(self, payout_service):
        with pytest.raises(NotFoundError):
            await payout_service.request_payout("missing")

    async def test_suspended_affiliate(self, payout_service, supabase, affiliate, earn):
        await earn("2025-01", "2025-02", "2025-03")
        supabase.row("affiliates", affiliate["id"])["status"] = "suspended"

        with pytest.raises(PayoutNotAllowedError):
            await payout_service.request_payout(affiliate["id"])

    async def test_no_payout_destination(self, payout_service, supabase, affiliate, earn):
        await earn("2025-01", "2025-02", "2025-03")
        supabase.row("affiliates", affiliate["id"])["payout_email"] = None

        with pytest.raises(PayoutNotAllowedError):
            await payout_service.request_payout(affiliate["id"])

    async def test_balance_mismatch_is_integrity_violation(self, payout_service, supabase, affiliate, earn):
        await earn("2025-01", "2025-02", "2025-03")
        supabase.row("affiliates", affiliate["id"])["pending_commission_cents"] = 9000

        with pytest.raises(IntegrityViolationError):
            await payout_service.request_payout(affiliate["id"])
        assert supabase.rows("affiliate_payouts") == []


class TestPayoutLifecycle:

    @pytest.fixture
    async def payout(self, payout_service, affiliate, earn):
        await earn("2025-01", "2025-02", "2025-03")
        return await payout_service.request_payout(affiliate["id"])

    async def test_happy_path_to_completed(self, payout_service, supabase, affiliate, payout, clock):
        approved = await payout_service.approve_payout(payout.id, approved_by="admin-1")
        assert approved.status == PayoutStatus.APPROVED
        assert approved.approved_at == clock()

        processing = await payout_service.start_processing(payout.id)
        assert processing.status == PayoutStatus.PROCESSING

        completed = await payout_service.complete_payout(payout.id, transaction_id="PP-123")
        assert completed.status == PayoutStatus.COMPLETED
        assert completed.transaction_id == "PP-123"

        assert {c["status"] for c in supabase.rows("affiliate_commissions")} == {"paid"}
        assert supabase.row("affiliates", affiliate["id"])["total_commission_paid_cents"] == 6000
        assert_conserved(supabase, affiliate["id"])

    async def test_cancel_restores_balance(self, payout_service, supabase, affiliate, payout):
        cancelled = await payout_service.cancel_payout(payout.id)

        assert cancelled.status == PayoutStatus.CANCELLED
        assert supabase.row("affiliates", affiliate["id"])["pending_commission_cents"] == 6000
        assert {c["status"] for c in supabase.rows("affiliate_commissions")} == {"earned"}
        assert {c["payout_id"] for c in supabase.rows("affiliate_commissions")} == {None}
        assert_conserved(supabase, affiliate["id"])

    async def test_failed_payout_restores_and_allows_new_request(self, payout_service, supabase, affiliate, payout):
        await payout_service.approve_payout(payout.id)
        await payout_service.start_processing(payout.id)

        failed = await payout_service.fail_payout(payout.id, "Bank rejected transfer")
        assert failed.status == PayoutStatus.FAILED
        assert failed.failure_reason == "Bank rejected transfer"
        assert_conserved(supabase, affiliate["id"])

        retry = await payout_service.request_payout(affiliate["id"])
        assert retry.amount_cents == 6000

    async def test_cannot_complete_pending(self, payout_service, payout):
        with pytest.raises(InvalidTransitionError) as exc_info:
            await payout_service.complete_payout(payout.id, "PP-1")
        assert exc_info.value.current == "pending"
        assert exc_info.value.target == "completed"

    async def test_cannot_cancel_approved(self, payout_service, payout):
        await payout_service.approve_payout(payout.id)
        with pytest.raises(InvalidTransitionError):
            await payout_service.cancel_payout(payout.id)

    async def test_cannot_approve_twice(self, payout_service, payout):
        await payout_service.approve_payout(payout.id)
        with pytest.raises(InvalidTransitionError):
            await payout_service.approve_payout(payout.id)

    async def test_cannot_process_pending(self, payout_service, payout):
        with pytest.raises(InvalidTransitionError):
            await payout_service.start_processing(payout.id)

    async def test_terminal_payout_is_final(self, payout_service, payout):
        await payout_service.cancel_payout(payout.id)
        with pytest.raises(InvalidTransitionError):
            await payout_service.fail_payout(payout.id, "late failure")

    async def test_required_fields(self, payout_service, payout):
        with pytest.raises(ValidationFailedError):
            await payout_service.complete_payout(payout.id, "")
        with pytest.raises(ValidationFailedError):
            await payout_service.fail_payout(payout.id, "")

    async def test_unknown_payout(self, payout_service, affiliate):
        with pytest.raises(NotFoundError):
            await payout_service.approve_payout("missing")
        with pytest.raises(NotFoundError):
            await payout_service.cancel_payout("missing")

    async def test_listing(self, payout_service, affiliate, payout):
        assert [p.id for p in await payout_service.get_payouts(affiliate["id"])] == [payout.id]
        assert [p.id for p in await payout_service.list_payouts(status=PayoutStatus.PENDING)] == [payout.id]
        assert await payout_service.list_payouts(status=PayoutStatus.COMPLETED) == []
        assert (await payout_service.get_payout(payout.id)).amount_cents == 6000
        assert await payout_service.get_payout("missing") is None
