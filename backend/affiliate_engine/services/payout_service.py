"""
Payout Service

Payout requests and the payout state machine:

    pending -> approved -> processing -> completed
    pending | approved | processing -> failed
    pending -> cancelled

A request moves the affiliate's whole pending balance into one payout. The
request_affiliate_payout procedure locks the affiliate row, re-checks the
minimum and the single-open-payout rule, inserts the payout, moves the earned
commissions to pending_payout and decrements the balance in one transaction.
Two concurrent requests therefore cannot both spend the same balance.

Failure and cancellation return the payout's commissions to earned and
restore the balance; completion marks them paid.
"""

import logging
from typing import Optional, List, Dict, Any, Callable
from datetime import datetime

from supabase import Client

from affiliate_engine.database import get_supabase_service, first_row
from affiliate_engine.models.affiliate import (
    Affiliate,
    AffiliateStatus,
    Payout,
    PayoutStatus,
    OPEN_PAYOUT_STATUSES,
    assert_transition,
    sources_for,
    utcnow,
)
from affiliate_engine.services.program_settings import ProgramSettingsService
from affiliate_engine.utils.errors import (
    InsufficientBalanceError,
    InvalidTransitionError,
    NotFoundError,
    PayoutAlreadyOpenError,
    PayoutNotAllowedError,
    ValidationFailedError,
    translate_store_error,
)

logger = logging.getLogger(__name__)

PAYOUTS_TABLE = "affiliate_payouts"


class PayoutService:
    """
    Payout orchestration.

    Usage:
        service = get_payout_service()
        payout = await service.request_payout(affiliate_id)
        await service.approve_payout(payout.id)
        await service.start_processing(payout.id)
        await service.complete_payout(payout.id, transaction_id="PP-123")
    """

    def __init__(
        self,
        supabase: Optional[Client] = None,
        settings_service: Optional[ProgramSettingsService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.supabase = supabase or get_supabase_service()
        self.settings_service = settings_service or ProgramSettingsService(self.supabase)
        self.clock = clock

    # =========================================================================
    # REQUESTS
    # =========================================================================

    async def request_payout(self, affiliate_id: str, requested_by: Optional[str] = None) -> Payout:
        """
        Request a payout of the affiliate's full pending balance.

        Raises:
            NotFoundError: unknown affiliate
            PayoutNotAllowedError: affiliate not approved or no payout destination
            InsufficientBalanceError: pending balance below the program minimum
            PayoutAlreadyOpenError: a payout is still pending/approved/processing
            TransientStoreError: store unreachable
        """
        settings = await self.settings_service.get_settings()

        try:
            row = first_row(
                self.supabase.table("affiliates").select("*").eq(
                    "id", affiliate_id
                ).maybe_single().execute()
            )
        except Exception as e:
            raise translate_store_error(e) from e

        if not row:
            raise NotFoundError("Affiliate", affiliate_id)

        affiliate = Affiliate.from_row(row)
        if affiliate.status != AffiliateStatus.APPROVED:
            raise PayoutNotAllowedError(f"Affiliate account is {affiliate.status.value}")
        if not affiliate.payout_destination:
            raise PayoutNotAllowedError("Set up a payout method before requesting a payout")

        pending = affiliate.pending_commission_cents
        if pending <= 0 or pending < settings.minimum_payout_cents:
            raise InsufficientBalanceError(pending, settings.minimum_payout_cents)

        open_payout = await self._get_open_payout(affiliate_id)
        if open_payout:
            raise PayoutAlreadyOpenError(open_payout["id"])

        # The procedure repeats every check above under the row lock
        try:
            response = self.supabase.rpc("request_affiliate_payout", {
                "p_affiliate_id": affiliate_id,
                "p_minimum_payout_cents": settings.minimum_payout_cents,
                "p_requested_at": self.clock().isoformat(),
            }).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        payout = Payout.from_row(response.data)
        logger.info(
            f"Payout requested: affiliate={affiliate_id}, payout={payout.id}, "
            f"amount={payout.amount_cents}c, commissions={payout.commission_count}, "
            f"requested_by={requested_by or affiliate.user_id}"
        )
        return payout

    async def _get_open_payout(self, affiliate_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.supabase.table(PAYOUTS_TABLE).select("id, status").eq(
                "affiliate_id", affiliate_id
            ).in_(
                "status", [s.value for s in OPEN_PAYOUT_STATUSES]
            ).limit(1).execute()
        except Exception as e:
            raise translate_store_error(e) from e
        return first_row(response)

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_payouts(self, affiliate_id: str, limit: int = 20, offset: int = 0) -> List[Payout]:
        """Payout history for an affiliate, most recent request first."""
        try:
            response = self.supabase.table(PAYOUTS_TABLE).select("*").eq(
                "affiliate_id", affiliate_id
            ).order(
                "requested_at", desc=True
            ).range(offset, offset + limit - 1).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        return [Payout.from_row(row) for row in response.data or []]

    async def get_payout(self, payout_id: str) -> Optional[Payout]:
        try:
            row = first_row(
                self.supabase.table(PAYOUTS_TABLE).select("*").eq(
                    "id", payout_id
                ).maybe_single().execute()
            )
        except Exception as e:
            raise translate_store_error(e) from e
        return Payout.from_row(row) if row else None

    async def list_payouts(
        self,
        status: Optional[PayoutStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Payout]:
        """All payouts (admin), optionally filtered by status."""
        try:
            query = self.supabase.table(PAYOUTS_TABLE).select("*")
            if status:
                query = query.eq("status", status.value)
            response = query.order(
                "requested_at", desc=True
            ).range(offset, offset + limit - 1).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        return [Payout.from_row(row) for row in response.data or []]

    # =========================================================================
    # STATE TRANSITIONS
    # =========================================================================

    async def approve_payout(self, payout_id: str, approved_by: Optional[str] = None) -> Payout:
        """pending -> approved"""
        payout = await self._conditional_transition(
            payout_id,
            PayoutStatus.APPROVED,
            {"approved_at": self.clock().isoformat()},
        )
        logger.info(f"Payout {payout_id} approved by {approved_by or 'system'}")
        return payout

    async def start_processing(self, payout_id: str) -> Payout:
        """approved -> processing"""
        payout = await self._conditional_transition(payout_id, PayoutStatus.PROCESSING)
        logger.info(f"Payout {payout_id} processing")
        return payout

    async def complete_payout(self, payout_id: str, transaction_id: str) -> Payout:
        """processing -> completed; included commissions become paid."""
        if not transaction_id:
            raise ValidationFailedError("transaction_id is required", field="transaction_id")

        await self._check_transition(payout_id, PayoutStatus.COMPLETED)
        payout = await self._call_transition("complete_affiliate_payout", {
            "p_payout_id": payout_id,
            "p_transaction_id": transaction_id,
            "p_processed_at": self.clock().isoformat(),
        })
        logger.info(f"Payout {payout_id} completed: transaction={transaction_id}")
        return payout

    async def fail_payout(self, payout_id: str, reason: str) -> Payout:
        """Any open status -> failed; commissions return to earned."""
        if not reason:
            raise ValidationFailedError("A failure reason is required", field="reason")

        await self._check_transition(payout_id, PayoutStatus.FAILED)
        payout = await self._call_transition("fail_affiliate_payout", {
            "p_payout_id": payout_id,
            "p_failure_reason": reason,
            "p_processed_at": self.clock().isoformat(),
        })
        logger.warning(f"Payout {payout_id} failed: {reason}")
        return payout

    async def cancel_payout(self, payout_id: str) -> Payout:
        """pending -> cancelled; commissions return to earned."""
        await self._check_transition(payout_id, PayoutStatus.CANCELLED)
        payout = await self._call_transition("cancel_affiliate_payout", {
            "p_payout_id": payout_id,
        })
        logger.info(f"Payout {payout_id} cancelled")
        return payout

    async def _check_transition(self, payout_id: str, target: PayoutStatus) -> Payout:
        payout = await self.get_payout(payout_id)
        if not payout:
            raise NotFoundError("Payout", payout_id)
        assert_transition("payout", payout.status, target)
        return payout

    async def _call_transition(self, procedure: str, params: Dict[str, Any]) -> Payout:
        try:
            response = self.supabase.rpc(procedure, params).execute()
        except Exception as e:
            raise translate_store_error(e) from e
        return Payout.from_row(response.data)

    async def _conditional_transition(
        self,
        payout_id: str,
        target: PayoutStatus,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Payout:
        """
        Single conditional update: only rows still in a valid source status
        move. Nothing updated means the payout is missing or moved on.
        """
        allowed_from = [s.value for s in sources_for(target)]
        try:
            response = self.supabase.table(PAYOUTS_TABLE).update(
                {"status": target.value, **(extra or {})}
            ).eq(
                "id", payout_id
            ).in_(
                "status", allowed_from
            ).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        row = first_row(response)
        if row:
            return Payout.from_row(row)

        current = await self.get_payout(payout_id)
        if not current:
            raise NotFoundError("Payout", payout_id)
        raise InvalidTransitionError("payout", current.status.value, target.value)


# =============================================================================
# SINGLETON FACTORY
# =============================================================================

_payout_service: Optional[PayoutService] = None


def get_payout_service() -> PayoutService:
    """Get singleton PayoutService instance."""
    global _payout_service
    if _payout_service is None:
        _payout_service = PayoutService()
    return _payout_service
