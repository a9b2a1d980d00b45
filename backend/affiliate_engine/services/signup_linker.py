"""
Signup Linker

Exchanges the attribution token for a durable link between a click and the
account created from it.

The track_affiliate_signup procedure performs the conditional update
(converted = false AND inside the attribution window) together with the
total_signups increment, so two concurrent links of the same click convert it
once and count it once.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Callable
from datetime import datetime

from supabase import Client

from affiliate_engine.database import get_supabase_service
from affiliate_engine.models.affiliate import ReferralToken, utcnow
from affiliate_engine.services.click_tracker import ReferralTokenStore
from affiliate_engine.services.program_settings import ProgramSettingsService
from affiliate_engine.utils.errors import ValidationFailedError, translate_store_error

logger = logging.getLogger(__name__)


# Link outcomes reported by track_affiliate_signup
REASON_LINKED = "linked"
REASON_UNKNOWN_CLICK = "unknown_click"
REASON_ALREADY_CONVERTED = "already_converted"
REASON_WINDOW_EXPIRED = "attribution_window_expired"
REASON_SELF_REFERRAL = "self_referral"
REASON_PROGRAM_INACTIVE = "program_inactive"
REASON_ORGANIZATION_ATTRIBUTED = "organization_already_attributed"
REASON_NO_TOKEN = "no_referral_token"

_REASON_MESSAGES = {
    REASON_LINKED: "Signup attributed to affiliate",
    REASON_UNKNOWN_CLICK: "Referral click not found",
    REASON_ALREADY_CONVERTED: "This referral has already been used",
    REASON_WINDOW_EXPIRED: "The referral link has expired",
    REASON_SELF_REFERRAL: "Affiliates cannot refer themselves",
    REASON_PROGRAM_INACTIVE: "The affiliate program is currently paused",
    REASON_ORGANIZATION_ATTRIBUTED: "This organization is already attributed to an affiliate",
    REASON_NO_TOKEN: "No referral to link",
}


@dataclass(frozen=True)
class SignupLinkResult:
    linked: bool
    reason: str

    @property
    def message(self) -> str:
        return _REASON_MESSAGES.get(self.reason, self.reason)


class SignupLinker:
    """
    Links new signups to the referral click that brought them in.

    Usage:
        linker = get_signup_linker()
        result = await linker.link_signup(click_id, user_id, organization_id)
        if not result.linked:
            logger.info(result.reason)
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

    async def link_signup(
        self,
        click_id: str,
        user_id: str,
        organization_id: str,
    ) -> SignupLinkResult:
        """
        Mark a click as converted by a new user/organization.

        Idempotent: linking an already-converted click returns
        linked=False with reason already_converted and changes nothing.

        Raises:
            ValidationFailedError: missing identifiers
            TransientStoreError: store unreachable, safe to retry
        """
        if not click_id:
            raise ValidationFailedError("click_id is required", field="click_id")
        if not user_id or not organization_id:
            raise ValidationFailedError("user_id and organization_id are required")

        settings = await self.settings_service.get_settings()
        if not settings.program_active:
            return SignupLinkResult(False, REASON_PROGRAM_INACTIVE)

        try:
            response = self.supabase.rpc("track_affiliate_signup", {
                "p_click_id": click_id,
                "p_user_id": user_id,
                "p_organization_id": organization_id,
                "p_signed_up_at": self.clock().isoformat(),
            }).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        outcome = response.data or {}
        result = SignupLinkResult(
            linked=bool(outcome.get("linked")),
            reason=outcome.get("reason") or REASON_UNKNOWN_CLICK,
        )

        if result.linked:
            logger.info(f"Affiliate signup linked: click_id={click_id}, org={organization_id}")
        else:
            logger.info(f"Affiliate signup not linked: click_id={click_id}, reason={result.reason}")

        return result

    async def track_signup(self, click_id: str, user_id: str, organization_id: str) -> bool:
        """True when this call converted the click."""
        result = await self.link_signup(click_id, user_id, organization_id)
        return result.linked

    async def link_stored_referral(
        self,
        store: ReferralTokenStore,
        user_id: str,
        organization_id: str,
        token: Optional[ReferralToken] = None,
    ) -> SignupLinkResult:
        """
        Link using the token carried by the visitor.

        The token is read from the store unless passed explicitly. On success
        the stored token is discarded; on rejection it is left for the caller.
        """
        token = token or store.load()
        if token is None:
            return SignupLinkResult(False, REASON_NO_TOKEN)

        result = await self.link_signup(token.click_id, user_id, organization_id)
        if result.linked:
            store.clear()
        return result


# =============================================================================
# SINGLETON FACTORY
# =============================================================================

_signup_linker: Optional[SignupLinker] = None


def get_signup_linker() -> SignupLinker:
    """Get singleton SignupLinker instance."""
    global _signup_linker
    if _signup_linker is None:
        _signup_linker = SignupLinker()
    return _signup_linker
