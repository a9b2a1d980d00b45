"""
Click Tracker

Turns an inbound ``?ref=CODE`` visit into a durable, attributable referral
record and hands the visitor an attribution token to carry until signup.

Key behaviors:
- Codes are normalized (trimmed, uppercased) before lookup
- Clicks are recorded by the track_affiliate_click procedure, which inserts
  the referral and increments total_clicks in one transaction
- Replaying a click_id returns the existing click without counting it again
- Any failure returns None: click tracking must never block a page render
- Later clicks overwrite the stored token (last-click attribution)
"""

import logging
import os
import secrets
from dataclasses import dataclass
from typing import Optional, Callable, MutableMapping
from datetime import datetime

from supabase import Client

from affiliate_engine.database import get_supabase_service, first_row
from affiliate_engine.models.affiliate import (
    AffiliateStatus,
    ReferralToken,
    REFERRAL_CODE_KEY,
    REFERRAL_TIME_KEY,
    REFERRAL_CLICK_ID_KEY,
    utcnow,
)
from affiliate_engine.services.program_settings import ProgramSettingsService

logger = logging.getLogger(__name__)

MAX_USER_AGENT_LENGTH = 500
MAX_URL_LENGTH = 2000

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")


@dataclass(frozen=True)
class CodeValidation:
    """Result of looking up a referral code."""
    is_valid: bool
    affiliate_id: Optional[str] = None


def normalize_code(code: Optional[str]) -> str:
    """Referral codes are case-insensitive and stored uppercase."""
    return (code or "").strip().upper()


def generate_click_id() -> str:
    """Opaque 32-char hex click identifier."""
    return secrets.token_hex(16)


def build_referral_url(referral_code: str, origin: Optional[str] = None) -> str:
    """Canonical shareable link: {origin}/register?ref={CODE}."""
    origin = origin or FRONTEND_URL
    return f"{origin.rstrip('/')}/register?ref={normalize_code(referral_code)}"


class ReferralTokenStore:
    """
    Client-held attribution token storage.

    Wraps any mutable string key/value mapping: the cookie jar assembled by the
    HTTP layer, or a plain dict in tests. The three keys are written and
    removed together.
    """

    KEYS = (REFERRAL_CODE_KEY, REFERRAL_CLICK_ID_KEY, REFERRAL_TIME_KEY)

    def __init__(self, storage: MutableMapping[str, str]):
        self.storage = storage

    def load(self) -> Optional[ReferralToken]:
        return ReferralToken.from_storage(self.storage)

    def save(self, token: ReferralToken) -> None:
        token.write_to(self.storage)

    def clear(self) -> None:
        for key in self.KEYS:
            self.storage.pop(key, None)


class ClickTracker:
    """
    Click tracking for affiliate referral links.

    Usage:
        tracker = get_click_tracker()

        # Public page load with ?ref=abc123
        click_id = await tracker.track_click(
            "abc123",
            landing_page="/register",
            referrer_url="https://blog.example.com",
            store=ReferralTokenStore(cookies),
        )

        # Later, during registration
        token = tracker.get_stored_referral(ReferralTokenStore(cookies))
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
    # CODE VALIDATION
    # =========================================================================

    async def validate_code(self, code: str) -> CodeValidation:
        """
        Check whether a referral code belongs to an approved affiliate.

        Never raises: unknown codes, inactive affiliates, a paused program and
        store failures all return is_valid=False.
        """
        normalized = normalize_code(code)
        if not normalized:
            return CodeValidation(is_valid=False)

        try:
            settings = await self.settings_service.get_settings()
            if not settings.program_active:
                return CodeValidation(is_valid=False)

            response = self.supabase.table("affiliates").select(
                "id, status"
            ).eq(
                "referral_code", normalized
            ).maybe_single().execute()

            affiliate = first_row(response)
            if not affiliate or affiliate.get("status") != AffiliateStatus.APPROVED.value:
                return CodeValidation(is_valid=False)

            return CodeValidation(is_valid=True, affiliate_id=affiliate["id"])

        except Exception as e:
            logger.error(f"Error validating referral code {normalized}: {e}")
            return CodeValidation(is_valid=False)

    # =========================================================================
    # CLICK TRACKING
    # =========================================================================

    async def track_click(
        self,
        code: str,
        landing_page: Optional[str] = None,
        referrer_url: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        click_id: Optional[str] = None,
        store: Optional[ReferralTokenStore] = None,
    ) -> Optional[str]:
        """
        Record a click on an affiliate link.

        Args:
            code: Referral code from the ?ref= parameter (any case)
            landing_page: Page the visitor landed on
            referrer_url: Where they came from
            user_agent: Browser user agent, truncated to 500 chars
            ip_address: Visitor IP when available
            click_id: Client-generated id for replay-safe retries
            store: Client-held storage to receive the attribution token

        Returns:
            The click id, or None when the code is invalid or anything failed
        """
        normalized = normalize_code(code)
        if not normalized:
            return None

        click_id = click_id or generate_click_id()
        clicked_at = self.clock()

        try:
            settings = await self.settings_service.get_settings()
            if not settings.program_active:
                logger.info(f"Click ignored, affiliate program inactive: code={normalized}")
                return None

            response = self.supabase.rpc("track_affiliate_click", {
                "p_referral_code": normalized,
                "p_click_id": click_id,
                "p_clicked_at": clicked_at.isoformat(),
                "p_ip_address": ip_address,
                "p_user_agent": user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
                "p_landing_page": landing_page[:MAX_URL_LENGTH] if landing_page else None,
                "p_referrer_url": referrer_url[:MAX_URL_LENGTH] if referrer_url else None,
            }).execute()

            recorded_click_id = response.data if response else None
            if not recorded_click_id:
                logger.warning(f"Click with invalid referral code: {normalized}")
                return None

        except Exception as e:
            logger.error(f"Error tracking click for {normalized}: {e}")
            return None

        if store is not None:
            try:
                self.remember_click(
                    store,
                    ReferralToken(code=normalized, click_id=recorded_click_id, clicked_at=clicked_at),
                )
            except Exception as e:
                # the click is recorded; only the client-side token was lost
                logger.error(f"Error storing referral token for click {recorded_click_id}: {e}")
                return None

        logger.info(f"Affiliate click tracked: code={normalized}, click_id={recorded_click_id}")
        return recorded_click_id

    # =========================================================================
    # CLIENT-HELD TOKEN
    # =========================================================================

    def remember_click(self, store: ReferralTokenStore, token: ReferralToken) -> None:
        """Store a token, replacing whatever is held (last click wins)."""
        store.save(token)

    def get_stored_referral(
        self,
        store: ReferralTokenStore,
        ttl_days: Optional[int] = None,
    ) -> Optional[ReferralToken]:
        """
        Read the attribution token.

        Returns None when any field is missing. When ttl_days is given, an
        expired token is also treated as absent.
        """
        token = store.load()
        if token is None:
            return None
        if ttl_days is not None and token.is_expired(self.clock(), ttl_days):
            return None
        return token

    def clear_stored_referral(self, store: ReferralTokenStore) -> None:
        """Remove the attribution token. Safe to call repeatedly."""
        store.clear()


# =============================================================================
# SINGLETON FACTORY
# =============================================================================

_click_tracker: Optional[ClickTracker] = None


def get_click_tracker() -> ClickTracker:
    """Get singleton ClickTracker instance."""
    global _click_tracker
    if _click_tracker is None:
        _click_tracker = ClickTracker()
    return _click_tracker
