"""
Tests for click tracking and the client-held referral token.
"""

from datetime import timedelta

import httpx
import pytest

from affiliate_engine.models.affiliate import ProgramSettings, ReferralToken
from affiliate_engine.services.click_tracker import (
    MAX_USER_AGENT_LENGTH,
    ReferralTokenStore,
    build_referral_url,
    generate_click_id,
    normalize_code,
)


class TestHelpers:

    def test_normalize_code(self):
        assert normalize_code("  abc123\n") == "ABC123"
        assert normalize_code(None) == ""

    def test_click_ids_are_unique_hex(self):
        ids = {generate_click_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(len(i) == 32 for i in ids)

    def test_referral_url(self):
        assert build_referral_url("abc123", "https://app.example/") == "https://app.example/register?ref=ABC123"


class TestValidateCode:

    async def test_approved_code_is_valid(self, click_tracker, affiliate):
        result = await click_tracker.validate_code("abc123")
        assert result.is_valid
        assert result.affiliate_id == affiliate["id"]

    async def test_unknown_code(self, click_tracker, affiliate):
        assert not (await click_tracker.validate_code("ZZZ999")).is_valid

    async def test_pending_affiliate_code_is_invalid(self, click_tracker, supabase):
        supabase.add_affiliate(referral_code="PEND01", status="pending")
        assert not (await click_tracker.validate_code("PEND01")).is_valid

    async def test_paused_program(self, click_tracker, supabase, affiliate):
        supabase.set_settings(ProgramSettings(program_active=False))
        assert not (await click_tracker.validate_code("ABC123")).is_valid

    async def test_store_failure_is_invalid_not_error(self, click_tracker, supabase, affiliate):
        supabase.fail("affiliates", httpx.ConnectError("down"))
        assert not (await click_tracker.validate_code("ABC123")).is_valid


class TestTrackClick:

    async def test_records_referral_and_counts_click(self, click_tracker, supabase, affiliate, clock):
        store = ReferralTokenStore({})
        click_id = await click_tracker.track_click(
            "abc123",
            landing_page="/register",
            referrer_url="https://blog.example",
            user_agent="Mozilla/5.0",
            ip_address="203.0.113.9",
            store=store,
        )

        assert click_id
        referral = supabase.find("affiliate_referrals", click_id=click_id)
        assert referral["affiliate_id"] == affiliate["id"]
        assert referral["landing_page"] == "/register"
        assert referral["clicked_at"] == clock().isoformat()
        assert supabase.row("affiliates", affiliate["id"])["total_clicks"] == 1

        token = store.load()
        assert token == ReferralToken(code="ABC123", click_id=click_id, clicked_at=clock())

    async def test_replayed_click_id_counts_once(self, click_tracker, supabase, affiliate):
        first = await click_tracker.track_click("ABC123", click_id="fixed-click")
        second = await click_tracker.track_click("ABC123", click_id="fixed-click")

        assert first == second == "fixed-click"
        assert len(supabase.rows("affiliate_referrals")) == 1
        assert supabase.row("affiliates", affiliate["id"])["total_clicks"] == 1

    async def test_user_agent_truncated(self, click_tracker, supabase, affiliate):
        click_id = await click_tracker.track_click("ABC123", user_agent="x" * 900)
        referral = supabase.find("affiliate_referrals", click_id=click_id)
        assert len(referral["user_agent"]) == MAX_USER_AGENT_LENGTH

    async def test_invalid_code_returns_none(self, click_tracker, supabase, affiliate):
        store = ReferralTokenStore({})
        assert await click_tracker.track_click("NOPE00", store=store) is None
        assert store.load() is None
        assert supabase.rows("affiliate_referrals") == []

    async def test_blank_code_returns_none(self, click_tracker, supabase):
        assert await click_tracker.track_click("   ") is None
        assert supabase.rpc_calls == []

    async def test_suspended_affiliate_not_tracked(self, click_tracker, supabase):
        supabase.add_affiliate(referral_code="SUSP01", status="suspended")
        assert await click_tracker.track_click("SUSP01") is None

    async def test_paused_program_not_tracked(self, click_tracker, supabase, affiliate):
        supabase.set_settings(ProgramSettings(program_active=False))
        assert await click_tracker.track_click("ABC123") is None
        assert supabase.rpc_calls == []

    async def test_store_failure_returns_none(self, click_tracker, supabase, affiliate):
        supabase.fail("track_affiliate_click", httpx.ReadTimeout("slow"))
        assert await click_tracker.track_click("ABC123") is None


class TestLastClickWins:

    async def test_later_click_replaces_token(self, click_tracker, supabase, clock):
        supabase.add_affiliate(referral_code="FIRST1")
        supabase.add_affiliate(referral_code="SECND2")
        store = ReferralTokenStore({})

        await click_tracker.track_click("FIRST1", store=store)
        clock.advance(hours=1)
        second = await click_tracker.track_click("SECND2", store=store)

        token = store.load()
        assert token.code == "SECND2"
        assert token.click_id == second

    async def test_token_ahead_of_clock_is_overwritten(self, click_tracker, supabase, clock):
        supabase.add_affiliate(referral_code="XYZ789")
        cookies = {}
        store = ReferralTokenStore(cookies)
        store.save(ReferralToken(code="OLD111", click_id="old-click", clicked_at=clock() + timedelta(minutes=5)))

        click_id = await click_tracker.track_click("xyz789", store=store)

        assert click_id
        assert cookies["affiliate_click_id"] == click_id
        assert store.load().code == "XYZ789"


class TestStoredReferral:

    def test_expired_token_is_absent(self, click_tracker, clock):
        store = ReferralTokenStore({})
        store.save(ReferralToken(code="ABC123", click_id="c1", clicked_at=clock()))

        clock.advance(days=31)
        assert click_tracker.get_stored_referral(store, ttl_days=30) is None
        assert click_tracker.get_stored_referral(store).click_id == "c1"

    def test_clear_is_idempotent(self, click_tracker, clock):
        storage = {"unrelated": "keep"}
        store = ReferralTokenStore(storage)
        store.save(ReferralToken(code="ABC123", click_id="c1", clicked_at=clock()))

        click_tracker.clear_stored_referral(store)
        click_tracker.clear_stored_referral(store)

        assert storage == {"unrelated": "keep"}
        assert click_tracker.get_stored_referral(store) is None
