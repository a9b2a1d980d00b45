"""Shared fixtures: an in-memory store, a frozen clock and services wired to both."""

import pytest

from affiliate_engine.models.affiliate import CommissionType, ProgramSettings
from affiliate_engine.services.affiliate_service import AffiliateService
from affiliate_engine.services.click_tracker import ClickTracker
from affiliate_engine.services.commission_service import CommissionService
from affiliate_engine.services.payout_service import PayoutService
from affiliate_engine.services.program_settings import ProgramSettingsService
from affiliate_engine.services.signup_linker import SignupLinker

from fakes import FakeClock, FakeSupabase


@pytest.fixture
def program_settings():
    return ProgramSettings(
        commission_type=CommissionType.RECURRING,
        commission_rate_bps=2000,
        recurring_months=3,
        attribution_window_days=30,
        cookie_duration_days=30,
        minimum_payout_cents=5000,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def supabase(program_settings):
    return FakeSupabase(program_settings)


@pytest.fixture
def settings_service(supabase):
    return ProgramSettingsService(supabase)


@pytest.fixture
def click_tracker(supabase, settings_service, clock):
    return ClickTracker(supabase, settings_service, clock)


@pytest.fixture
def signup_linker(supabase, settings_service, clock):
    return SignupLinker(supabase, settings_service, clock)


@pytest.fixture
def commission_service(supabase, settings_service, clock):
    return CommissionService(supabase, settings_service, clock)


@pytest.fixture
def payout_service(supabase, settings_service, clock):
    return PayoutService(supabase, settings_service, clock)


@pytest.fixture
def affiliate_service(supabase, settings_service, clock):
    return AffiliateService(supabase, settings_service, clock)


@pytest.fixture
def affiliate(supabase):
    """Approved affiliate ABC123 with a PayPal destination."""
    return supabase.add_affiliate(user_id="affiliate-user", referral_code="ABC123")
