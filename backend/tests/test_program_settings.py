"""
Tests for the program settings row.
"""

import httpx
import pytest

from affiliate_engine.models.affiliate import CommissionType, ProgramSettings
from affiliate_engine.utils.errors import TransientStoreError, ValidationFailedError


class TestProgramSettingsService:

    async def test_reads_row(self, settings_service):
        settings = await settings_service.get_settings()
        assert settings.recurring_months == 3
        assert settings.commission_type == CommissionType.RECURRING

    async def test_missing_row_uses_defaults(self, settings_service, supabase):
        supabase.tables["affiliate_settings"] = []
        assert await settings_service.get_settings() == ProgramSettings()

    async def test_store_outage_propagates(self, settings_service, supabase):
        supabase.fail("affiliate_settings", httpx.ConnectError("refused"))
        with pytest.raises(TransientStoreError):
            await settings_service.get_settings()

    async def test_partial_update(self, settings_service, supabase):
        updated = await settings_service.update_settings({"minimum_payout_cents": 2500, "recurring_months": None})

        assert updated.minimum_payout_cents == 2500
        assert updated.recurring_months is None
        assert updated.commission_rate_bps == 2000
        assert supabase.settings()["minimum_payout_cents"] == 2500

    async def test_update_seeds_missing_row(self, settings_service, supabase):
        supabase.tables["affiliate_settings"] = []
        await settings_service.update_settings({"program_active": False})
        assert supabase.tables["affiliate_settings"][0]["program_active"] is False

    @pytest.mark.parametrize("changes", [{}, {"nonsense": 1}, {"commission_rate_bps": 10001}])
    async def test_rejected_updates(self, settings_service, changes):
        with pytest.raises(ValidationFailedError):
            await settings_service.update_settings(changes)
