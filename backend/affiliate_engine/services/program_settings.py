"""
Program Settings Service

Reads and updates the singleton affiliate_settings row. Settings are fetched
at the start of every operation that depends on them; nothing here caches, so
an admin change applies to the next click, signup or payment.
"""

import logging
from typing import Optional, Dict, Any

from supabase import Client

from affiliate_engine.database import get_supabase_service, first_row
from affiliate_engine.models.affiliate import ProgramSettings
from affiliate_engine.utils.errors import ValidationFailedError, translate_store_error

logger = logging.getLogger(__name__)

SETTINGS_TABLE = "affiliate_settings"

# Fields admins may change through update_settings
EDITABLE_FIELDS = frozenset(ProgramSettings.model_fields)


class ProgramSettingsService:
    """Access to the program-wide affiliate configuration."""

    def __init__(self, supabase: Optional[Client] = None):
        self.supabase = supabase or get_supabase_service()

    async def get_settings(self) -> ProgramSettings:
        """
        Load the current program settings.

        Falls back to defaults when the row has not been seeded yet.
        Store failures propagate (translated) so callers decide whether to
        degrade or fail.
        """
        try:
            response = self.supabase.table(SETTINGS_TABLE).select("*").limit(1).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        row = first_row(response)
        if not row:
            logger.warning("affiliate_settings row missing, using default program settings")
            return ProgramSettings()

        return ProgramSettings.from_row(row)

    async def update_settings(self, changes: Dict[str, Any]) -> ProgramSettings:
        """
        Apply a partial update to the settings row.

        Args:
            changes: Field -> new value. Unknown fields are rejected.

        Returns:
            The settings as stored after the update
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationFailedError(
                f"Unknown settings: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        if not changes:
            raise ValidationFailedError("No settings to update")

        current = await self.get_settings()
        try:
            merged = ProgramSettings(**{**current.model_dump(), **changes})
        except ValueError as e:
            raise ValidationFailedError(f"Invalid settings: {e}") from e

        payload = merged.model_dump(mode="json")

        try:
            existing = first_row(
                self.supabase.table(SETTINGS_TABLE).select("id").limit(1).execute()
            )
            if existing:
                self.supabase.table(SETTINGS_TABLE).update(payload).eq(
                    "id", existing["id"]
                ).execute()
            else:
                self.supabase.table(SETTINGS_TABLE).insert(payload).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        logger.info(f"Affiliate program settings updated: {sorted(changes)}")
        return merged


# =============================================================================
# SINGLETON FACTORY
# =============================================================================

_program_settings_service: Optional[ProgramSettingsService] = None


def get_program_settings_service() -> ProgramSettingsService:
    """Get singleton ProgramSettingsService instance."""
    global _program_settings_service
    if _program_settings_service is None:
        _program_settings_service = ProgramSettingsService()
    return _program_settings_service
