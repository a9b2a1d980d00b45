"""
Database access.

Single place where the Supabase service-role client is created. The service
role bypasses row-level security, so every caller is trusted backend code;
authorization is enforced in the routers via app dependencies.
"""

import os
import logging
from typing import Optional

from supabase import Client, create_client

logger = logging.getLogger(__name__)

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

_supabase_service: Optional[Client] = None


def get_supabase_service() -> Optional[Client]:
    """
    Get the singleton service-role Supabase client.

    Returns None (and logs) when the environment is not configured, so that
    modules can be imported without database credentials.
    """
    global _supabase_service
    if _supabase_service is None:
        if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
            logger.error("SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY not configured")
            return None
        _supabase_service = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
    return _supabase_service


def first_row(response) -> Optional[dict]:
    """
    Return the single row of a maybe_single()/single()/limit(1) response.

    supabase-py returns None from maybe_single().execute() when no row matches,
    and a list from plain selects, so both shapes are handled here.
    """
    if response is None:
        return None
    data = getattr(response, "data", None)
    if isinstance(data, list):
        return data[0] if data else None
    return data or None
