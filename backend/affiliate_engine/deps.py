"""
FastAPI dependencies for caller identity.

The identity provider is Supabase Auth: bearer tokens are verified by asking
Supabase for the user they belong to. Organization membership and admin
roles are read from organization_members and admin_users.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from affiliate_engine.database import get_supabase_service

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict[str, Any]:
    """
    Verify the bearer token and return the caller's claims.

    Returns:
        {"sub": user_id, "email": email}
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None or not credentials.credentials:
        raise credentials_exception

    supabase = get_supabase_service()
    if supabase is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable",
        )

    try:
        response = supabase.auth.get_user(credentials.credentials)
    except Exception as e:
        logger.warning(f"Token verification failed: {e}")
        raise credentials_exception

    user = getattr(response, "user", None)
    if user is None:
        raise credentials_exception

    return {"sub": user.id, "email": getattr(user, "email", None)}


async def get_user_org(
    current_user: Dict[str, Any] = Depends(get_current_user),
) -> Tuple[str, str]:
    """(user_id, organization_id) for the caller's first organization."""
    user_id = current_user["sub"]
    supabase = get_supabase_service()

    try:
        org_result = supabase.table("organization_members") \
            .select("organization_id") \
            .eq("user_id", user_id) \
            .limit(1) \
            .execute()
    except Exception as e:
        logger.error(f"Error loading organization for user {user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable. Please try again.",
        )

    if not org_result.data:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not a member of any organization",
        )

    return user_id, org_result.data[0]["organization_id"]


# =============================================================================
# ADMIN ACCESS
# =============================================================================

@dataclass
class AdminContext:
    """Authenticated admin caller."""
    user_id: str
    admin_id: str
    role: str
    email: Optional[str] = None


async def get_admin_user(
    current_user: Dict[str, Any] = Depends(get_current_user),
) -> AdminContext:
    """Require an active admin_users row for the caller."""
    user_id = current_user["sub"]
    supabase = get_supabase_service()

    try:
        result = supabase.table("admin_users") \
            .select("id, role, is_active") \
            .eq("user_id", user_id) \
            .limit(1) \
            .execute()
    except Exception as e:
        logger.error(f"Error loading admin user {user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable. Please try again.",
        )

    admin = result.data[0] if result.data else None
    if not admin or admin.get("is_active") is False:
        logger.warning(f"Non-admin access attempt to admin endpoint: user={user_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )

    return AdminContext(
        user_id=user_id,
        admin_id=admin["id"],
        role=admin.get("role") or "viewer",
        email=current_user.get("email"),
    )


def require_admin_role(*roles: str):
    """Dependency factory: admin with one of the given roles."""

    async def checker(admin: AdminContext = Depends(get_admin_user)) -> AdminContext:
        if admin.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of roles: {', '.join(roles)}",
            )
        return admin

    return checker
