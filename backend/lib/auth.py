"""
Authentication utilities for Supabase JWTs and admin roles
"""
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Header
from jose import JWTError, jwt

from teachspark.config import get_settings
from .supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"


def _decode_token(token: str, secret: str) -> Dict[str, Any]:
    """Verify a Supabase access token locally and return its id and email."""
    try:
        claims = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE)
    except JWTError as e:
        logger.warning(f"⚠️ [Auth] Token rejected: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return {"id": claims["sub"], "email": claims.get("email")}


def _fetch_token_user(supabase, token: str) -> Dict[str, Any]:
    """Ask Supabase Auth who owns the token."""
    user_response = supabase.auth.get_user(token)
    if not user_response or not user_response.user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return {"id": user_response.user.id, "email": user_response.user.email}


async def get_current_user(authorization: Optional[str] = Header(None)):
    """
    Validate the bearer token and load the user's profile

    Args:
        authorization: Bearer token from Authorization header

    Returns:
        dict: id, email, role, full_name, subscription_type, profile

    Raises:
        HTTPException: 401 for a missing or invalid token, 404 without a profile
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = authorization[len("Bearer "):]

    try:
        supabase = get_supabase_client()
        secret = get_settings().supabase_jwt_secret
        identity = _decode_token(token, secret) if secret else _fetch_token_user(supabase, token)

        profile_response = supabase.table('user_profiles') \
            .select('*') \
            .eq('id', identity["id"]) \
            .limit(1) \
            .execute()

        if not profile_response.data:
            raise HTTPException(status_code=404, detail="User profile not found")

        profile = profile_response.data[0]

        return {
            "id": identity["id"],
            "email": identity["email"] or profile.get("email"),
            "role": profile.get("role", "teacher"),
            "full_name": profile.get("full_name"),
            "subscription_type": profile.get("subscription_type", "free"),
            "profile": profile,
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ [Auth] Could not validate credentials: {e}")
        raise HTTPException(status_code=401, detail="Could not validate credentials")


async def get_admin_user(user: dict = Depends(get_current_user)):
    """
    Require a row in admin_users for the current user

    Returns:
        The user dict with `admin_role` added

    Raises:
        HTTPException: 403 when the user is not an admin
    """
    supabase = get_supabase_client()
    result = supabase.table('admin_users') \
        .select('role') \
        .eq('user_id', user["id"]) \
        .limit(1) \
        .execute()

    if not result.data:
        logger.warning(f"⚠️ [Auth] Admin access denied for {user['id'][:8]}...")
        raise HTTPException(status_code=403, detail="Admin access required")

    return {**user, "admin_role": result.data[0].get("role", "admin")}


def require_super_admin(user: dict):
    """
    Check that an admin user is a super admin

    Raises:
        HTTPException: If the admin role is not super_admin
    """
    if user.get("admin_role") != "super_admin":
        raise HTTPException(status_code=403, detail="Super admin access required")
