"""Backend utilities"""
from .supabase_client import get_supabase_client
from .auth import get_current_user, get_admin_user, require_super_admin

__all__ = ["get_supabase_client", "get_current_user", "get_admin_user", "require_super_admin"]
