"""
Supabase client for backend operations

The backend always talks to Supabase with the service-role key; ownership
checks happen in the services and in RLS for direct frontend access.
"""
from typing import Optional

from supabase import create_client, Client

from teachspark.config import get_settings

_supabase_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """Get or create Supabase client singleton"""
    global _supabase_client

    if _supabase_client is None:
        settings = get_settings()
        if not settings.supabase_url or not settings.supabase_service_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set in environment")

        _supabase_client = create_client(settings.supabase_url, settings.supabase_service_key)

    return _supabase_client


def reset_supabase_client():
    """Forget the cached client (used after settings change)."""
    global _supabase_client
    _supabase_client = None
