from __future__ import annotations

from functools import lru_cache

from supabase import Client, ClientOptions, create_client

from src.config import settings


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """Service-role client shared by the store adapters. Created on first use."""
    return create_client(
        settings.supabase_url,
        settings.supabase_service_role_key,
        options=ClientOptions(
            auto_refresh_token=False,
            persist_session=False,
            postgrest_client_timeout=settings.store_timeout_seconds,
        ),
    )
