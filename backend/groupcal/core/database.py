"""
Database connections: Supabase async client setup.
"""

from supabase import acreate_client, AsyncClient

from groupcal.config import get_settings

_client: AsyncClient | None = None
_admin_client: AsyncClient | None = None


async def get_supabase_client() -> AsyncClient:
    """Get the Supabase async client (singleton).

    Uses the anon key; row-level security scopes every query to the
    signed-in user.
    """
    global _client
    if _client is None:
        settings = get_settings()
        _client = await acreate_client(settings.SUPABASE_URL, settings.SUPABASE_KEY)
    return _client


async def get_supabase_admin_client() -> AsyncClient:
    """Get the Supabase admin client (service_role key, bypasses RLS).

    Only used by the background scheduler, which syncs on behalf of
    registered users.
    """
    global _admin_client
    if _admin_client is None:
        settings = get_settings()
        if not settings.SUPABASE_SERVICE_KEY:
            raise ValueError("SUPABASE_SERVICE_KEY not configured")
        _admin_client = await acreate_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_KEY)
    return _admin_client
