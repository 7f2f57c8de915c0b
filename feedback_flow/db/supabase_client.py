"""Service-role async Supabase client singleton."""

from supabase import acreate_client, AsyncClient
from feedback_flow.config import settings

_client: AsyncClient | None = None


async def get_supabase() -> AsyncClient:
    """Get or create the Supabase client using service role key."""
    global _client
    if _client is None:
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set"
            )
        _client = await acreate_client(
            settings.supabase_url,
            settings.supabase_service_role_key,
        )
    return _client
