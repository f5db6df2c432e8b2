"""Service-role Supabase client factory."""

from supabase import AsyncClient, acreate_client
from complaint_pipeline.config import settings


async def create_supabase() -> AsyncClient:
    """Create a new async Supabase client using the service role key.

    Clients are pooled by the store, so this is called once per pooled handle.
    """
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise RuntimeError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set"
        )
    return await acreate_client(
        settings.supabase_url,
        settings.supabase_service_role_key,
    )


async def close_supabase(client: AsyncClient) -> None:
    """Close the HTTP session behind a client evicted from the pool."""
    await client.postgrest.aclose()
