"""
FastAPI dependency injection functions.
"""

from functools import lru_cache
from pathlib import Path

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from supabase import AsyncClient

from groupcal.background.scheduler import SyncScheduler
from groupcal.config import get_settings
from groupcal.core.database import get_supabase_admin_client, get_supabase_client
from groupcal.core.security import decode_access_token
from groupcal.features.sync.link_store import LinkStore
from groupcal.features.sync.local_store import InMemoryLocalStore, LocalStoreAdapter
from groupcal.features.sync.orchestrator import SyncOrchestrator
from groupcal.features.sync.remote import RemoteStore, SupabaseRemoteStore

# Bearer token scheme for Swagger UI
bearer_scheme = HTTPBearer()

# One orchestrator and one device calendar per signed-in user
_orchestrators: dict[str, SyncOrchestrator] = {}
_local_stores: dict[str, LocalStoreAdapter] = {}


async def get_db() -> AsyncClient:
    """Dependency: get Supabase async client."""
    return await get_supabase_client()


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> str:
    """Dependency: extract and validate user_id from JWT token.

    Returns:
        str: The user's UUID as string.

    Raises:
        HTTPException 401: If token is invalid or expired.
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token carries no user id",
        )

    return user_id


async def get_remote_store(db: AsyncClient = Depends(get_db)) -> RemoteStore:
    return SupabaseRemoteStore(db)


def get_local_store(user_id: str) -> LocalStoreAdapter:
    """This user's device calendar. Hosts with a native store replace this."""
    store = _local_stores.get(user_id)
    if store is None:
        store = InMemoryLocalStore()
        _local_stores[user_id] = store
    return store


def link_store_path(user_id: str) -> Path:
    """Per-user file next to LINK_STORE_PATH, e.g. links-<user>.json."""
    base = Path(get_settings().LINK_STORE_PATH)
    return base.with_name(f"{base.stem}-{user_id}{base.suffix}")


def build_orchestrator(user_id: str, remote: RemoteStore) -> SyncOrchestrator:
    """Return this user's orchestrator, creating it on first use.

    ``remote`` only seeds a new orchestrator; callers pass their own
    client to ``sync`` on every run.
    """
    orchestrator = _orchestrators.get(user_id)
    if orchestrator is None:
        orchestrator = SyncOrchestrator(
            remote=remote,
            local=get_local_store(user_id),
            link_store=LinkStore(link_store_path(user_id)),
            settings=get_settings(),
        )
        _orchestrators[user_id] = orchestrator
    return orchestrator


async def get_orchestrator(
    user_id: str = Depends(get_current_user_id),
    remote: RemoteStore = Depends(get_remote_store),
) -> SyncOrchestrator:
    return build_orchestrator(user_id, remote)


async def background_remote_store() -> RemoteStore:
    """Remote store for scheduled runs, using the service-role client."""
    return SupabaseRemoteStore(await get_supabase_admin_client())


async def background_orchestrator(user_id: str) -> SyncOrchestrator:
    return build_orchestrator(user_id, await background_remote_store())


@lru_cache
def get_sync_scheduler() -> SyncScheduler:
    return SyncScheduler(
        background_orchestrator,
        settings=get_settings(),
        remote_for=background_remote_store,
    )
