############################################################
#
# tinychat - Streaming LLM Chat Service
#
# usage.py: Daily usage counter endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Read and increment the daily usage counter for the caller."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tinychat.app.api.deps import get_app_settings, get_request_identity
from tinychat.app.db import crud
from tinychat.app.db.session import get_async_db
from tinychat.app.security.session import Identity
from tinychat.app.settings import Settings

router = APIRouter(prefix="/api", tags=["usage"])


def _usage_body(count: int, limit: int) -> dict:
    return {"count": count, "limit": limit, "isLimitReached": count >= limit}


@router.get("/usage")
async def get_usage(
    db: AsyncSession = Depends(get_async_db),
    identity: Identity = Depends(get_request_identity),
    settings: Settings = Depends(get_app_settings),
):
    """Today's count for the session user, or the client IP for guests."""
    count = await crud.get_usage_count(
        db, user_id=identity.user_id, ip_address=identity.ip_address
    )
    return _usage_body(count, settings.get_usage_limit(identity.authenticated))


@router.post("/usage")
async def increment_usage(
    db: AsyncSession = Depends(get_async_db),
    identity: Identity = Depends(get_request_identity),
    settings: Settings = Depends(get_app_settings),
):
    """Add one to today's count and return the new value."""
    if identity.authenticated:
        await crud.ensure_session_user(db, identity.user_id)
    count = await crud.increment_usage(
        db, user_id=identity.user_id, ip_address=identity.ip_address
    )
    await db.commit()
    return _usage_body(count, settings.get_usage_limit(identity.authenticated))
