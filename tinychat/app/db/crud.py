############################################################
#
# tinychat - Streaming LLM Chat Service
#
# crud.py: Database CRUD operations for users, models and usage
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Database CRUD operations for users, model descriptors and usage counters."""

from datetime import date, datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tinychat.app.db.models import AIModel, UsageLimit, User
from tinychat.app.logging_config import get_logger

logger = get_logger(__name__)


# User CRUD
async def get_user_by_id(db: AsyncSession, user_id: str) -> Optional[User]:
    """Get user by ID."""
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    """Get user by email."""
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def get_or_create_user(
    db: AsyncSession,
    email: str,
    name: Optional[str] = None,
    user_id: Optional[str] = None,
) -> User:
    """Return the user with this email, creating it on first use."""
    user = await get_user_by_email(db, email)
    if user:
        return user
    user = User(email=email, name=name)
    if user_id:
        user.id = user_id
    db.add(user)
    await db.flush()
    logger.info("user_created", user_id=user.id, email=email)
    return user


async def ensure_session_user(db: AsyncSession, user_id: str) -> User:
    """Return the user for an opaque session id, creating a stub row if needed.

    Session ids come from the external identity provider; the row only
    exists to satisfy foreign keys.
    """
    user = await get_user_by_id(db, user_id)
    if user:
        return user
    user = User(id=user_id, email=f"{user_id}@users.tinychat.local")
    db.add(user)
    await db.flush()
    return user


# Model descriptor CRUD
async def get_model_by_id(db: AsyncSession, model_pk: str) -> Optional[AIModel]:
    result = await db.execute(select(AIModel).where(AIModel.id == model_pk))
    return result.scalar_one_or_none()


async def get_model_by_provider_id(db: AsyncSession, model_id: str) -> Optional[AIModel]:
    """Look up a descriptor by its provider-specific model string."""
    result = await db.execute(select(AIModel).where(AIModel.model_id == model_id))
    return result.scalar_one_or_none()


async def resolve_model_pk(db: AsyncSession, model_id: Optional[str]) -> Optional[str]:
    """Best-effort mapping of a provider model string to a descriptor key.

    Returns None when the string is unknown or the lookup fails; a missing
    descriptor never blocks a chat turn.
    """
    if not model_id:
        return None
    try:
        descriptor = await get_model_by_provider_id(db, model_id)
        if descriptor is None:
            # Clients may also send the descriptor key itself
            descriptor = await get_model_by_id(db, model_id)
    except Exception as e:
        logger.warning("model_lookup_failed", model_id=model_id, error=str(e))
        return None
    return descriptor.id if descriptor else None


async def get_active_models(db: AsyncSession) -> List[AIModel]:
    """List active model descriptors."""
    result = await db.execute(
        select(AIModel).where(AIModel.is_active == True).order_by(AIModel.name)  # noqa: E712
    )
    return list(result.scalars().all())


async def upsert_model(
    db: AsyncSession,
    model_id: str,
    name: str,
    provider: str,
    description: Optional[str] = None,
    icon_url: Optional[str] = None,
    is_active: bool = True,
    pk: Optional[str] = None,
) -> AIModel:
    """Create or update a descriptor keyed by its provider model string."""
    descriptor = await get_model_by_provider_id(db, model_id)
    if descriptor is None:
        descriptor = AIModel(model_id=model_id, name=name, provider=provider)
        if pk:
            descriptor.id = pk
        db.add(descriptor)
    descriptor.name = name
    descriptor.provider = provider
    descriptor.description = description
    descriptor.icon_url = icon_url
    descriptor.is_active = is_active
    await db.flush()
    return descriptor


# Usage counter CRUD
def usage_today() -> date:
    return datetime.now(timezone.utc).date()


def _usage_filter(user_id: Optional[str], ip_address: Optional[str], day: date):
    if user_id:
        return (UsageLimit.user_id == user_id, UsageLimit.usage_date == day)
    return (
        UsageLimit.user_id.is_(None),
        UsageLimit.ip_address == ip_address,
        UsageLimit.usage_date == day,
    )


async def get_usage_count(
    db: AsyncSession,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    day: Optional[date] = None,
) -> int:
    """Read today's counter for an identity (0 when no row exists)."""
    day = day or usage_today()
    result = await db.execute(
        select(UsageLimit.count).where(*_usage_filter(user_id, ip_address, day))
    )
    return result.scalar_one_or_none() or 0


async def increment_usage(
    db: AsyncSession,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    day: Optional[date] = None,
) -> int:
    """Atomically insert-or-increment the counter and return the new count.

    Uses the store's native upsert so concurrent turns from the same
    identity both count.
    """
    if not user_id and not ip_address:
        raise ValueError("usage identity requires a user id or an ip address")

    day = day or usage_today()
    values = {
        "user_id": user_id or None,
        "ip_address": None if user_id else ip_address,
        "usage_date": day,
        "count": 1,
    }
    conflict_keys = ["user_id" if user_id else "ip_address", "usage_date"]

    dialect = db.get_bind().dialect.name
    if dialect in ("mysql", "mariadb"):
        stmt = mysql_insert(UsageLimit).values(**values)
        stmt = stmt.on_duplicate_key_update(count=UsageLimit.count + 1)
        await db.execute(stmt)
    elif dialect in ("sqlite", "postgresql"):
        insert = sqlite_insert if dialect == "sqlite" else pg_insert
        stmt = insert(UsageLimit).values(**values).on_conflict_do_update(
            index_elements=conflict_keys,
            set_={"count": UsageLimit.count + 1},
        )
        await db.execute(stmt)
    else:
        # Generic path: single UPDATE with a relative increment, insert if absent
        result = await db.execute(
            update(UsageLimit)
            .where(*_usage_filter(user_id, ip_address, day))
            .values(count=UsageLimit.count + 1)
        )
        if result.rowcount == 0:
            db.add(UsageLimit(**values))
            await db.flush()

    return await get_usage_count(db, user_id=user_id, ip_address=ip_address, day=day)
