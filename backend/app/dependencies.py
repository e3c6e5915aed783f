import uuid
from typing import Annotated, AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.directory.service import Actor, SqlUserDirectory
from app.db.session import AsyncSessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session


async def get_current_actor(
    x_actor_id: Annotated[str | None, Header()] = None,
    db: AsyncSession = Depends(get_db),
) -> Actor:
    """
    Acting user as forwarded by the gateway in X-Actor-Id.
    Authentication happens upstream; this only resolves attribution and role.
    """
    if not x_actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Actor-Id header required")
    try:
        user_id = uuid.UUID(x_actor_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-Actor-Id")

    actor = await SqlUserDirectory(db).get_actor(user_id)
    if not actor:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")
    return actor
