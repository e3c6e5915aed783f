from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import ConflictError


@asynccontextmanager
async def guarded(db: AsyncSession, message: str, **detail: Any):
    """
    Savepoint around a write. Changes made inside the block are flushed when it
    exits; unique-index violations and version mismatches surface as
    ConflictError and leave the outer transaction usable.
    """
    try:
        async with db.begin_nested():
            yield
    except IntegrityError as exc:
        raise ConflictError(message, **detail) from exc
    except StaleDataError as exc:
        raise ConflictError(message, **detail) from exc


async def flush_guarded(db: AsyncSession, message: str, *objects: Any, **detail: Any) -> None:
    async with guarded(db, message, **detail):
        db.add_all(objects)
