"""Read helpers for asserting database state from a fresh session."""

from __future__ import annotations

from typing import Any

from sqlalchemy import func, select


async def fetch_all(session_maker, model, *where: Any) -> list:
    """All rows of `model` matching `where`."""
    async with session_maker() as db:
        result = await db.execute(select(model).where(*where))
        return list(result.scalars().all())


async def fetch_one(session_maker, model, *where: Any):
    async with session_maker() as db:
        result = await db.execute(select(model).where(*where))
        return result.scalar_one_or_none()


async def count(session_maker, model, *where: Any) -> int:
    async with session_maker() as db:
        result = await db.execute(select(func.count()).select_from(model).where(*where))
        return result.scalar_one()
