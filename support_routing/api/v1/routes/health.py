from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from support_routing.core.db import get_db_session

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> dict[str, str]:
    sweeper = getattr(request.app.state, "sweeper", None)
    return {
        "status": "ok",
        "sweeper": "running" if sweeper is not None and sweeper.running else "stopped",
    }


@router.get("/health/db")
async def db_health(session: AsyncSession = Depends(get_db_session)) -> dict[str, str]:
    await session.execute(text("SELECT 1"))
    return {"db": "ok"}
