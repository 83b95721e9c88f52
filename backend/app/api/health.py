from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response

from app import __version__
from app.core.db import check_db_health

router = APIRouter()

_start_time = datetime.now(timezone.utc)


def _uptime_seconds() -> float:
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


@router.api_route("/", methods=["GET", "HEAD"], summary="Liveness probe", response_model=None)
async def health(request: Request):
    if request.method == "HEAD":
        return Response(status_code=200)
    return {"ok": True}


@router.get("/full", summary="Full health check")
async def full_health(request: Request) -> dict:
    sessions = getattr(request.app.state, "activity_sessions", None)
    database = await check_db_health()
    return {
        "ok": database.get("ok", False),
        "uptime_seconds": _uptime_seconds(),
        "version": __version__,
        "activity_sessions": len(sessions) if sessions is not None else 0,
        "database": database,
    }
