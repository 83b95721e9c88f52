import logging
import os
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import __version__
from app.api import api_router
from app.core.logging import configure_logging
from app.core.settings import get_settings

configure_logging()
settings = get_settings()
logger = logging.getLogger(__name__)

app = FastAPI(title="GES Activity", version=__version__)


def _collect_cors_origins() -> list[str]:
    default_origins = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    configured_origins = settings.security.cors_origins
    env_origins = [
        origin.strip()
        for origin in os.environ.get("FRONTEND_ORIGIN", "").split(",")
        if origin.strip()
    ]

    collected: list[str] = []
    for origin in (*default_origins, *configured_origins, *env_origins):
        if origin and origin not in collected:
            collected.append(origin)

    return collected


app.add_middleware(
    CORSMiddleware,
    allow_origins=_collect_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup_event() -> None:
    current = get_settings()
    data_dir = Path(current.data.data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Using data directory: %s", data_dir)

    # Ensure models are registered before creating tables
    import app.models as _models  # noqa: F401

    from app.core.db import create_tables, init_db
    from app.services.document_store import InMemoryDocumentStore
    from app.services.session_manager import build_session_manager

    init_db(current.database.url)
    await create_tables()

    app.state.document_store = InMemoryDocumentStore()
    app.state.activity_sessions = build_session_manager(current, app.state.document_store)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    from app.core.db import dispose_engine

    sessions = getattr(app.state, "activity_sessions", None)
    if sessions is not None:
        # Every live stream must be released before the process goes away
        await sessions.close_all()
    await dispose_engine()


@app.get("/", include_in_schema=False)
def root():
    return {"message": "GES Activity backend running"}
