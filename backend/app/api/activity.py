import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status

from app.api.activity_schemas import (
    CountsResponse,
    HideRequest,
    HideResponse,
    InboxPostRequest,
    InboxReadResponse,
    InboxResponse,
    RecordCreated,
    RecordPayload,
    RefreshResponse,
    SeenResponse,
    SummaryResponse,
)
from app.core.security import SessionIdentity, auth_required
from app.models.activity import ActivityItem, Category
from app.services.document_store import InMemoryDocumentStore, stamp_created_at
from app.services.inbox import InboxNotFoundError
from app.services.session_manager import ActivitySession, ActivitySessionManager
from app.services.watermark_store import WatermarkPersistenceError

logger = logging.getLogger(__name__)

router = APIRouter()


def get_session_manager(request: Request) -> ActivitySessionManager:
    manager = getattr(request.app.state, "activity_sessions", None)
    if manager is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Activity service not ready")
    return manager


def get_document_store(request: Request) -> InMemoryDocumentStore:
    store = getattr(request.app.state, "document_store", None)
    if store is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Activity service not ready")
    return store


async def current_session(
    identity: SessionIdentity = Depends(auth_required),
    manager: ActivitySessionManager = Depends(get_session_manager),
) -> ActivitySession:
    session = await manager.open(identity)
    await session.aggregator.settle()
    return session


def _counts(session: ActivitySession) -> dict:
    aggregator = session.aggregator
    return {
        "counts": aggregator.counts,
        "total_count": aggregator.total_count(),
        "degraded": sorted(aggregator.errors),
    }


@router.get("/summary", response_model=SummaryResponse)
async def get_summary(session: ActivitySession = Depends(current_session)):
    return {**_counts(session), "feed": session.aggregator.feed()}


@router.get("/counts", response_model=CountsResponse)
async def get_counts(session: ActivitySession = Depends(current_session)):
    return _counts(session)


@router.get("/feed", response_model=list[ActivityItem])
async def get_feed(session: ActivitySession = Depends(current_session)):
    return session.aggregator.feed()


@router.post("/categories/{category}/seen", response_model=SeenResponse)
async def mark_category_seen(category: Category, session: ActivitySession = Depends(current_session)):
    try:
        watermark = await session.controller.mark_category_seen(category)
    except WatermarkPersistenceError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not save that you have seen this page. Please try again.",
        )
    await session.aggregator.settle()
    return {"category": category, "watermark": watermark}


@router.post("/hide", response_model=HideResponse)
async def hide_item(payload: HideRequest, session: ActivitySession = Depends(current_session)):
    try:
        added = session.controller.hide_item(payload.category, payload.id)
    except OSError as exc:
        logger.error("Failed to persist hidden item %s/%s: %s", payload.category.value, payload.id, exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Could not hide this item.")
    return {"hidden": int(added)}


@router.post("/hide-all", response_model=HideResponse)
async def hide_all(session: ActivitySession = Depends(current_session)):
    try:
        added = session.controller.hide_all()
    except OSError as exc:
        logger.error("Failed to persist hidden items: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Could not hide these items.")
    return {"hidden": added}


@router.post("/records/{category}", response_model=RecordCreated, status_code=status.HTTP_201_CREATED)
async def create_record(
    category: Category,
    payload: RecordPayload = Body(...),
    identity: SessionIdentity = Depends(auth_required),
    manager: ActivitySessionManager = Depends(get_session_manager),
    store: InMemoryDocumentStore = Depends(get_document_store),
):
    config = manager.configs[category]
    document = stamp_created_at(payload)
    document = stamp_created_at(document, field=config.timestamp_field)
    # Records always land in the caller's tenant
    document[config.tenant_field] = identity.tenant_id
    doc_id = store.add(config.collection, document)
    return {"id": doc_id, "collection": config.collection}


@router.delete("/session", status_code=status.HTTP_204_NO_CONTENT)
async def close_session(
    identity: SessionIdentity = Depends(auth_required),
    manager: ActivitySessionManager = Depends(get_session_manager),
):
    await manager.close(identity.user_id)


@router.post("/refresh", response_model=RefreshResponse)
async def refresh_counts(session: ActivitySession = Depends(current_session)):
    reopened = await session.aggregator.refresh()
    await session.aggregator.settle()
    return {**_counts(session), "reopened": reopened}


@router.get("/inbox", response_model=InboxResponse)
async def get_inbox(session: ActivitySession = Depends(current_session)):
    items = session.inbox.notifications()
    return {"items": items, "unread_count": sum(1 for item in items if not item.read)}


@router.post("/inbox", response_model=RecordCreated, status_code=status.HTTP_201_CREATED)
async def post_inbox(payload: InboxPostRequest, session: ActivitySession = Depends(current_session)):
    doc_id = session.inbox.post(
        payload.recipient_id,
        payload.title,
        message=payload.message,
        kind=payload.kind,
        link=payload.link,
    )
    return {"id": doc_id, "collection": session.inbox.config.collection}


@router.post("/inbox/read-all", response_model=InboxReadResponse)
async def read_all_inbox(session: ActivitySession = Depends(current_session)):
    return {"read": session.inbox.mark_all_read()}


@router.post("/inbox/{notification_id}/read", response_model=InboxReadResponse)
async def read_inbox(notification_id: str, session: ActivitySession = Depends(current_session)):
    try:
        changed = session.inbox.mark_read(notification_id)
    except InboxNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return {"read": int(changed)}
