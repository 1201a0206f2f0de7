"""
Pages — בחירת הדף הפעיל וניהול מנוי ה-webhook שלו ב-Meta (X-Admin-API-Key).

ה-token של הדף לא נחשף באף תשובה.
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.exceptions import AppException, ErrorCode, PageNotFoundError
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.page import Page
from app.domain.services.graph_api import GraphApiClient
from app.domain.services.page_service import PageService

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])

DEFAULT_SUBSCRIBED_FIELDS = "messages"


def get_graph_client() -> GraphApiClient:
    return GraphApiClient()


class PageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    platform_page_id: str
    name: str | None
    token_expires_at: datetime | None
    is_selected: bool
    created_at: datetime | None


class SelectPageRequest(BaseModel):
    user_id: int
    page_id: int


class SubscriptionResponse(BaseModel):
    success: bool
    page_id: int
    platform_page_id: str
    fields: str
    result: Any = None


async def _page_with_token(db: AsyncSession, page_db_id: int) -> Page:
    page = await PageService(db).find_by_id(page_db_id)
    if page is None:
        raise PageNotFoundError(page_db_id)
    if not page.page_access_token:
        raise AppException(
            message=f"Page {page_db_id} has no access token",
            error_code=ErrorCode.PAGE_TOKEN_MISSING,
            status_code=409,
            details={"page_id": page_db_id},
        )
    return page


@router.get("", response_model=list[PageResponse])
async def list_pages(
    user_id: int = Query(...),
    db: AsyncSession = Depends(get_db),
) -> list[PageResponse]:
    pages = await PageService(db).find_by_user_id(user_id)
    return [PageResponse.model_validate(p) for p in pages]


@router.post("/select", response_model=PageResponse)
async def select_page(
    body: SelectPageRequest,
    db: AsyncSession = Depends(get_db),
) -> PageResponse:
    page = await PageService(db).set_selected(body.user_id, body.page_id)
    return PageResponse.model_validate(page)


@router.post("/{page_id}/subscriptions", response_model=SubscriptionResponse)
async def subscribe_page(
    page_id: int,
    fields: str = Query(DEFAULT_SUBSCRIBED_FIELDS),
    db: AsyncSession = Depends(get_db),
    graph: GraphApiClient = Depends(get_graph_client),
) -> SubscriptionResponse:
    page = await _page_with_token(db, page_id)
    result = await graph.subscribe_webhooks(page.platform_page_id, page.page_access_token, fields)
    logger.info(
        "Page subscribed to webhooks",
        extra_data={"page_id": page_id, "platform_page_id": page.platform_page_id, "fields": fields},
    )
    return SubscriptionResponse(
        success=True,
        page_id=page_id,
        platform_page_id=page.platform_page_id,
        fields=fields,
        result=result,
    )


@router.delete("/{page_id}/subscriptions", response_model=SubscriptionResponse)
async def unsubscribe_page(
    page_id: int,
    fields: str = Query(DEFAULT_SUBSCRIBED_FIELDS),
    db: AsyncSession = Depends(get_db),
    graph: GraphApiClient = Depends(get_graph_client),
) -> SubscriptionResponse:
    page = await _page_with_token(db, page_id)
    result = await graph.unsubscribe_webhooks(page.platform_page_id, page.page_access_token, fields)
    logger.info(
        "Page unsubscribed from webhooks",
        extra_data={"page_id": page_id, "platform_page_id": page.platform_page_id},
    )
    return SubscriptionResponse(
        success=True,
        page_id=page_id,
        platform_page_id=page.platform_page_id,
        fields=fields,
        result=result,
    )
