"""Admin API endpoints for composing, sending and tracking newsletters."""

import logging
from datetime import UTC
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, status
from fastapi.responses import HTMLResponse

from bulletin.core.config import settings
from bulletin.core.deps import AdminNewsletter, CurrentAdmin, DBSession, SenderDep
from bulletin.schemas.common import PaginatedResponse
from bulletin.schemas.newsletter import (
    NewsletterCreate,
    NewsletterResponse,
    NewsletterStats,
    NewsletterUpdate,
    ScheduleRequest,
    SendStatusResponse,
)
from bulletin.services.content_service import TemplateRenderError, render_preview
from bulletin.services.newsletter_service import (
    NewsletterSender,
    NewsletterService,
    NewsletterStateError,
    SendError,
    cancel_newsletter,
    resolve_template_html,
    schedule_newsletter,
)

logger = logging.getLogger(__name__)

router = APIRouter()


async def _run_send(sender: NewsletterSender, newsletter_id: UUID) -> None:
    """Background send; errors are logged since there is no caller to report to."""
    try:
        await sender.send(newsletter_id)
    except SendError as e:
        logger.error("Send of newsletter %s failed: %s", newsletter_id, e)


@router.get(
    "",
    response_model=PaginatedResponse[NewsletterResponse],
    summary="List newsletters",
)
async def list_newsletters(
    db: DBSession,
    _admin: CurrentAdmin,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
) -> PaginatedResponse[NewsletterResponse]:
    """List all newsletters, newest first."""
    newsletters, total = await NewsletterService(db).list_newsletters(page, page_size)
    pages = (total + page_size - 1) // page_size if total > 0 else 1
    return PaginatedResponse(
        items=[NewsletterResponse.model_validate(n) for n in newsletters],
        total=total,
        page=page,
        page_size=page_size,
        pages=pages,
    )


@router.post(
    "",
    response_model=NewsletterResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a draft newsletter",
)
async def create_newsletter(
    data: NewsletterCreate,
    db: DBSession,
    admin: CurrentAdmin,
) -> NewsletterResponse:
    newsletter = await NewsletterService(db).create(data)
    logger.info("Newsletter %s created by %s", newsletter.slug, admin)
    return NewsletterResponse.model_validate(newsletter)


@router.get(
    "/{newsletter_id}",
    response_model=NewsletterResponse,
    summary="Get a newsletter",
)
async def get_newsletter(newsletter: AdminNewsletter) -> NewsletterResponse:
    return NewsletterResponse.model_validate(newsletter)


@router.patch(
    "/{newsletter_id}",
    response_model=NewsletterResponse,
    summary="Update a draft newsletter",
)
async def update_newsletter(
    data: NewsletterUpdate,
    newsletter: AdminNewsletter,
    db: DBSession,
) -> NewsletterResponse:
    try:
        updated = await NewsletterService(db).update(newsletter, data)
    except NewsletterStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return NewsletterResponse.model_validate(updated)


@router.delete(
    "/{newsletter_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a draft newsletter",
)
async def delete_newsletter(newsletter: AdminNewsletter, db: DBSession) -> None:
    try:
        await NewsletterService(db).delete(newsletter)
    except NewsletterStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


@router.get(
    "/{newsletter_id}/preview",
    response_class=HTMLResponse,
    summary="Preview a newsletter with a sample recipient",
)
async def preview_newsletter(newsletter: AdminNewsletter, db: DBSession) -> HTMLResponse:
    """Render the newsletter through its template without tracking."""
    template_html = await resolve_template_html(
        db, newsletter.template_id, settings.default_template_slug
    )
    if template_html is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="No default template found",
        )
    try:
        rendered = render_preview(
            newsletter.markdown_content,
            newsletter.title,
            template_html,
            settings.base_url,
            newsletter.slug,
        )
    except TemplateRenderError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return HTMLResponse(rendered)


@router.post(
    "/{newsletter_id}/send",
    response_model=SendStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Send or resume a newsletter now",
)
async def send_newsletter(
    newsletter: AdminNewsletter,
    sender: SenderDep,
    background_tasks: BackgroundTasks,
    admin: CurrentAdmin,
) -> SendStatusResponse:
    """Start the send in the background; poll the status endpoint for progress."""
    if not newsletter.status.is_sendable:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot send newsletter in status '{newsletter.status.value}'",
        )
    background_tasks.add_task(_run_send, sender, newsletter.id)
    logger.info("Newsletter %s send requested by %s", newsletter.slug, admin)
    return SendStatusResponse.model_validate(newsletter)


@router.post(
    "/{newsletter_id}/schedule",
    response_model=NewsletterResponse,
    summary="Schedule a draft newsletter",
)
async def schedule(
    data: ScheduleRequest,
    newsletter: AdminNewsletter,
    db: DBSession,
) -> NewsletterResponse:
    when = data.scheduled_at
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    try:
        updated = await schedule_newsletter(db, newsletter, when)
    except NewsletterStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return NewsletterResponse.model_validate(updated)


@router.post(
    "/{newsletter_id}/cancel",
    response_model=NewsletterResponse,
    summary="Cancel a scheduled, sending or paused newsletter",
)
async def cancel(newsletter: AdminNewsletter, db: DBSession) -> NewsletterResponse:
    """scheduled -> draft, sending -> paused, paused -> sent."""
    try:
        updated = await cancel_newsletter(db, newsletter)
    except NewsletterStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return NewsletterResponse.model_validate(updated)


@router.get(
    "/{newsletter_id}/status",
    response_model=SendStatusResponse,
    summary="Poll send progress",
)
async def send_status(newsletter: AdminNewsletter) -> SendStatusResponse:
    return SendStatusResponse.model_validate(newsletter)


@router.get(
    "/{newsletter_id}/stats",
    response_model=NewsletterStats,
    summary="Open and click statistics",
)
async def stats(newsletter: AdminNewsletter, db: DBSession) -> NewsletterStats:
    return await NewsletterService(db).get_stats(newsletter)

