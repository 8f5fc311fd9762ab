"""Public routes mounted at the application root.

These URLs are embedded in delivered emails, so their paths and query
parameters must stay stable across releases.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from bulletin.core.config import settings
from bulletin.core.deps import DBSession
from bulletin.core.rate_limit import get_client_ip
from bulletin.models.email_event import EmailEventType
from bulletin.models.newsletter import NewsletterStatus
from bulletin.schemas.newsletter import ArchiveItem
from bulletin.services.content_service import TemplateRenderError, render_public_view
from bulletin.services.newsletter_service import NewsletterService, resolve_template_html
from bulletin.services.subscriber_service import SubscriberService
from bulletin.services.tracking_service import TrackingService

logger = logging.getLogger(__name__)

router = APIRouter()

# 1x1 transparent PNG
TRANSPARENT_PNG = bytes.fromhex(
    "89504e470d0a1a0a0000000d49484452000000010000000108060000001f15c489"
    "0000000a49444154789c62000000020001e221bc330000000049454e44ae426082"
)


@router.get("/r/o", tags=["tracking"], include_in_schema=False)
async def track_open(
    request: Request,
    db: DBSession,
    ucode: str = "",
    topic: str = "",
    openhash: str = Query("", alias="hash"),
) -> Response:
    """Open pixel. Always returns the image; the event is stored only if the hash verifies."""
    if ucode and openhash:
        await TrackingService(db).record(
            EmailEventType.OPEN,
            ucode,
            topic,
            openhash,
            ip=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    return Response(
        content=TRANSPARENT_PNG,
        media_type="image/png",
        headers={"Cache-Control": "no-store"},
    )


@router.get("/r/c", tags=["tracking"], include_in_schema=False)
async def track_click(
    request: Request,
    db: DBSession,
    ucode: str = "",
    topic: str = "",
    openhash: str = Query("", alias="hash"),
    url: str | None = None,
) -> RedirectResponse:
    """Click redirect. Only http(s) targets are followed."""
    if not url:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing url parameter",
        )
    if not url.startswith(("https://", "http://")):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid redirect URL",
        )

    if ucode and openhash:
        await TrackingService(db).record(
            EmailEventType.CLICK,
            ucode,
            topic,
            openhash,
            url=url,
            ip=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.post("/unsubscribe/{admin_link}", tags=["subscriptions"])
async def one_click_unsubscribe(
    admin_link: str,
    db: DBSession,
    from_slug: str | None = Query(None, alias="from"),
) -> Response:
    """List-Unsubscribe one-click endpoint (RFC 8058)."""
    service = SubscriberService(db)
    subscriber = await service.find_by_admin_link(admin_link)
    if subscriber is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        )
    await service.unsubscribe(subscriber, from_slug=from_slug, source="one_click")
    return Response(status_code=status.HTTP_200_OK)


@router.get("/newsletters", response_model=list[ArchiveItem], tags=["archive"])
async def list_archive(db: DBSession) -> list[ArchiveItem]:
    newsletters = await NewsletterService(db).list_sent()
    return [ArchiveItem.model_validate(n) for n in newsletters]


@router.get("/newsletters/{slug}", response_class=HTMLResponse, tags=["archive"])
async def view_archived(slug: str, db: DBSession) -> HTMLResponse:
    """Public web view of a sent newsletter."""
    newsletter = await NewsletterService(db).get_by_slug(slug)
    if newsletter is None or newsletter.status != NewsletterStatus.SENT:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Newsletter not found",
        )

    template_html = await resolve_template_html(
        db, newsletter.template_id, settings.default_template_slug
    )
    if template_html is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="No default template found",
        )
    try:
        rendered = render_public_view(
            newsletter.markdown_content,
            newsletter.title,
            template_html,
            settings.base_url,
            newsletter.slug,
        )
    except TemplateRenderError as e:
        logger.error("Failed to render newsletter %s: %s", slug, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to render newsletter",
        ) from e
    return HTMLResponse(rendered)
