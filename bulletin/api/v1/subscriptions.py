"""Public subscription endpoints: double opt-in and self-service management.

Management routes are addressed by the subscriber's admin link, which is the
only credential a subscriber ever holds.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, Request, status

from bulletin.core.config import settings
from bulletin.core.deps import CaptchaDep, DBSession, EmailTransportDep
from bulletin.core.rate_limit import SUBSCRIBE_RATE_LIMIT, limiter
from bulletin.models.subscriber import Subscriber
from bulletin.schemas.common import MessageResponse
from bulletin.schemas.subscriber import (
    SubscribeRequest,
    SubscriptionResponse,
    UpdateNameRequest,
    VerifyResponse,
)
from bulletin.services.captcha_service import CaptchaError
from bulletin.services.subscriber_service import SubscriberService, build_manage_url

logger = logging.getLogger(__name__)

router = APIRouter()

SUBSCRIBE_MESSAGE = "Check your inbox to confirm your subscription"


def _to_response(subscriber: Subscriber) -> SubscriptionResponse:
    return SubscriptionResponse(
        email=subscriber.email,
        name=subscriber.name,
        status=subscriber.status,
        verified_email=subscriber.verified_email,
        bounced=subscriber.bounced_at is not None,
    )


async def _get_subscriber_by_link(service: SubscriberService, admin_link: str) -> Subscriber:
    subscriber = await service.find_by_admin_link(admin_link)
    if subscriber is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        )
    return subscriber


@router.post(
    "/subscribe",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Subscribe to the newsletter",
)
@limiter.limit(SUBSCRIBE_RATE_LIMIT)
async def subscribe(
    request: Request,  # noqa: ARG001 - required by slowapi
    data: SubscribeRequest,
    db: DBSession,
    captcha: CaptchaDep,
    transport: EmailTransportDep,
) -> MessageResponse:
    """Start a double opt-in subscription.

    The response is the same whether or not the address is already
    subscribed.
    """
    try:
        passed = await captcha.verify(data.captcha_token)
    except CaptchaError as e:
        logger.error("Captcha verification unavailable: %s", e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Captcha verification unavailable",
        ) from e
    if not passed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Captcha verification failed",
        )

    await SubscriberService(db).subscribe(data.email, data.name, transport)
    return MessageResponse(message=SUBSCRIBE_MESSAGE)


@router.get(
    "/verify/{token}",
    response_model=VerifyResponse,
    summary="Confirm an email address",
)
async def verify(token: str, db: DBSession) -> VerifyResponse:
    subscriber = await SubscriberService(db).verify(token)
    if subscriber is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Invalid or expired verification link",
        )
    return VerifyResponse(
        message="Subscription confirmed",
        manage_url=build_manage_url(settings.base_url, subscriber),
    )


@router.get(
    "/manage/{admin_link}",
    response_model=SubscriptionResponse,
    summary="Get subscription details",
)
async def get_subscription(admin_link: str, db: DBSession) -> SubscriptionResponse:
    subscriber = await _get_subscriber_by_link(SubscriberService(db), admin_link)
    return _to_response(subscriber)


@router.post(
    "/manage/{admin_link}/name",
    response_model=SubscriptionResponse,
    summary="Change the display name",
)
async def update_name(
    admin_link: str,
    data: UpdateNameRequest,
    db: DBSession,
) -> SubscriptionResponse:
    service = SubscriberService(db)
    subscriber = await _get_subscriber_by_link(service, admin_link)
    subscriber = await service.update_name(subscriber, data.name)
    return _to_response(subscriber)


@router.post(
    "/manage/{admin_link}/unsubscribe",
    response_model=SubscriptionResponse,
    summary="Unsubscribe",
)
async def unsubscribe(
    admin_link: str,
    db: DBSession,
    from_slug: str | None = Query(None, alias="from", description="Newsletter slug"),
) -> SubscriptionResponse:
    service = SubscriberService(db)
    subscriber = await _get_subscriber_by_link(service, admin_link)
    await service.unsubscribe(subscriber, from_slug=from_slug, source="manage")
    return _to_response(subscriber)


@router.post(
    "/manage/{admin_link}/resubscribe",
    response_model=SubscriptionResponse,
    summary="Resubscribe",
)
async def resubscribe(admin_link: str, db: DBSession) -> SubscriptionResponse:
    """Restore the subscription; also clears a previous hard bounce."""
    service = SubscriberService(db)
    subscriber = await _get_subscriber_by_link(service, admin_link)
    subscriber = await service.resubscribe(subscriber)
    return _to_response(subscriber)
