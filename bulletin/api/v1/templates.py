"""Admin API endpoints for newsletter templates."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import select

from bulletin.core.deps import CurrentAdmin, DBSession
from bulletin.models.newsletter_template import NewsletterTemplate
from bulletin.schemas.template import TemplateCreate, TemplateResponse, TemplateUpdate
from bulletin.services.content_service import TemplateRenderError, personalize_email

router = APIRouter()


def _validate_template(html_body: str) -> None:
    """Reject templates that cannot be merged before they reach a send.

    The template is merged twice: with empty slots and with sample values, so
    expressions guarded by a non-empty slot are evaluated too.
    """
    try:
        personalize_email(html_body, "", "", "", "#", "", "")
        personalize_email(
            html_body,
            "<p>Sample content</p>",
            "Sample title",
            '<img src="https://example.com/r/o" />',
            "https://example.com/manage",
            "https://example.com",
            "https://example.com/newsletters/sample",
        )
    except TemplateRenderError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


@router.get(
    "",
    response_model=list[TemplateResponse],
    summary="List templates",
)
async def list_templates(db: DBSession, _admin: CurrentAdmin) -> list[TemplateResponse]:
    result = await db.execute(select(NewsletterTemplate).order_by(NewsletterTemplate.name))
    return [TemplateResponse.model_validate(t) for t in result.scalars().all()]


@router.post(
    "",
    response_model=TemplateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a template",
)
async def create_template(
    data: TemplateCreate,
    db: DBSession,
    _admin: CurrentAdmin,
) -> TemplateResponse:
    existing = await db.scalar(
        select(NewsletterTemplate.id).where(NewsletterTemplate.slug == data.slug)
    )
    if existing is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Template with slug '{data.slug}' already exists",
        )
    _validate_template(data.html_body)

    template = NewsletterTemplate(slug=data.slug, name=data.name, html_body=data.html_body)
    db.add(template)
    await db.commit()
    await db.refresh(template)
    return TemplateResponse.model_validate(template)


@router.patch(
    "/{template_id}",
    response_model=TemplateResponse,
    summary="Update a template",
)
async def update_template(
    template_id: UUID,
    data: TemplateUpdate,
    db: DBSession,
    _admin: CurrentAdmin,
) -> TemplateResponse:
    template = await db.get(NewsletterTemplate, template_id)
    if template is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Template not found",
        )
    if data.html_body is not None:
        _validate_template(data.html_body)

    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(template, field, value)
    await db.commit()
    await db.refresh(template)
    return TemplateResponse.model_validate(template)
