"""Initial newsletter schema and default template.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

import uuid
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

DEFAULT_TEMPLATE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{{ title }}</title>
</head>
<body style="margin:0;padding:0;background:#f4f4f4;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;">
    <table width="100%" cellpadding="0" cellspacing="0" style="background:#f4f4f4;">
        <tr>
            <td align="center" style="padding:12px 0;font-size:12px;color:#999999;">
                <a href="{{ web_url }}" style="color:#999999;">View this email in your browser</a>
            </td>
        </tr>
        <tr>
            <td align="center" style="padding:0 0 20px;">
                <table width="600" cellpadding="0" cellspacing="0" style="max-width:600px;width:100%;background:#ffffff;border-radius:8px;overflow:hidden;">
                    <tr>
                        <td style="background:#2f5d8a;padding:24px 32px;text-align:center;">
                            <a href="{{ base_url }}" style="color:#ffffff;text-decoration:none;">
                                <h1 style="margin:0;color:#ffffff;font-size:24px;font-weight:700;">{{ title }}</h1>
                            </a>
                        </td>
                    </tr>
                    <tr>
                        <td style="padding:32px;color:#333333;font-size:16px;line-height:1.6;">
                            {{ content }}
                        </td>
                    </tr>
                    <tr>
                        <td style="padding:24px 32px;background:#f9f9f9;text-align:center;font-size:12px;color:#999999;">
                            <p style="margin:0;"><a href="{{ unsubscribe_url }}" style="color:#999999;">Unsubscribe</a></p>
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
    {{ tracking_pixel }}
</body>
</html>"""


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    # Create enum types
    op.execute(
        "CREATE TYPE newsletter_status AS ENUM "
        "('draft', 'scheduled', 'sending', 'paused', 'sent', 'failed')"
    )
    op.execute("CREATE TYPE send_status AS ENUM ('pending', 'sent', 'failed')")
    op.execute("CREATE TYPE email_event_type AS ENUM ('open', 'click')")

    # Create subscribers table
    op.create_table(
        "subscribers",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("status", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("verified_email", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("secret_code", sa.String(64), nullable=False),
        sa.Column("ucode", sa.String(16), nullable=False),
        sa.Column("legacy_admin_link", sa.String(64), nullable=True),
        sa.Column("subscription_source", sa.String(50), nullable=True),
        sa.Column("bounced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_subscribers")),
    )
    op.create_index(op.f("ix_subscribers_email"), "subscribers", ["email"], unique=True)
    op.create_index(op.f("ix_subscribers_ucode"), "subscribers", ["ucode"], unique=True)
    op.create_index(
        op.f("ix_subscribers_legacy_admin_link"),
        "subscribers",
        ["legacy_admin_link"],
        unique=False,
    )

    # Create verification_tokens table
    op.create_table(
        "verification_tokens",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("subscriber_id", sa.UUID(), nullable=False),
        sa.Column("token", sa.String(64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["subscriber_id"],
            ["subscribers.id"],
            name=op.f("fk_verification_tokens_subscriber_id_subscribers"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_verification_tokens")),
    )
    op.create_index(
        op.f("ix_verification_tokens_subscriber_id"),
        "verification_tokens",
        ["subscriber_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_verification_tokens_token"), "verification_tokens", ["token"], unique=True
    )

    # Create newsletter_templates table
    op.create_table(
        "newsletter_templates",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("html_body", sa.Text(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_newsletter_templates")),
    )
    op.create_index(
        op.f("ix_newsletter_templates_slug"), "newsletter_templates", ["slug"], unique=True
    )

    # Create newsletters table
    op.create_table(
        "newsletters",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False),
        sa.Column("markdown_content", sa.Text(), nullable=False, server_default=""),
        sa.Column("template_id", sa.UUID(), nullable=True),
        sa.Column("rendered_html", sa.Text(), nullable=True),
        sa.Column(
            "status",
            postgresql.ENUM(
                "draft",
                "scheduled",
                "sending",
                "paused",
                "sent",
                "failed",
                name="newsletter_status",
                create_type=False,
            ),
            nullable=False,
            server_default="draft",
        ),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sending_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sending_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["template_id"],
            ["newsletter_templates.id"],
            name=op.f("fk_newsletters_template_id_newsletter_templates"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_newsletters")),
    )
    op.create_index(op.f("ix_newsletters_slug"), "newsletters", ["slug"], unique=True)
    op.create_index(
        "ix_newsletters_status_scheduled_at",
        "newsletters",
        ["status", "scheduled_at"],
        unique=False,
    )

    # Create newsletter_sends table
    op.create_table(
        "newsletter_sends",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("newsletter_id", sa.UUID(), nullable=False),
        sa.Column("subscriber_id", sa.UUID(), nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM("pending", "sent", "failed", name="send_status", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["newsletter_id"],
            ["newsletters.id"],
            name=op.f("fk_newsletter_sends_newsletter_id_newsletters"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["subscriber_id"],
            ["subscribers.id"],
            name=op.f("fk_newsletter_sends_subscriber_id_subscribers"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_newsletter_sends")),
        sa.UniqueConstraint(
            "newsletter_id",
            "subscriber_id",
            name="uq_newsletter_sends_newsletter_subscriber",
        ),
    )
    op.create_index(
        op.f("ix_newsletter_sends_newsletter_id"),
        "newsletter_sends",
        ["newsletter_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_newsletter_sends_subscriber_id"),
        "newsletter_sends",
        ["subscriber_id"],
        unique=False,
    )

    # Create newsletter_links table
    op.create_table(
        "newsletter_links",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("newsletter_id", sa.UUID(), nullable=False),
        sa.Column("original_url", sa.Text(), nullable=False),
        sa.Column("short_url", sa.Text(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["newsletter_id"],
            ["newsletters.id"],
            name=op.f("fk_newsletter_links_newsletter_id_newsletters"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_newsletter_links")),
        sa.UniqueConstraint(
            "newsletter_id",
            "original_url",
            name="uq_newsletter_links_newsletter_url",
        ),
    )
    op.create_index(
        op.f("ix_newsletter_links_newsletter_id"),
        "newsletter_links",
        ["newsletter_id"],
        unique=False,
    )

    # Create email_events table
    op.create_table(
        "email_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("ucode", sa.String(16), nullable=False),
        sa.Column(
            "event_type",
            postgresql.ENUM("open", "click", name="email_event_type", create_type=False),
            nullable=False,
        ),
        sa.Column("topic", sa.String(100), nullable=False),
        sa.Column("ip", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("clicked_url", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_email_events")),
    )
    op.create_index(op.f("ix_email_events_ucode"), "email_events", ["ucode"], unique=False)
    op.create_index(
        op.f("ix_email_events_event_type"), "email_events", ["event_type"], unique=False
    )
    op.create_index(op.f("ix_email_events_topic"), "email_events", ["topic"], unique=False)

    # Create unsubscribe_events table
    op.create_table(
        "unsubscribe_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("subscriber_id", sa.UUID(), nullable=False),
        sa.Column("newsletter_id", sa.UUID(), nullable=True),
        sa.Column("source", sa.String(50), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["subscriber_id"],
            ["subscribers.id"],
            name=op.f("fk_unsubscribe_events_subscriber_id_subscribers"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["newsletter_id"],
            ["newsletters.id"],
            name=op.f("fk_unsubscribe_events_newsletter_id_newsletters"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_unsubscribe_events")),
    )
    op.create_index(
        op.f("ix_unsubscribe_events_subscriber_id"),
        "unsubscribe_events",
        ["subscriber_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_unsubscribe_events_newsletter_id"),
        "unsubscribe_events",
        ["newsletter_id"],
        unique=False,
    )

    # Seed the default template
    templates = sa.table(
        "newsletter_templates",
        sa.column("id", sa.UUID()),
        sa.column("slug", sa.String()),
        sa.column("name", sa.String()),
        sa.column("html_body", sa.Text()),
    )
    op.bulk_insert(
        templates,
        [
            {
                "id": uuid.uuid4(),
                "slug": "default",
                "name": "Default",
                "html_body": DEFAULT_TEMPLATE_HTML,
            }
        ],
    )


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table("unsubscribe_events")
    op.drop_table("email_events")
    op.drop_table("newsletter_links")
    op.drop_table("newsletter_sends")
    op.drop_table("newsletters")
    op.drop_table("newsletter_templates")
    op.drop_table("verification_tokens")
    op.drop_table("subscribers")

    # Drop enum types
    op.execute("DROP TYPE IF EXISTS email_event_type")
    op.execute("DROP TYPE IF EXISTS send_status")
    op.execute("DROP TYPE IF EXISTS newsletter_status")
