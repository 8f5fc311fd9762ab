"""Pytest configuration and fixtures for the Bulletin test suite.

Provides:
- A fresh SQLite database per test (aiosqlite, tables created from metadata)
- Admin bearer tokens signed with the test secret
- Disabled rate limiting
- Test doubles for the email transport, link shortener and captcha
- Model factory fixtures for Subscriber, NewsletterTemplate and Newsletter
"""

from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from bulletin.core.config import settings
from bulletin.core.database import get_async_session
from bulletin.core.deps import (
    get_captcha,
    get_db,
    get_email_transport,
    get_newsletter_sender,
    get_shortener,
)
from bulletin.core.rate_limit import limiter
from bulletin.core.security import generate_secret_code, generate_ucode
from bulletin.main import app
from bulletin.models.base import Base
from bulletin.models.newsletter import Newsletter, NewsletterStatus
from bulletin.models.newsletter_template import NewsletterTemplate
from bulletin.models.subscriber import Subscriber
from bulletin.services.email_service import EmailDeliveryError
from bulletin.services.newsletter_service import NewsletterSender
from bulletin.services.shorturl_service import ShortUrlError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
ADMIN_EMAIL = "admin@example.com"
TEST_SECRET_KEY = "test-secret-key-with-enough-length-for-hs256"
TEST_BASE_URL = "https://news.example.com"

DEFAULT_MARKDOWN = "# Hello\n\nHi %recipient_name%, read [the post](https://example.org/post)."

TEST_TEMPLATE_HTML = (
    "<html><head><title>{{ title }}</title></head><body>"
    '<a href="{{ web_url }}">View online</a>'
    "<main>{{ content }}</main>"
    '<a href="{{ unsubscribe_url }}">Unsubscribe</a>'
    '<a href="{{ base_url }}">Home</a>'
    "{{ tracking_pixel }}</body></html>"
)

# ---------------------------------------------------------------------------
# Disable rate limiting globally for tests
# ---------------------------------------------------------------------------
limiter.enabled = False


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pin settings that tokens, URLs and background work depend on."""
    monkeypatch.setattr(settings, "secret_key", TEST_SECRET_KEY)
    monkeypatch.setattr(settings, "admin_emails", [ADMIN_EMAIL])
    monkeypatch.setattr(settings, "base_url", TEST_BASE_URL)
    monkeypatch.setattr(settings, "smtp_rate_limit_ms", 0)
    monkeypatch.setattr(settings, "scheduler_enabled", False)
    monkeypatch.setattr(settings, "default_template_slug", "default")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """A file-backed SQLite database so several sessions see the same data."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'bulletin.db'}",
        poolclass=NullPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Session for test setup and assertions."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeTransport:
    """Records every message; addresses in ``failures`` raise the given error."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.failures: dict[str, EmailDeliveryError] = {}
        self.on_send: Callable[[str], Any] | None = None

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        if self.on_send is not None:
            await self.on_send(to)
        if to in self.failures:
            raise self.failures[to]
        self.sent.append({"to": to, "subject": subject, "html": html_body, "headers": headers})

    @property
    def recipients(self) -> list[str]:
        return [message["to"] for message in self.sent]


class FakeShortener:
    """Deterministic shortener; URLs in ``failing`` raise ShortUrlError."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failing: set[str] = set()

    async def shorten(self, url: str) -> str:
        self.calls.append(url)
        if url in self.failing:
            raise ShortUrlError(f"cannot shorten {url}")
        return f"https://s.example/{len(self.calls)}"

    async def get_clicks(self, short_url: str) -> int:
        return 0


class FakeCaptcha:
    def __init__(self, passes: bool = True) -> None:
        self.passes = passes
        self.tokens: list[str] = []

    async def verify(self, token: str) -> bool:
        self.tokens.append(token)
        return self.passes


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def shortener() -> FakeShortener:
    return FakeShortener()


@pytest.fixture
def captcha() -> FakeCaptcha:
    return FakeCaptcha()


@pytest.fixture
def sender(
    session_factory: async_sessionmaker[AsyncSession],
    transport: FakeTransport,
) -> NewsletterSender:
    """Send orchestrator bound to the test database, without link shortening."""
    return NewsletterSender(
        session_factory=session_factory,
        email=transport,
        shortener=None,
        base_url=TEST_BASE_URL,
    )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


def make_admin_token(email: str = ADMIN_EMAIL, expires_in: timedelta | None = None) -> str:
    expires_at = datetime.now(UTC) + (expires_in or timedelta(hours=1))
    return jwt.encode({"sub": email, "exp": expires_at}, TEST_SECRET_KEY, algorithm="HS256")


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {make_admin_token()}"}


# ---------------------------------------------------------------------------
# Client (overrides DB and collaborators; auth is real)
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    transport: FakeTransport,
    captcha: FakeCaptcha,
    sender: NewsletterSender,
) -> AsyncGenerator[AsyncClient, None]:
    """Async test client wired to the per-test database and test doubles."""

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_async_session] = _override_session
    app.dependency_overrides[get_db] = _override_session
    app.dependency_overrides[get_email_transport] = lambda: transport
    app.dependency_overrides[get_shortener] = lambda: None
    app.dependency_overrides[get_captcha] = lambda: captcha
    app.dependency_overrides[get_newsletter_sender] = lambda: sender

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def plain_client() -> AsyncGenerator[AsyncClient, None]:
    """Minimal async test client with NO dependency overrides."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ---------------------------------------------------------------------------
# Model Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def subscriber_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates Subscriber instances (active and verified by default)."""
    counter = {"n": 0}

    async def _create(
        *,
        email: str | None = None,
        name: str = "Reader",
        status: bool = True,
        verified_email: bool = True,
        bounced_at: datetime | None = None,
        legacy_admin_link: str | None = None,
    ) -> Subscriber:
        counter["n"] += 1
        subscriber = Subscriber(
            email=email or f"reader{counter['n']}@example.com",
            name=name,
            status=status,
            verified_email=verified_email,
            secret_code=generate_secret_code(),
            ucode=generate_ucode(),
            bounced_at=bounced_at,
            legacy_admin_link=legacy_admin_link,
            # Strictly increasing so creation order is deterministic
            created_at=datetime(2026, 1, 1, tzinfo=UTC) + timedelta(seconds=counter["n"]),
        )
        db_session.add(subscriber)
        await db_session.commit()
        await db_session.refresh(subscriber)
        return subscriber

    return _create


@pytest.fixture
def template_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates NewsletterTemplate instances."""

    async def _create(
        *,
        slug: str = "default",
        name: str = "Default",
        html_body: str = TEST_TEMPLATE_HTML,
    ) -> NewsletterTemplate:
        template = NewsletterTemplate(slug=slug, name=name, html_body=html_body)
        db_session.add(template)
        await db_session.commit()
        await db_session.refresh(template)
        return template

    return _create


@pytest_asyncio.fixture
async def default_template(template_factory: Callable[..., Any]) -> NewsletterTemplate:
    return await template_factory()


@pytest.fixture
def newsletter_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates Newsletter instances."""
    counter = {"n": 0}

    async def _create(
        *,
        title: str = "Monthly Update",
        slug: str | None = None,
        markdown_content: str = DEFAULT_MARKDOWN,
        status: NewsletterStatus = NewsletterStatus.DRAFT,
        template_id: Any = None,
        scheduled_at: datetime | None = None,
        sending_completed_at: datetime | None = None,
        rendered_html: str | None = None,
    ) -> Newsletter:
        counter["n"] += 1
        newsletter = Newsletter(
            title=title,
            slug=slug or f"monthly-update-{counter['n']}",
            markdown_content=markdown_content,
            status=status,
            template_id=template_id,
            scheduled_at=scheduled_at,
            sending_completed_at=sending_completed_at,
            rendered_html=rendered_html,
        )
        db_session.add(newsletter)
        await db_session.commit()
        await db_session.refresh(newsletter)
        return newsletter

    return _create
