"""Content transform pipeline for newsletters.

The pipeline has two phases. The campaign-shared phase runs once per send:
markdown rendering, image styling and absolutization, sanitization and link
shortening. The per-recipient phase runs once per subscriber: click-tracking
rewrite, name substitution, open pixel, template merge and delivery headers.
Order matters within the per-recipient phase.
"""

import html
import logging
import re
from functools import lru_cache
from urllib.parse import quote, urlencode

import bleach
import jinja2
import markdown
from bleach.css_sanitizer import CSSSanitizer
from jinja2.sandbox import SandboxedEnvironment

from bulletin.core.security import compute_openhash
from bulletin.services.shorturl_service import ShortUrlError, ShortUrlService

logger = logging.getLogger(__name__)

RECIPIENT_NAME_PLACEHOLDER = "%recipient_name%"
PUBLIC_RECIPIENT_NAME = "Subscriber"
IMAGE_STYLE = "max-width:100%;height:auto;display:block;"

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.DOTALL | re.IGNORECASE)
_ROOT_RELATIVE_SRC_RE = re.compile(r'src="(/(?!/)[^"]*)"')
_IMG_TAG_RE = re.compile(r"<img\b", re.IGNORECASE)
_ANCHOR_HREF_RE = re.compile(r'<a\s[^>]*?href\s*=\s*"([^"]+)"', re.IGNORECASE)
_TRACKABLE_HREF_RE = re.compile(r'href="(https?://[^"]+)"')
_ANCHOR_TEXT_RE = re.compile(r'<a\s[^>]*href="(https?://[^"]+)"[^>]*>(.*?)</a>', re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")

_MARKDOWN_EXTENSIONS = [
    "tables",
    "pymdownx.tilde",
    "pymdownx.magiclink",
]

# Email-safe HTML allow-list
ALLOWED_TAGS = [
    "p", "br", "hr", "div", "span", "center",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "strong", "em", "b", "i", "u", "s", "del", "sub", "sup",
    "ul", "ol", "li", "dl", "dt", "dd",
    "a", "img", "figure", "figcaption",
    "table", "thead", "tbody", "tfoot", "tr", "td", "th", "caption",
    "blockquote", "pre", "code",
]  # fmt: skip

ALLOWED_ATTRIBUTES = {
    "*": ["class", "style", "title", "align"],
    "a": ["href", "title", "rel", "target"],
    "img": ["src", "alt", "width", "height", "border"],
    "table": ["border", "cellpadding", "cellspacing", "width", "bgcolor"],
    "td": ["colspan", "rowspan", "width", "height", "valign", "bgcolor"],
    "th": ["colspan", "rowspan", "width", "height", "valign", "bgcolor"],
    "tr": ["valign", "bgcolor"],
}

ALLOWED_PROTOCOLS = ["http", "https", "mailto", "tel"]

_css_sanitizer = CSSSanitizer(
    allowed_css_properties=[
        "color", "background-color",
        "font-family", "font-size", "font-weight", "font-style",
        "text-align", "text-decoration",
        "margin", "padding", "border",
        "width", "height", "max-width",
        "display", "line-height", "vertical-align",
    ],
    allowed_svg_properties=[],
)  # fmt: skip

_cleaner = bleach.Cleaner(
    tags=ALLOWED_TAGS,
    attributes=ALLOWED_ATTRIBUTES,
    protocols=ALLOWED_PROTOCOLS,
    css_sanitizer=_css_sanitizer,
    strip=True,
    strip_comments=True,
)

# Admin-authored templates; content is already sanitized so autoescape stays off
_template_env = SandboxedEnvironment(autoescape=False, undefined=jinja2.StrictUndefined)


class TemplateRenderError(Exception):
    """Raised when a newsletter template cannot be merged."""


# ---------------------------------------------------------------------------
# Shared phase
# ---------------------------------------------------------------------------


def render_markdown(md: str, base_url: str) -> str:
    """Render markdown to email-ready HTML.

    Raw HTML passes through here; callers must run ``sanitize_html`` before
    the output reaches a reader.
    """
    rendered = markdown.markdown(md, extensions=_MARKDOWN_EXTENSIONS)
    rendered = style_images_for_email(rendered)
    return absolutize_image_srcs(rendered, base_url)


def absolutize_image_srcs(content: str, base_url: str) -> str:
    """Rewrite root-relative ``src="/..."`` attributes against ``base_url``.

    Absolute and protocol-relative values are left untouched.
    """
    base = base_url.rstrip("/")
    return _ROOT_RELATIVE_SRC_RE.sub(lambda m: f'src="{base}{m.group(1)}"', content)


def style_images_for_email(content: str) -> str:
    """Inject inline sizing styles onto every ``<img>`` tag."""
    return _IMG_TAG_RE.sub(f'<img style="{IMAGE_STYLE}"', content)


def sanitize_html(content: str) -> str:
    """Strip active content while keeping structural and formatting markup."""
    content = _SCRIPT_STYLE_RE.sub("", content)
    return _cleaner.clean(content)


def _is_shortenable(href: str) -> bool:
    if href.startswith(("mailto:", "tel:", "#", "{{")):
        return False
    return href.startswith(("http://", "https://"))


async def shorten_links(
    content: str,
    shortener: ShortUrlService,
    known: dict[str, str] | None = None,
) -> tuple[str, list[tuple[str, str]]]:
    """Shorten every distinct absolute anchor URL once.

    URLs already present in ``known`` are reused without calling the
    shortener. A failed shortening keeps the original URL and is left out of
    the returned mapping.

    Returns:
        Tuple of (rewritten_html, [(original_url, short_url), ...]) in
        document order.
    """
    link_map: dict[str, str] = {}
    failed: set[str] = set()

    for match in _ANCHOR_HREF_RE.finditer(content):
        url = html.unescape(match.group(1))
        if not _is_shortenable(url) or url in link_map or url in failed:
            continue
        if known and url in known:
            link_map[url] = known[url]
            continue
        try:
            link_map[url] = await shortener.shorten(url)
        except ShortUrlError as e:
            logger.warning("Failed to shorten %s: %s", url, e)
            failed.add(url)

    if not link_map:
        return content, []

    def _replace(match: re.Match[str]) -> str:
        short = link_map.get(html.unescape(match.group(1)))
        if short is None:
            return match.group(0)
        start, end = match.span(1)
        offset = match.start(0)
        whole = match.group(0)
        return whole[: start - offset] + html.escape(short) + whole[end - offset :]

    return _ANCHOR_HREF_RE.sub(_replace, content), list(link_map.items())


# ---------------------------------------------------------------------------
# Per-recipient phase
# ---------------------------------------------------------------------------


def build_click_url(base_url: str, ucode: str, topic: str, openhash: str, url: str) -> str:
    query = urlencode(
        {"ucode": ucode, "topic": topic, "hash": openhash, "url": url}, quote_via=quote
    )
    return f"{base_url}/r/c?{query}"


def rewrite_links_for_tracking(
    content: str,
    base_url: str,
    ucode: str,
    topic: str,
    secret_code: str,
) -> str:
    """Wrap every ``http(s)`` href in a per-recipient click redirect."""

    def _replace(match: re.Match[str]) -> str:
        url = html.unescape(match.group(1))
        openhash = compute_openhash(secret_code, ucode, topic, url)
        return f'href="{build_click_url(base_url, ucode, topic, openhash, url)}"'

    return _TRACKABLE_HREF_RE.sub(_replace, content)


def replace_recipient_name(content: str, name: str) -> str:
    """Substitute the name placeholder; the name is HTML-escaped."""
    return content.replace(RECIPIENT_NAME_PLACEHOLDER, html.escape(name))


def build_tracking_pixel(base_url: str, ucode: str, topic: str, openhash: str) -> str:
    """Build the 1x1 open-tracking image tag."""
    query = urlencode({"ucode": ucode, "topic": topic, "hash": openhash}, quote_via=quote)
    return (
        f'<img src="{base_url}/r/o?{query}" width="1" height="1" alt="" '
        'style="border:0;width:1px;height:1px;" />'
    )


@lru_cache(maxsize=32)
def _compile_template(template_html: str) -> jinja2.Template:
    return _template_env.from_string(template_html)


def personalize_email(
    template_html: str,
    content_html: str,
    title: str,
    tracking_pixel: str,
    unsubscribe_url: str,
    base_url: str,
    web_url: str,
) -> str:
    """Merge content into a newsletter template.

    Raises:
        TemplateRenderError: If the template is malformed or references an
            unknown slot.
    """
    try:
        template = _compile_template(template_html)
        return template.render(
            content=content_html,
            title=title,
            tracking_pixel=tracking_pixel,
            unsubscribe_url=unsubscribe_url,
            base_url=base_url,
            web_url=web_url,
        )
    except jinja2.TemplateError as e:
        raise TemplateRenderError(f"Template render error: {e}") from e
    except Exception as e:
        # Errors raised while evaluating template expressions, such as TypeError
        raise TemplateRenderError(f"Template evaluation error: {e}") from e


def build_web_url(base_url: str, slug: str) -> str:
    return f"{base_url}/newsletters/{slug}"


def build_unsubscribe_urls(base_url: str, admin_link: str, slug: str) -> tuple[str, str]:
    """Return (manage_url, one_click_url) for a subscriber and campaign."""
    manage_url = f"{base_url}/manage/{admin_link}?from={slug}"
    one_click_url = f"{base_url}/unsubscribe/{admin_link}?from={slug}"
    return manage_url, one_click_url


def build_list_unsubscribe_headers(one_click_url: str, manage_url: str) -> dict[str, str]:
    """RFC 8058 one-click unsubscribe headers."""
    return {
        "List-Unsubscribe": f"<{one_click_url}>, <{manage_url}>",
        "List-Unsubscribe-Post": "List-Unsubscribe=One-Click",
    }


# ---------------------------------------------------------------------------
# Untracked renderings
# ---------------------------------------------------------------------------


def render_public_view(
    markdown_content: str,
    title: str,
    template_html: str,
    base_url: str,
    slug: str,
) -> str:
    """Render the public archive page: generic name, no tracking."""
    content = render_markdown(markdown_content, base_url)
    content = sanitize_html(content)
    content = replace_recipient_name(content, PUBLIC_RECIPIENT_NAME)
    return personalize_email(
        template_html,
        content,
        title,
        tracking_pixel="",
        unsubscribe_url="#",
        base_url=base_url,
        web_url=build_web_url(base_url, slug),
    )


def render_preview(
    markdown_content: str,
    title: str,
    template_html: str,
    base_url: str,
    slug: str,
    sample_name: str = "Sample Subscriber",
) -> str:
    """Render an admin preview with a sample recipient and no tracking."""
    content = render_markdown(markdown_content, base_url)
    content = sanitize_html(content)
    content = replace_recipient_name(content, sample_name)
    return personalize_email(
        template_html,
        content,
        title,
        tracking_pixel="<!-- tracking pixel -->",
        unsubscribe_url="#",
        base_url=base_url,
        web_url=build_web_url(base_url, slug),
    )


def extract_link_texts(content: str) -> dict[str, str]:
    """Map each absolute anchor URL to its first non-empty anchor text."""
    texts: dict[str, str] = {}
    for match in _ANCHOR_TEXT_RE.finditer(content):
        url = html.unescape(match.group(1))
        text = html.unescape(_TAG_RE.sub("", match.group(2))).strip()
        if text and url not in texts:
            texts[url] = text
    return texts
