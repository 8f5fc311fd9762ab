"""Tests for the newsletter content transform pipeline."""

import re
from urllib.parse import parse_qs, urlparse

import pytest

from bulletin.core.security import compute_openhash
from bulletin.services.content_service import (
    IMAGE_STYLE,
    TemplateRenderError,
    absolutize_image_srcs,
    build_click_url,
    build_list_unsubscribe_headers,
    build_tracking_pixel,
    build_unsubscribe_urls,
    extract_link_texts,
    personalize_email,
    render_markdown,
    render_preview,
    render_public_view,
    replace_recipient_name,
    rewrite_links_for_tracking,
    sanitize_html,
    shorten_links,
    style_images_for_email,
)
from tests.conftest import TEST_TEMPLATE_HTML, FakeShortener

BASE_URL = "https://news.example.com"
SECRET = "f" * 64

_HREF_RE = re.compile(r'href="([^"]+)"')


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


# ---------------------------------------------------------------------------
# Shared phase
# ---------------------------------------------------------------------------


class TestRenderMarkdown:
    def test_heading_and_paragraph(self) -> None:
        result = render_markdown("# Hello\n\nWorld", BASE_URL)
        assert "<h1>Hello</h1>" in result
        assert "<p>World</p>" in result

    def test_tables(self) -> None:
        result = render_markdown("| a | b |\n|---|---|\n| 1 | 2 |", BASE_URL)
        assert "<table>" in result
        assert "<td>1</td>" in result

    def test_strikethrough(self) -> None:
        assert "<del>gone</del>" in render_markdown("~~gone~~", BASE_URL)

    def test_bare_urls_become_links(self) -> None:
        result = render_markdown("See https://example.org/page for more", BASE_URL)
        assert 'href="https://example.org/page"' in result

    def test_images_are_styled_and_absolutized(self) -> None:
        result = render_markdown("![logo](/uploads/logo.png)", BASE_URL)
        assert f'src="{BASE_URL}/uploads/logo.png"' in result
        assert IMAGE_STYLE in result


class TestImageHelpers:
    def test_absolutize_root_relative(self) -> None:
        result = absolutize_image_srcs('<img src="/a.png">', BASE_URL + "/")
        assert result == f'<img src="{BASE_URL}/a.png">'

    def test_absolutize_leaves_absolute_and_protocol_relative(self) -> None:
        content = '<img src="https://cdn.example/a.png"><img src="//cdn.example/b.png">'
        assert absolutize_image_srcs(content, BASE_URL) == content

    def test_style_every_img(self) -> None:
        result = style_images_for_email('<img src="a"><IMG src="b">')
        assert result.count(IMAGE_STYLE) == 2


class TestSanitizeHtml:
    def test_script_removed_paragraphs_kept(self) -> None:
        result = sanitize_html("<p>Hello</p><script>alert(1)</script><p>World</p>")
        assert "<script" not in result
        assert "alert" not in result
        assert "<p>Hello</p>" in result
        assert "<p>World</p>" in result

    def test_style_block_removed(self) -> None:
        result = sanitize_html("<style>body{color:red}</style><p>x</p>")
        assert "color:red" not in result
        assert "<p>x</p>" in result

    def test_event_handlers_stripped(self) -> None:
        result = sanitize_html('<p onclick="steal()">x</p>')
        assert "onclick" not in result
        assert "steal" not in result

    def test_javascript_urls_stripped(self) -> None:
        result = sanitize_html('<a href="javascript:alert(1)">x</a>')
        assert "javascript:" not in result

    def test_iframe_stripped(self) -> None:
        result = sanitize_html('<iframe src="https://evil.example"></iframe><p>ok</p>')
        assert "<iframe" not in result
        assert "<p>ok</p>" in result

    def test_formatting_and_links_kept(self) -> None:
        content = (
            '<p><strong>b</strong> <em>i</em> <a href="https://example.org">l</a></p>'
            '<table><tr><td colspan="2">c</td></tr></table>'
        )
        result = sanitize_html(content)
        assert "<strong>b</strong>" in result
        assert 'href="https://example.org"' in result
        assert 'colspan="2"' in result

    def test_image_style_survives(self) -> None:
        result = sanitize_html(style_images_for_email('<img src="https://example.org/a.png">'))
        assert "max-width" in result
        assert "display" in result


class TestShortenLinks:
    async def test_each_distinct_url_shortened_once(self) -> None:
        shortener = FakeShortener()
        content = (
            '<a href="https://a.example/x">A</a>'
            '<a href="https://a.example/x">again</a>'
            '<a href="https://b.example/">B</a>'
        )
        result, pairs = await shorten_links(content, shortener)

        assert shortener.calls == ["https://a.example/x", "https://b.example/"]
        assert pairs == [
            ("https://a.example/x", "https://s.example/1"),
            ("https://b.example/", "https://s.example/2"),
        ]
        assert result.count('href="https://s.example/1"') == 2
        assert 'href="https://s.example/2"' in result
        assert "a.example" not in result

    async def test_skips_non_http_links(self) -> None:
        shortener = FakeShortener()
        content = (
            '<a href="mailto:team@example.org">m</a>'
            '<a href="tel:+123">t</a>'
            '<a href="#top">top</a>'
            '<a href="{{ unsubscribe_url }}">u</a>'
            '<a href="ftp://files.example">f</a>'
        )
        result, pairs = await shorten_links(content, shortener)
        assert shortener.calls == []
        assert pairs == []
        assert result == content

    async def test_failed_shortening_keeps_original(self) -> None:
        shortener = FakeShortener()
        shortener.failing.add("https://a.example/")
        content = '<a href="https://a.example/">A</a><a href="https://b.example/">B</a>'

        result, pairs = await shorten_links(content, shortener)

        assert 'href="https://a.example/"' in result
        assert pairs == [("https://b.example/", "https://s.example/2")]

    async def test_known_mappings_are_reused(self) -> None:
        shortener = FakeShortener()
        content = '<a href="https://a.example/">A</a><a href="https://b.example/">B</a>'
        known = {"https://a.example/": "https://s.example/cached"}

        result, pairs = await shorten_links(content, shortener, known)

        assert shortener.calls == ["https://b.example/"]
        assert 'href="https://s.example/cached"' in result
        assert ("https://a.example/", "https://s.example/cached") in pairs

    async def test_entity_encoded_hrefs_are_unescaped(self) -> None:
        shortener = FakeShortener()
        content = '<a href="https://a.example/?x=1&amp;y=2">A</a>'
        result, _ = await shorten_links(content, shortener)
        assert shortener.calls == ["https://a.example/?x=1&y=2"]
        assert 'href="https://s.example/1"' in result


# ---------------------------------------------------------------------------
# Per-recipient phase
# ---------------------------------------------------------------------------


class TestTrackingRewrite:
    def test_links_point_at_click_redirect_with_valid_hash(self) -> None:
        content = '<p><a href="https://example.org/post">post</a></p>'
        result = rewrite_links_for_tracking(content, BASE_URL, "abcd1234", "issue-1", SECRET)

        href = _HREF_RE.search(result).group(1)  # type: ignore[union-attr]
        assert href.startswith(f"{BASE_URL}/r/c?")
        params = _query(href)
        assert params["ucode"] == "abcd1234"
        assert params["topic"] == "issue-1"
        assert params["url"] == "https://example.org/post"
        assert params["hash"] == compute_openhash(
            SECRET, "abcd1234", "issue-1", "https://example.org/post"
        )

    def test_non_http_links_untouched(self) -> None:
        content = '<a href="mailto:a@example.org">m</a><a href="#x">x</a>'
        assert rewrite_links_for_tracking(content, BASE_URL, "u", "t", SECRET) == content

    def test_two_subscribers_get_different_hashes_for_same_link(self) -> None:
        content = '<a href="https://example.org/post">post</a>'
        first = rewrite_links_for_tracking(content, BASE_URL, "u1", "issue-1", "1" * 64)
        second = rewrite_links_for_tracking(content, BASE_URL, "u2", "issue-1", "2" * 64)

        hash1 = _query(_HREF_RE.search(first).group(1))["hash"]  # type: ignore[union-attr]
        hash2 = _query(_HREF_RE.search(second).group(1))["hash"]  # type: ignore[union-attr]
        assert hash1 != hash2

    def test_tracking_pixel_carries_open_hash(self) -> None:
        openhash = compute_openhash(SECRET, "u", "t")
        pixel = build_tracking_pixel(BASE_URL, "u", "t", openhash)
        src = re.search(r'src="([^"]+)"', pixel).group(1)  # type: ignore[union-attr]
        assert src.startswith(f"{BASE_URL}/r/o?")
        assert _query(src) == {"ucode": "u", "topic": "t", "hash": openhash}
        assert 'width="1"' in pixel

    def test_spaces_are_percent_encoded(self) -> None:
        url = build_click_url(BASE_URL, "u", "t", "h", "https://example.org/a b")

        assert url.endswith("url=https%3A%2F%2Fexample.org%2Fa%20b")
        assert "+" not in url
        assert _query(url)["url"] == "https://example.org/a b"


class TestRecipientName:
    def test_placeholder_replaced(self) -> None:
        assert replace_recipient_name("Hi %recipient_name%!", "Ada") == "Hi Ada!"

    def test_name_is_escaped(self) -> None:
        result = replace_recipient_name("Hi %recipient_name%", "<b>Ada</b>")
        assert "<b>" not in result
        assert "&lt;b&gt;Ada&lt;/b&gt;" in result


class TestPersonalizeEmail:
    def test_fills_every_slot(self) -> None:
        result = personalize_email(
            TEST_TEMPLATE_HTML,
            "<p>Body</p>",
            "Issue 1",
            '<img src="pixel">',
            "https://news.example.com/manage/x",
            BASE_URL,
            f"{BASE_URL}/newsletters/issue-1",
        )
        assert "<title>Issue 1</title>" in result
        assert "<main><p>Body</p></main>" in result
        assert 'href="https://news.example.com/manage/x"' in result
        assert f'href="{BASE_URL}/newsletters/issue-1"' in result
        assert '<img src="pixel">' in result

    def test_unknown_slot_raises(self) -> None:
        with pytest.raises(TemplateRenderError):
            personalize_email("{{ nope }}", "", "", "", "#", BASE_URL, "")

    def test_syntax_error_raises(self) -> None:
        with pytest.raises(TemplateRenderError):
            personalize_email("{% if %}", "", "", "", "#", BASE_URL, "")

    def test_template_cannot_reach_python_internals(self) -> None:
        with pytest.raises(TemplateRenderError):
            personalize_email("{{ title.__class__ }}", "", "t", "", "#", BASE_URL, "")

    def test_runtime_error_in_expression_raises(self) -> None:
        # Renders with empty values, fails once the title is set
        template = "{{ content }}{% if title %}{{ title + 1 }}{% endif %}"
        personalize_email(template, "", "", "", "#", BASE_URL, "")

        with pytest.raises(TemplateRenderError, match="evaluation"):
            personalize_email(template, "", "Monthly", "", "#", BASE_URL, "")


class TestUnsubscribeUrls:
    def test_manage_and_one_click_urls(self) -> None:
        manage_url, one_click_url = build_unsubscribe_urls(BASE_URL, "abc", "issue-1")
        assert manage_url == f"{BASE_URL}/manage/abc?from=issue-1"
        assert one_click_url == f"{BASE_URL}/unsubscribe/abc?from=issue-1"

    def test_list_unsubscribe_headers(self) -> None:
        headers = build_list_unsubscribe_headers("https://one", "https://manage")
        assert headers == {
            "List-Unsubscribe": "<https://one>, <https://manage>",
            "List-Unsubscribe-Post": "List-Unsubscribe=One-Click",
        }


# ---------------------------------------------------------------------------
# Untracked renderings
# ---------------------------------------------------------------------------


class TestUntrackedRenderings:
    def test_public_view_has_no_tracking(self) -> None:
        result = render_public_view(
            "Hi %recipient_name%, see [post](https://example.org/post)",
            "Issue 1",
            TEST_TEMPLATE_HTML,
            BASE_URL,
            "issue-1",
        )
        assert "Hi Subscriber" in result
        assert "/r/c?" not in result
        assert "/r/o?" not in result
        assert 'href="#"' in result
        assert f'href="{BASE_URL}/newsletters/issue-1"' in result

    def test_public_view_is_sanitized(self) -> None:
        result = render_public_view(
            "<script>alert(1)</script>\n\nok", "t", TEST_TEMPLATE_HTML, BASE_URL, "s"
        )
        assert "alert" not in result

    def test_preview_uses_sample_recipient(self) -> None:
        result = render_preview(
            "Hi %recipient_name%", "Issue 1", TEST_TEMPLATE_HTML, BASE_URL, "issue-1"
        )
        assert "Hi Sample Subscriber" in result
        assert "<!-- tracking pixel -->" in result
        assert "/r/o?" not in result


class TestExtractLinkTexts:
    def test_first_non_empty_text_wins(self) -> None:
        content = (
            '<a href="https://a.example/"><img src="x"></a>'
            '<a href="https://a.example/">First <b>text</b></a>'
            '<a href="https://a.example/">Second</a>'
            '<a href="https://b.example/?x=1&amp;y=2">B &amp; co</a>'
        )
        assert extract_link_texts(content) == {
            "https://a.example/": "First text",
            "https://b.example/?x=1&y=2": "B & co",
        }
