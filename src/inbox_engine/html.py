"""HTML helpers for message bodies.

Bodies are sanitized once at ingestion and stored in full. Collapsing of quoted
history is a display-time transformation only.
"""

from __future__ import annotations

import re

from bs4 import BeautifulSoup, Comment

TRACKER_DOMAINS = (
    "vialoops.com",
    "mandrillapp.com",
    "sendgrid.net",
    "mailchimp.com",
    "hubspot.com",
    "sparkpostmail.com",
)

_DANGEROUS_TAGS = ("script", "iframe", "object", "embed", "frame", "frameset")

FORWARD_MARKER = "---------- Forwarded message ---------"
_FORWARD_RE = re.compile(r"-{2,}\s*Forwarded message\s*-{2,}", re.IGNORECASE)

_WS_RE = re.compile(r"\s+")


def _is_tracking_pixel(tag) -> bool:
    src = (tag.get("src") or "").lower()
    if any(domain in src for domain in TRACKER_DOMAINS):
        return True
    return str(tag.get("width", "")).strip() == "1" or str(tag.get("height", "")).strip() == "1"


def sanitize_body(html: str | None) -> str:
    """Strip active content and tracking pixels from an inbound HTML body."""

    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")

    for tag in soup.find_all(_DANGEROUS_TAGS):
        tag.decompose()

    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    for img in soup.find_all("img"):
        if _is_tracking_pixel(img):
            img.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith("on"):
                del tag.attrs[attr]
        href = tag.get("href")
        if isinstance(href, str) and href.strip().lower().startswith("javascript:"):
            del tag.attrs["href"]

    return str(soup).strip()


def make_snippet(html: str | None, length: int = 120) -> str:
    """Plain-text preview of a body: tags dropped, whitespace collapsed."""

    if not html:
        return ""
    text = BeautifulSoup(html, "html.parser").get_text(" ")
    text = _WS_RE.sub(" ", text).strip()
    return text[:length]


def _details(soup: BeautifulSoup, label: str) -> tuple:
    details = soup.new_tag("details", attrs={"class": "inbox-quoted"})
    summary = soup.new_tag("summary")
    summary.string = label
    details.append(summary)
    inner = soup.new_tag("div", attrs={"class": "inbox-quoted-body"})
    details.append(inner)
    return details, inner


def collapse_quoted(html: str | None) -> str:
    """Return display HTML where quoted history is folded away.

    Top-level blockquotes and everything from a "Forwarded message" marker
    onwards are moved into a closed `<details>` element, so only the newest
    user-authored text shows by default.
    """

    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")

    for quote in soup.find_all("blockquote"):
        if quote.find_parent("blockquote") is not None:
            continue
        details, inner = _details(soup, "Show previous message")
        quote.replace_with(details)
        inner.append(quote)

    marker = soup.find(string=_FORWARD_RE)
    if marker is not None and marker.find_parent("details") is None:
        anchor = marker.parent if marker.parent is not None and marker.parent.name != "[document]" else marker
        details, inner = _details(soup, "Show forwarded content")
        trailing = [anchor, *list(anchor.next_siblings)]
        anchor.insert_before(details)
        for node in trailing:
            inner.append(node.extract())

    return str(soup)
