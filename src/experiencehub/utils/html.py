"""Sanitisation of rich-text markup before it is rendered again."""

from __future__ import annotations

import nh3

ALLOWED_TAGS = {
    "a",
    "blockquote",
    "br",
    "code",
    "em",
    "h1",
    "h2",
    "h3",
    "img",
    "li",
    "ol",
    "p",
    "pre",
    "s",
    "span",
    "strong",
    "u",
    "ul",
}

ALLOWED_ATTRIBUTES = {
    "*": {"class"},
    "a": {"href", "target"},
    "img": {"src", "alt"},
}

URL_SCHEMES = {"http", "https", "mailto"}


def sanitize_markup(html: str | None) -> str:
    """Strip executable content while keeping the editor's structural markup.

    Script and style elements are removed together with their content, event
    handler attributes never survive, and links are limited to safe schemes.
    """
    if not html:
        return ""
    return nh3.clean(
        html,
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRIBUTES,
        url_schemes=URL_SCHEMES,
        clean_content_tags={"script", "style"},
    )
