"""Translate cache entries into HTTP responses."""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Optional

from fastapi import Response, status
from fastapi.responses import PlainTextResponse, RedirectResponse

from .cache import CacheEntry

ROBOTS_TXT = "User-agent: *\nDisallow: /\n"


def http_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def if_none_match_matches(header: Optional[str], revision: str) -> bool:
    """Return True when any tag in an If-None-Match header names ``revision``.

    ETags are emitted as the bare Dropbox revision, but quoted and weak forms
    sent back by clients are accepted too.
    """
    if not header or not revision:
        return False
    for candidate in header.split(","):
        tag = candidate.strip()
        if tag == "*":
            return True
        if tag.startswith("W/"):
            tag = tag[2:]
        if len(tag) >= 2 and tag[0] == tag[-1] == '"':
            tag = tag[1:-1]
        if tag == revision:
            return True
    return False


def entry_headers(entry: CacheEntry) -> dict[str, str]:
    headers = {"Content-Type": entry.content_type, "ETag": entry.revision}
    if entry.modified_at is not None:
        headers["Last-Modified"] = http_date(entry.modified_at)
    return headers


def build_response(entry: CacheEntry, if_none_match: Optional[str] = None) -> Response:
    if not entry.exists:
        return Response(status_code=status.HTTP_404_NOT_FOUND)
    headers = entry_headers(entry)
    if if_none_match_matches(if_none_match, entry.revision):
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)
    # Content-Type travels in headers so Starlette does not append a charset.
    return Response(content=entry.body, status_code=status.HTTP_200_OK, headers=headers)


def robots_response() -> PlainTextResponse:
    return PlainTextResponse(ROBOTS_TXT)


def root_redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)
