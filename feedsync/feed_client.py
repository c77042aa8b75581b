"""
Remote Feed Client - fetch one page of articles from the news API.

Handles:
- HTTP fetching with a bounded timeout (one attempt per call, no retries)
- Mapping transport and API failures onto the FetchError taxonomy
- Strict payload parsing that fails closed on anything unexpected
- Article detail (full content) lookups
"""

import asyncio
import hashlib
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from email.utils import parsedate_to_datetime
from typing import Any, Mapping

import aiohttp
from bs4 import BeautifulSoup

from .database.category_repository import DEFAULT_CATEGORIES
from .database.models import Article
from .exceptions import (
    MalformedResponseError,
    NetworkError,
    RateLimitedError,
    UnauthorizedError,
)

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSIONS = {1}

# API-level error codes carried in an HTTP 200 body
AUTH_ERROR_CODES = {10001, 10002, 10003}  # key invalid / no permission / key expired
RATE_LIMIT_ERROR_CODES = {10012, 10013}  # request quota exceeded
DETAIL_NOT_FOUND_CODE = 223502

# Contexts served from another upstream type, stored under their own key
CATEGORY_ALIASES = {"top": "guonei"}

CATEGORY_NAMES = dict(DEFAULT_CATEGORIES)

# The API reports naive local times in China Standard Time
API_TIMEZONE = timezone(timedelta(hours=8))

DATE_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M")
IMAGE_FIELDS = ("thumbnail_pic_s", "thumbnail_pic", "pic_url")


@dataclass
class FeedPage:
    """One page of a context's feed, in server order."""
    context: str
    articles: list[Article]
    next_cursor: str | None
    end_of_feed: bool
    schema_version: int = 1


@dataclass
class ArticleDetail:
    """Full content for one article."""
    article_id: str
    content: str
    summary: str | None = None
    article: Article | None = None  # Basic fields, when the detail payload carries them


class FeedClient:
    """Fetches pages and article details from the remote news API."""

    def __init__(
        self,
        api_url: str,
        detail_url: str,
        api_key: str,
        timeout: float = 15,
        user_agent: str | None = None,
        source_timezone: tzinfo = API_TIMEZONE,
    ):
        self.api_url = api_url
        self.detail_url = detail_url
        self.api_key = api_key
        self.timeout = timeout
        self.source_timezone = source_timezone
        self.user_agent = user_agent or "feedsync/1.0"
        self.headers = {
            "User-Agent": self.user_agent,
            "Accept": "application/json",
        }

    async def fetch_page(self, context: str, cursor: str | None, page_size: int) -> FeedPage:
        """
        Fetch the page of `context` at `cursor` (None means the first page).

        Raises:
            NetworkError, RateLimitedError: transient failures
            MalformedResponseError, UnauthorizedError: permanent failures
        """
        page, params = self._page_params(context, cursor, page_size)
        payload = await self._get_json(self.api_url, params)
        feed_page = parse_feed_page(
            payload,
            context=context,
            page=page,
            page_size=page_size,
            now=datetime.now(timezone.utc),
            source_timezone=self.source_timezone,
        )
        logger.debug(
            f"Fetched {len(feed_page.articles)} articles for {context} "
            f"(cursor={cursor}, next={feed_page.next_cursor})"
        )
        return feed_page

    async def fetch_detail(self, article_id: str) -> ArticleDetail | None:
        """Fetch full content for an article. Returns None if the server has no detail for it."""
        params = {"key": self.api_key, "uniquekey": article_id}
        payload = await self._get_json(self.detail_url, params)
        return parse_article_detail(
            payload,
            article_id,
            now=datetime.now(timezone.utc),
            source_timezone=self.source_timezone,
        )

    def _page_params(self, context: str, cursor: str | None, page_size: int) -> tuple[int | None, dict[str, str]]:
        params = {
            "key": self.api_key,
            "type": CATEGORY_ALIASES.get(context, context),
            "page_size": str(page_size),
            "is_filter": "1",  # Only items that have detail content
        }
        if cursor is None:
            page = 1
        elif cursor.isdigit():
            page = int(cursor)
        else:
            # Server-issued opaque cursor
            params["cursor"] = cursor
            return None, params
        params["page"] = str(page)
        return page, params

    async def _get_json(self, url: str, params: Mapping[str, str]) -> Any:
        try:
            async with aiohttp.ClientSession(headers=self.headers) as session:
                async with session.get(
                    url,
                    params=dict(params),
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as resp:
                    raise_for_status(resp.status, resp.headers)
                    text = await resp.text()
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Request timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Request failed: {e}") from e

        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Response is not valid JSON: {e}") from e


def raise_for_status(status: int, headers: Mapping[str, str] | None = None):
    """Map an HTTP status onto the FetchError taxonomy."""
    if status < 400:
        return
    if status in (401, 403):
        raise UnauthorizedError(f"Server rejected credentials (HTTP {status})")
    if status == 429:
        retry_after = parse_retry_after((headers or {}).get("Retry-After"))
        raise RateLimitedError(f"Rate limited (HTTP {status})", retry_after=retry_after)
    if status == 408 or status >= 500:
        raise NetworkError(f"Server error (HTTP {status})")
    raise MalformedResponseError(f"Unexpected HTTP status {status}")


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header given as seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _raise_api_error(payload: dict):
    error_code = payload.get("error_code")
    reason = payload.get("reason") or "unknown error"
    if error_code in AUTH_ERROR_CODES:
        raise UnauthorizedError(f"API rejected key: {reason} (code {error_code})")
    if error_code in RATE_LIMIT_ERROR_CODES:
        raise RateLimitedError(f"API quota exceeded: {reason} (code {error_code})")
    raise MalformedResponseError(f"API error: {reason} (code {error_code})")


def _check_envelope(payload: Any) -> tuple[dict, int]:
    if not isinstance(payload, dict):
        raise MalformedResponseError("Response body is not a JSON object")

    schema_version = payload.get("schema_version", 1)
    if not isinstance(schema_version, int) or schema_version not in SUPPORTED_SCHEMA_VERSIONS:
        raise MalformedResponseError(f"Unsupported schema version: {schema_version!r}")

    error_code = payload.get("error_code")
    if not isinstance(error_code, int):
        raise MalformedResponseError("Response has no error_code")
    if error_code != 0:
        _raise_api_error(payload)

    result = payload.get("result")
    if not isinstance(result, dict):
        raise MalformedResponseError("Response has no result object")
    return result, schema_version


def parse_feed_page(
    payload: Any,
    context: str,
    page: int | None,
    page_size: int,
    now: datetime | None = None,
    source_timezone: tzinfo = API_TIMEZONE,
) -> FeedPage:
    """
    Parse a list payload into a FeedPage.

    The whole page is rejected if any part of it is structurally invalid, so a
    bad response never partially populates the store.
    """
    now = now or datetime.now(timezone.utc)
    result, schema_version = _check_envelope(payload)

    data = result.get("data")
    if data is None:
        raise MalformedResponseError("result.data is missing")
    if not isinstance(data, list):
        raise MalformedResponseError("result.data is not a list")

    articles = []
    for item in data:
        article = parse_item(item, context, now, source_timezone)
        if article is not None:
            articles.append(article)

    if "next_cursor" in result:
        next_cursor = result["next_cursor"]
        if next_cursor is not None and not isinstance(next_cursor, (str, int)):
            raise MalformedResponseError("next_cursor has an invalid type")
        next_cursor = str(next_cursor) if next_cursor not in (None, "") else None
    elif page is None:
        raise MalformedResponseError("Opaque cursor response carries no next_cursor")
    elif "has_more" in result:
        next_cursor = str(page + 1) if result["has_more"] else None
    else:
        # A short page is the last one
        next_cursor = str(page + 1) if len(data) >= page_size else None

    return FeedPage(
        context=context,
        articles=articles,
        next_cursor=next_cursor,
        end_of_feed=next_cursor is None,
        schema_version=schema_version,
    )


def parse_item(
    item: Any,
    context: str,
    now: datetime,
    source_timezone: tzinfo = API_TIMEZONE,
) -> Article | None:
    """Parse one list item. Returns None for items that should be skipped (no title)."""
    if not isinstance(item, dict):
        raise MalformedResponseError("Feed item is not a JSON object")

    title = _text(item, "title")
    if not title:
        logger.debug(f"Skipping untitled item in {context}")
        return None

    url = _text(item, "url")
    article_id = _text(item, "uniquekey") or derive_article_id(title, url)
    author = _text(item, "author_name")

    image_url = None
    for field in IMAGE_FIELDS:
        image_url = _text(item, field)
        if image_url:
            break
    if image_url and image_url.startswith("http://"):
        image_url = "https://" + image_url[len("http://"):]

    source = author or f"{CATEGORY_NAMES.get(context, context)}新闻"
    date = item.get("date")

    return Article(
        id=article_id,
        title=title,
        published_at=parse_published(date, now, source_timezone),
        published_estimated=date is None or (isinstance(date, str) and not date.strip()),
        category=_text(item, "category"),
        author=author,
        source=source,
        url=url,
        image_url=image_url,
        version=_text(item, "version"),
    )


def parse_article_detail(
    payload: Any,
    article_id: str,
    now: datetime | None = None,
    source_timezone: tzinfo = API_TIMEZONE,
) -> ArticleDetail | None:
    """Parse a detail payload. Returns None when the server has no detail for the article."""
    now = now or datetime.now(timezone.utc)
    if isinstance(payload, dict) and payload.get("error_code") == DETAIL_NOT_FOUND_CODE:
        return None

    result, _ = _check_envelope(payload)
    content = result.get("content")
    if not isinstance(content, str):
        raise MalformedResponseError("Detail response has no content")

    article = None
    detail = result.get("detail")
    if isinstance(detail, dict):
        detail = {"uniquekey": article_id, **detail}
        article = parse_item(detail, _text(detail, "category") or "", now, source_timezone)

    return ArticleDetail(
        article_id=article_id,
        content=content,
        summary=html_to_summary(content),
        article=article,
    )


def parse_published(value: Any, now: datetime, source_timezone: tzinfo = API_TIMEZONE) -> datetime:
    """Parse an item date. Missing dates use the fetch time; unparsable ones fail the page."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return now
    if not isinstance(value, str):
        raise MalformedResponseError(f"Invalid date value: {value!r}")

    value = value.strip()
    parsed = None
    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(value, fmt)
            break
        except ValueError:
            continue
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise MalformedResponseError(f"Invalid date value: {value!r}") from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=source_timezone)
    return parsed.astimezone(timezone.utc)


def derive_article_id(title: str, url: str | None) -> str:
    """Stable id for items the server sent without one."""
    digest = hashlib.sha1(f"{title}\n{url or ''}".encode("utf-8")).hexdigest()
    return f"local-{digest[:20]}"


def html_to_summary(html: str, max_length: int = 120) -> str | None:
    """Plain-text excerpt of an HTML body."""
    text = BeautifulSoup(html, "html.parser").get_text(separator=" ", strip=True)
    text = re.sub(r"\s+", " ", text).strip()
    if not text:
        return None
    if len(text) > max_length:
        text = text[:max_length].rstrip() + "…"
    return text


def _text(item: dict, field: str) -> str | None:
    value = item.get(field)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise MalformedResponseError(f"Field {field!r} has an invalid type")
    value = str(value).strip()
    return value or None
