"""
Cursor pagination for Klaviyo list endpoints.

Klaviyo list responses carry the next page as a full URL in
`links.next`; the opaque cursor is its `page[cursor]` query parameter.
"""
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from core.exceptions import KlaviyoDataError
from core.models import Page
from core.observability import get_logger

logger = get_logger(__name__)

CURSOR_PARAM = "page[cursor]"

FetchPage = Callable[[Dict[str, Any], Optional[str]], Awaitable[Page]]


def extract_cursor(next_link: Optional[str]) -> Optional[str]:
    """
    Pull the `page[cursor]` value out of a `links.next` URL.

    Returns None when there is no next link or it carries no cursor.
    """
    if not next_link:
        return None
    query = parse_qs(urlparse(next_link).query)
    values = query.get(CURSOR_PARAM)
    if not values or not values[0]:
        return None
    return values[0]


def parse_page(response: Any) -> Page:
    """
    Validate a list response and convert it into a Page.

    Raises:
        KlaviyoDataError: If the response is not a JSON:API list document
    """
    if not isinstance(response, dict):
        raise KlaviyoDataError(
            "Invalid response type",
            expected="dict",
            got=type(response).__name__
        )

    items = response.get("data")
    if items is None:
        raise KlaviyoDataError(
            "Response missing 'data' field",
            expected="list",
            got="None"
        )
    if not isinstance(items, list):
        raise KlaviyoDataError(
            "Response 'data' field is not a list",
            expected="list",
            got=type(items).__name__
        )

    included = response.get("included") or []
    links = response.get("links") or {}
    return Page(
        items=items,
        next_cursor=extract_cursor(links.get("next")),
        included=list(included),
    )


class CursorPaginator:
    """
    Drains a cursor-paginated endpoint.

    Pages are requested strictly in order because page N+1 needs page
    N's cursor. No artificial delay is applied; list and event endpoints
    have a high rate limit.

    Usage:
        paginator = CursorPaginator(
            lambda params, cursor: client.fetch_page("events", params, cursor)
        )
        page = await paginator.fetch_all({"filter": "..."})
    """

    def __init__(self, fetch_page: FetchPage, max_pages: Optional[int] = None):
        """
        Args:
            fetch_page: Coroutine function (params, cursor) -> Page
            max_pages: Safety cap on pages per drain (None = unlimited)
        """
        self.fetch_page = fetch_page
        self.max_pages = max_pages

    async def pages(self, params: Dict[str, Any]) -> AsyncIterator[Page]:
        """
        Yield pages in order until a page has no next cursor.

        Raises:
            KlaviyoDataError: If the upstream hands back a cursor it already gave
        """
        params = dict(params)  # Don't modify original
        cursor: Optional[str] = None
        seen = set()
        fetched = 0

        while True:
            page = await self.fetch_page(params, cursor)
            fetched += 1
            yield page

            cursor = page.next_cursor
            if not cursor:
                break
            if cursor in seen:
                raise KlaviyoDataError(
                    "Pagination cursor repeated",
                    details=cursor,
                )
            seen.add(cursor)

            if self.max_pages is not None and fetched >= self.max_pages:
                logger.warning(
                    f"Stopped pagination after {fetched} pages",
                    extra={"max_pages": self.max_pages},
                )
                break

    async def fetch_all(self, params: Dict[str, Any]) -> Page:
        """
        Fetch every page and concatenate them in page order.

        Items are not de-duplicated. The returned Page has no cursor.
        """
        items: List[Dict[str, Any]] = []
        included: List[Dict[str, Any]] = []
        async for page in self.pages(params):
            items.extend(page.items)
            included.extend(page.included)
        return Page(items=items, next_cursor=None, included=included)
