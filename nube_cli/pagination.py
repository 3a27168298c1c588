"""Link header parsing and page collection"""

from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import httpx
from loguru import logger

from .api_client import NubeClient
from .models import PageInfo

T = TypeVar("T")

_RELATIONS = ("next", "prev", "first", "last")


def parse_link_header(header: Optional[str]) -> PageInfo:
    """
    Parse an RFC 5988 Link header.

    Example: <https://api.tiendanube.com/v1/123/products?page=2>; rel="next"

    Unknown relations and malformed segments are ignored.
    """
    if not header:
        return PageInfo()

    found: Dict[str, str] = {}
    for part in header.split(","):
        part = part.strip()
        if not part:
            continue

        segments = part.split(";", 1)
        if len(segments) != 2:
            continue

        url = segments[0].strip()
        if url.startswith("<"):
            url = url[1:]
        if url.endswith(">"):
            url = url[:-1]

        rel = segments[1].strip()
        if rel.startswith("rel="):
            rel = rel[len("rel="):]
        rel = rel.strip('"')

        if rel in _RELATIONS and url:
            found[rel] = url

    return PageInfo(**found)


def split_page_url(url: str) -> Tuple[str, Dict[str, Any]]:
    """Split a page URL into (url without query, query params)"""
    parsed = httpx.URL(url)
    params: Dict[str, Any] = {}
    for key, value in parsed.params.multi_items():
        if key in params:
            existing = params[key]
            params[key] = existing + [value] if isinstance(existing, list) else [existing, value]
        else:
            params[key] = value
    return str(parsed.copy_with(query=None)), params


async def collect_all(
    client: NubeClient,
    path: str,
    params: Optional[Dict[str, Any]],
    decode: Callable[[httpx.Response], List[T]],
) -> List[T]:
    """
    Follow "next" links and gather every page's items in order.

    Args:
        client: API client
        path: First page path (store-relative or absolute)
        params: First page query parameters
        decode: Extracts the items of one page response

    Returns:
        Items of all pages, in page order
    """
    items: List[T] = []
    current_path = path
    current_params = params
    pages = 0

    while True:
        response = await client.get(current_path, current_params)
        pages += 1

        # Read the link header before decode consumes the response
        page_info = parse_link_header(response.headers.get("Link"))

        page_items = decode(response)
        items.extend(page_items)
        logger.debug(f"Page {pages}: {len(page_items)} items ({len(items)} total)")

        if not page_info.has_next:
            break

        current_path, current_params = split_page_url(page_info.next)

    return items
