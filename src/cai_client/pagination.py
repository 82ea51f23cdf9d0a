from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

from loguru import logger

from .errors import CaiDecodingError
from .models import Page

T = TypeVar("T")

#: Fetches the page addressed by a continuation token (None for the first page).
PageFetcher = Callable[[str | None], Awaitable[Page[T]]]


async def iter_pages(
    fetch_page: PageFetcher[T],
    token: str | None = None,
) -> AsyncIterator[Page[T]]:
    """Yield pages until the service stops handing out continuation tokens.

    Raises `CaiDecodingError` when a token comes back that was already
    requested, since following it again could never terminate.
    """
    requested: set[str | None] = {token}
    while True:
        page = await fetch_page(token)
        yield page

        next_token = page.next_token or None
        if next_token is None:
            return
        if next_token in requested:
            raise CaiDecodingError(f"pagination did not advance: token {next_token!r} repeated")
        requested.add(next_token)
        logger.debug("pagination.next token={}", next_token)
        token = next_token


async def fetch_all(
    fetch_page: PageFetcher[T],
    token: str | None = None,
) -> list[T]:
    """Collect the items of every page in arrival order."""
    items: list[T] = []
    async for page in iter_pages(fetch_page, token):
        items.extend(page.items)
    return items
