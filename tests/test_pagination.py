import asyncio

import pytest

from cai_client.errors import CaiDecodingError
from cai_client.models import Page
from cai_client.pagination import fetch_all, iter_pages


def test_fetch_all_stops_at_empty_token() -> None:
    pages = {
        "a": Page[int](items=[1, 2], next_token="b"),
        "b": Page[int](items=[3], next_token=""),
    }
    requested: list[str | None] = []

    async def fetch_page(token: str | None) -> Page[int]:
        requested.append(token)
        assert token is not None
        return pages[token]

    items = asyncio.run(fetch_all(fetch_page, "a"))

    assert items == [1, 2, 3]
    assert requested == ["a", "b"]


def test_iter_pages_starts_without_token() -> None:
    async def fetch_page(token: str | None) -> Page[str]:
        if token is None:
            return Page[str](items=["x"], next_token="n1")
        return Page[str](items=["y"], next_token=None)

    async def _run() -> list[list[str]]:
        return [page.items async for page in iter_pages(fetch_page)]

    assert asyncio.run(_run()) == [["x"], ["y"]]


def test_repeated_token_raises_instead_of_looping() -> None:
    async def fetch_page(token: str | None) -> Page[int]:
        return Page[int](items=[1], next_token="same")

    with pytest.raises(CaiDecodingError):
        asyncio.run(fetch_all(fetch_page))
