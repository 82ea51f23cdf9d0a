from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator, Sequence
from typing import Any, TypeVar
from urllib.parse import quote

from loguru import logger
from pydantic import BaseModel, ValidationError

from .config import ClientConfig
from .engine import TurnExchangeEngine
from .errors import CaiConnectionError, CaiDecodingError, CaiValidationError
from .http import HttpRequester
from .models import (
    AuthSession,
    Chat,
    ChatHistory,
    ChatListResponse,
    ChatResponse,
    CopyChatResponse,
    CurrentUserResponse,
    HistoriesResponse,
    Page,
    Turn,
    TurnListResponse,
)
from .pagination import fetch_all
from .transport import Transport, WebSocketTransport

_M = TypeVar("_M", bound=BaseModel)


class ChatHandle:
    """Chat-scoped API wrapper bound to one chat, character and session."""

    def __init__(
        self,
        client: CaiClient,
        chat_id: str,
        character_id: str,
        session: AuthSession,
    ) -> None:
        self._client = client
        self._chat_id = chat_id
        self._character_id = character_id
        self._session = session

    @property
    def chat_id(self) -> str:
        """Chat id for this handle."""
        return self._chat_id

    @property
    def character_id(self) -> str:
        return self._character_id

    @property
    def session(self) -> AuthSession:
        return self._session

    async def send(self, text: str, *, timeout: float | None = None) -> Turn:
        """Send one message and return the final reply turn."""
        return await self._client.send_message(
            self._character_id,
            self._chat_id,
            text,
            session=self._session,
            timeout=timeout,
        )

    async def stream(self, text: str, *, timeout: float | None = None) -> AsyncIterator[Turn]:
        """Stream reply snapshots for one message."""
        stream = self._client.stream_message(
            self._character_id,
            self._chat_id,
            text,
            session=self._session,
            timeout=timeout,
        )
        async with contextlib.aclosing(stream):
            async for turn in stream:
                yield turn

    async def regenerate(self, turn_id: str, *, timeout: float | None = None) -> Turn:
        return await self._client.regenerate_candidate(
            self._character_id,
            self._chat_id,
            turn_id,
            session=self._session,
            timeout=timeout,
        )

    async def edit(
        self,
        turn_id: str,
        candidate_id: str,
        text: str,
        *,
        timeout: float | None = None,
    ) -> Turn:
        return await self._client.edit_turn_candidate(
            self._chat_id, turn_id, candidate_id, text, timeout=timeout
        )

    async def select(self, turn_id: str, candidate_id: str, *, timeout: float | None = None) -> None:
        """Make `candidate_id` the shown reply of `turn_id`."""
        await self._client.set_primary_candidate(
            self._chat_id, turn_id, candidate_id, timeout=timeout
        )

    async def delete(self, *turn_ids: str, timeout: float | None = None) -> None:
        await self._client.delete_turns(self._chat_id, turn_ids, timeout=timeout)

    async def pin(self, turn_id: str, *, timeout: float | None = None) -> Turn:
        return await self._client.pin_turn(self._chat_id, turn_id, timeout=timeout)

    async def unpin(self, turn_id: str, *, timeout: float | None = None) -> Turn:
        return await self._client.unpin_turn(self._chat_id, turn_id, timeout=timeout)

    async def messages(self) -> list[Turn]:
        """Fetch every turn of this chat, newest first as the service lists them."""
        return await self._client.fetch_all_messages(self._chat_id)

    async def archive(self) -> None:
        await self._client.archive_chat(self._chat_id)

    async def rename(self, name: str) -> None:
        await self._client.rename_chat(self._chat_id, name)


class CaiClient:
    """Client for the chat service.

    Turn-exchange operations share one lazily opened websocket and run one at
    a time; REST helpers run concurrently over HTTP.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport: Transport | None = None,
        requester: HttpRequester | None = None,
    ) -> None:
        """Create a client.

        Args:
            config: Client configuration; read from the environment when omitted.
            transport: Duplex transport; a `WebSocketTransport` for
                ``config.ws_url`` when omitted.
            requester: REST verb issuer; built from `config` when omitted.
        """
        self._config = config if config is not None else ClientConfig()
        self._transport = (
            transport
            if transport is not None
            else WebSocketTransport(
                self._config.ws_url,
                headers=self._config.ws_headers(),
                connect_timeout=self._config.connect_timeout,
            )
        )
        self._requester = requester if requester is not None else HttpRequester(self._config)
        self._engine = TurnExchangeEngine(
            self._transport,
            origin_id=self._config.origin_id,
            request_timeout=self._config.request_timeout,
            turn_timeout=self._config.turn_timeout,
            stale_frame_window=self._config.stale_frame_window,
        )
        self._closed = False

    @classmethod
    def from_token(cls, token: str, **settings: Any) -> CaiClient:
        """Create a client for `token`; other settings fall back to the environment."""
        return cls(ClientConfig(token=token, **settings))

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> CaiClient:
        """Support `async with CaiClient(...)` usage."""
        self._ensure_open()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """Close client on context-manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close the websocket and the HTTP client."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._transport.close()
        finally:
            await self._requester.close()
        logger.debug("client.closed")

    async def authenticate(self) -> AuthSession:
        """Fetch the current account and return it as a session value."""
        self._ensure_open()
        body = await self._requester.get(self._url(self._config.beta_url, "chat/user/"))
        session = _validate(CurrentUserResponse, body, "current user").user.to_session()
        logger.info("client.authenticated account_id={}", session.account_id)
        return session

    async def ping(self) -> bool:
        """Return True when the service answers its liveness endpoint."""
        self._ensure_open()
        status = await self._requester.probe(self._url(self._config.neo_url, "ping/"))
        return status == 200

    async def start_chat(
        self,
        character_id: str,
        *,
        session: AuthSession,
        greeting: bool = True,
        timeout: float | None = None,
    ) -> tuple[ChatHandle, Turn | None]:
        """Create a chat and return a handle for it with the greeting turn."""
        chat, turn = await self.create_chat(
            character_id, session=session, greeting=greeting, timeout=timeout
        )
        return self.chat(chat.chat_id, chat.character_id or character_id, session=session), turn

    def chat(self, chat_id: str, character_id: str, *, session: AuthSession) -> ChatHandle:
        """Return a handle for an existing chat."""
        return ChatHandle(self, chat_id, character_id, session)

    # Turn-exchange operations.

    async def send_message(
        self,
        character_id: str,
        chat_id: str,
        text: str,
        *,
        session: AuthSession,
        turn_id: str | None = None,
        candidate_id: str | None = None,
        num_candidates: int = 1,
        tts_enabled: bool = False,
        selected_language: str = "",
        timeout: float | None = None,
    ) -> Turn:
        """Send a user message and return the character's final reply turn."""
        self._ensure_open()
        return await self._engine.send_message(
            character_id,
            chat_id,
            text,
            session=session,
            turn_id=turn_id,
            candidate_id=candidate_id,
            num_candidates=num_candidates,
            tts_enabled=tts_enabled,
            selected_language=selected_language,
            timeout=timeout,
        )

    async def stream_message(
        self,
        character_id: str,
        chat_id: str,
        text: str,
        *,
        session: AuthSession,
        turn_id: str | None = None,
        candidate_id: str | None = None,
        num_candidates: int = 1,
        tts_enabled: bool = False,
        selected_language: str = "",
        timeout: float | None = None,
    ) -> AsyncIterator[Turn]:
        """Send a user message and yield reply snapshots until the final one."""
        self._ensure_open()
        stream = self._engine.stream_message(
            character_id,
            chat_id,
            text,
            session=session,
            turn_id=turn_id,
            candidate_id=candidate_id,
            num_candidates=num_candidates,
            tts_enabled=tts_enabled,
            selected_language=selected_language,
            timeout=timeout,
        )
        async with contextlib.aclosing(stream):
            async for turn in stream:
                yield turn

    async def create_chat(
        self,
        character_id: str,
        *,
        session: AuthSession,
        greeting: bool = True,
        chat_id: str | None = None,
        timeout: float | None = None,
    ) -> tuple[Chat, Turn | None]:
        self._ensure_open()
        return await self._engine.create_chat(
            character_id,
            session=session,
            greeting=greeting,
            chat_id=chat_id,
            timeout=timeout,
        )

    async def regenerate_candidate(
        self,
        character_id: str,
        chat_id: str,
        turn_id: str,
        *,
        session: AuthSession | None = None,
        tts_enabled: bool = False,
        selected_language: str = "",
        timeout: float | None = None,
    ) -> Turn:
        self._ensure_open()
        return await self._engine.regenerate_candidate(
            character_id,
            chat_id,
            turn_id,
            session=session,
            tts_enabled=tts_enabled,
            selected_language=selected_language,
            timeout=timeout,
        )

    async def edit_turn_candidate(
        self,
        chat_id: str,
        turn_id: str,
        candidate_id: str,
        text: str,
        *,
        timeout: float | None = None,
    ) -> Turn:
        self._ensure_open()
        return await self._engine.edit_turn_candidate(
            chat_id, turn_id, candidate_id, text, timeout=timeout
        )

    async def set_primary_candidate(
        self,
        chat_id: str,
        turn_id: str,
        candidate_id: str,
        *,
        timeout: float | None = None,
    ) -> None:
        self._ensure_open()
        await self._engine.set_primary_candidate(chat_id, turn_id, candidate_id, timeout=timeout)

    async def delete_turns(
        self,
        chat_id: str,
        turn_ids: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> None:
        self._ensure_open()
        await self._engine.delete_turns(chat_id, turn_ids, timeout=timeout)

    async def set_turn_pin(
        self,
        chat_id: str,
        turn_id: str,
        pinned: bool,
        *,
        timeout: float | None = None,
    ) -> Turn:
        self._ensure_open()
        return await self._engine.set_turn_pin(chat_id, turn_id, pinned, timeout=timeout)

    async def pin_turn(self, chat_id: str, turn_id: str, *, timeout: float | None = None) -> Turn:
        return await self.set_turn_pin(chat_id, turn_id, True, timeout=timeout)

    async def unpin_turn(self, chat_id: str, turn_id: str, *, timeout: float | None = None) -> Turn:
        return await self.set_turn_pin(chat_id, turn_id, False, timeout=timeout)

    # REST-only chat helpers.

    async def fetch_histories(self, character_id: str, amount: int = 50) -> list[ChatHistory]:
        """Fetch the legacy chat histories kept for a character."""
        self._ensure_open()
        _require_id("character_id", character_id)
        if amount < 1:
            raise CaiValidationError("amount must be at least 1")
        body = await self._requester.post(
            self._url(self._config.plus_url, "chat/character/histories_v2/"),
            json_body={"external_id": character_id, "number": amount},
        )
        return list(_validate(HistoriesResponse, body, "histories").histories)

    async def fetch_chats(self, character_id: str, num_preview_turns: int = 2) -> list[Chat]:
        """Fetch the caller's chats with a character, with preview turns."""
        self._ensure_open()
        _require_id("character_id", character_id)
        body = await self._requester.get(
            self._url(self._config.neo_url, "chats/"),
            params={"character_ids": character_id, "num_preview_turns": num_preview_turns},
        )
        return list(_validate(ChatListResponse, body, "chats").chats)

    async def fetch_recent_chat(self, character_id: str) -> Chat | None:
        """Return the most recent chat with a character, if there is one."""
        self._ensure_open()
        _require_id("character_id", character_id)
        body = await self._requester.get(
            self._url(self._config.neo_url, f"chats/recent/{_segment(character_id)}")
        )
        chats = _validate(ChatListResponse, body, "recent chats").chats
        return chats[0] if chats else None

    async def fetch_chat(self, chat_id: str) -> Chat:
        self._ensure_open()
        _require_id("chat_id", chat_id)
        body = await self._requester.get(
            self._url(self._config.neo_url, f"chat/{_segment(chat_id)}/")
        )
        return _validate(ChatResponse, body, "chat").chat

    async def fetch_messages(self, chat_id: str, next_token: str | None = None) -> Page[Turn]:
        """Fetch one page of turns for a chat."""
        self._ensure_open()
        _require_id("chat_id", chat_id)
        params = {"next_token": next_token} if next_token else None
        body = await self._requester.get(
            self._url(self._config.neo_url, f"turns/{_segment(chat_id)}/"),
            params=params,
        )
        response = _validate(TurnListResponse, body, "turns")
        return Page[Turn](items=list(response.turns), next_token=response.meta.next_token)

    async def fetch_all_messages(self, chat_id: str) -> list[Turn]:
        """Fetch every turn of a chat by following continuation tokens."""

        async def fetch_page(token: str | None) -> Page[Turn]:
            return await self.fetch_messages(chat_id, token)

        return await fetch_all(fetch_page)

    async def archive_chat(self, chat_id: str) -> None:
        self._ensure_open()
        _require_id("chat_id", chat_id)
        await self._requester.patch(
            self._url(self._config.neo_url, f"chat/{_segment(chat_id)}/archive"),
            json_body={},
        )

    async def unarchive_chat(self, chat_id: str) -> None:
        self._ensure_open()
        _require_id("chat_id", chat_id)
        await self._requester.patch(
            self._url(self._config.neo_url, f"chat/{_segment(chat_id)}/unarchive"),
            json_body={},
        )

    async def copy_chat(self, chat_id: str, end_turn_id: str) -> str:
        """Copy a chat up to and including `end_turn_id`; return the new chat id."""
        self._ensure_open()
        _require_id("chat_id", chat_id)
        _require_id("end_turn_id", end_turn_id)
        body = await self._requester.post(
            self._url(self._config.neo_url, f"chat/{_segment(chat_id)}/copy"),
            json_body={"end_turn_id": end_turn_id},
        )
        return _validate(CopyChatResponse, body, "copy chat").new_chat_id

    async def rename_chat(self, chat_id: str, name: str) -> None:
        self._ensure_open()
        _require_id("chat_id", chat_id)
        _require_id("name", name)
        await self._requester.patch(
            self._url(self._config.neo_url, f"chat/{_segment(chat_id)}/update_name"),
            json_body={"name": name},
        )

    async def rate_candidate(
        self,
        chat_id: str,
        turn_id: str,
        candidate_id: str,
        rating: int,
    ) -> None:
        """Attach a star rating (0 to 4) to a candidate."""
        self._ensure_open()
        _require_id("chat_id", chat_id)
        _require_id("turn_id", turn_id)
        _require_id("candidate_id", candidate_id)
        if isinstance(rating, bool) or not isinstance(rating, int) or not 0 <= rating <= 4:
            raise CaiValidationError("rating must be an integer between 0 and 4")
        await self._requester.post(
            self._url(self._config.neo_url, "annotation/create"),
            json_body={
                "turn_key": {"chat_id": chat_id, "turn_id": turn_id},
                "candidate_id": candidate_id,
                "annotation": {"annotation_type": "star", "annotation_value": rating},
            },
        )

    def _ensure_open(self) -> None:
        if self._closed:
            raise CaiConnectionError("client is closed")

    @staticmethod
    def _url(base: str, path: str) -> str:
        return f"{base.rstrip('/')}/{path}"


def _validate(model: type[_M], body: Any, what: str) -> _M:
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise CaiDecodingError(f"unexpected {what} response: {exc}") from exc


def _require_id(name: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise CaiValidationError(f"{name} must be a non-empty string")


def _segment(value: str) -> str:
    return quote(value, safe="")

