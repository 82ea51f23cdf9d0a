from __future__ import annotations

import asyncio
import contextlib
import enum
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from .errors import (
    CaiDecodingError,
    CaiError,
    CaiNotAppliedError,
    CaiServerError,
    CaiTimeoutError,
    CaiValidationError,
)
from .models import (
    AuthorPayload,
    AuthSession,
    CandidatePayload,
    Chat,
    ChatPayload,
    CreateAndGenerateTurnPayload,
    CreateChatPayload,
    CreateChatResponsePayload,
    EditTurnCandidatePayload,
    EnvelopePayload,
    Frame,
    GenerateTurnCandidatePayload,
    RemoveTurnsPayload,
    SetTurnPinPayload,
    Turn,
    TurnFramePayload,
    TurnKeyPayload,
    TurnPayload,
    UpdatePrimaryCandidatePayload,
)
from .protocol import (
    CREATE_CHAT,
    CREATE_CHAT_RESPONSE_COMMAND,
    DELETE_TURNS,
    EDIT_TURN_CANDIDATE,
    REGENERATE_CANDIDATE,
    SEND_MESSAGE,
    SET_PRIMARY_CANDIDATE,
    SET_TURN_PIN,
    TURN_COMMANDS,
    OperationSpec,
    decode_frame,
    default_previous_annotations,
    encode_envelope,
    is_error_frame,
    make_envelope,
)
from .transport import Transport


class OperationState(enum.Enum):
    """Lifecycle of one in-flight turn-exchange operation."""

    IDLE = "idle"
    AWAITING_ACK = "awaiting_ack"
    SATISFIED = "satisfied"
    FAILED = "failed"


@dataclass(slots=True)
class _StaleOperation:
    request_id: str
    chat_id: str | None
    turn_ids: set[str]
    owed: set[str]
    expires_at: float
    awaits_reply_turn: bool = False
    human_author_id: str | None = None


@dataclass(slots=True)
class _Exchange:
    operation: OperationSpec
    request_id: str
    deadline: float
    timeout: float
    chat_id: str | None = None
    turn_ids: set[str] = field(default_factory=set)
    received: set[str] = field(default_factory=set)
    awaits_reply_turn: bool = False
    human_author_id: str | None = None
    state: OperationState = OperationState.IDLE

    def transition(self, state: OperationState) -> None:
        logger.debug(
            "engine.operation name={} request_id={} state={}->{}",
            self.operation.name,
            self.request_id,
            self.state.value,
            state.value,
        )
        self.state = state


class TurnExchangeEngine:
    """Serialized request/response exchange over the shared duplex connection.

    Every operation sends one envelope and then reads frames until one of the
    operation's terminal tags arrives. A single guard lock spans the whole
    exchange, so operations on one engine are totally ordered and replies can
    never be attributed to the wrong caller.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        origin_id: str | None = None,
        request_timeout: float = 30.0,
        turn_timeout: float = 120.0,
        stale_frame_window: float = 60.0,
    ) -> None:
        """Create an engine bound to a transport.

        Args:
            transport: Duplex transport, connected lazily on first use.
            origin_id: Origin tag stamped on every envelope.
            request_timeout: Default deadline for acknowledgement operations.
            turn_timeout: Default deadline for operations that generate text.
            stale_frame_window: Seconds during which frames of a timed-out
                operation are recognized and dropped.
        """
        self._transport = transport
        self._origin_id = origin_id
        self._request_timeout = request_timeout
        self._turn_timeout = turn_timeout
        self._stale_frame_window = stale_frame_window
        self._guard = asyncio.Lock()
        self._stale: dict[str, _StaleOperation] = {}

    @property
    def busy(self) -> bool:
        """True while an operation holds the guard."""
        return self._guard.locked()

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
        reply: Turn | None = None
        stream = self.stream_message(
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
            async for reply in stream:
                pass
        if reply is None:  # pragma: no cover
            raise CaiDecodingError("send_message finished without a reply turn")
        return reply

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
        """Send a user message and yield reply snapshots as they grow.

        The last snapshot carries a final primary candidate. The guard stays
        held until the iteration ends, so consume it fully or close it.
        """
        _require_id("character_id", character_id)
        _require_id("chat_id", chat_id)
        _require_text("text", text)
        if num_candidates < 1:
            raise CaiValidationError("num_candidates must be at least 1")

        human_turn_id = turn_id or str(uuid.uuid4())
        human_candidate_id = candidate_id or str(uuid.uuid4())
        payload = CreateAndGenerateTurnPayload(
            character_id=character_id,
            num_candidates=num_candidates,
            previous_annotations=default_previous_annotations(),
            selected_language=selected_language,
            tts_enabled=tts_enabled,
            turn=TurnPayload(
                author=AuthorPayload(
                    author_id=session.account_id,
                    is_human=True,
                    name=session.name or None,
                ),
                candidates=[
                    CandidatePayload(candidate_id=human_candidate_id, raw_content=text)
                ],
                primary_candidate_id=human_candidate_id,
                turn_key=TurnKeyPayload(chat_id=chat_id, turn_id=human_turn_id),
            ),
            user_name=session.name or session.username,
        )

        async with self._operation(
            SEND_MESSAGE,
            payload,
            chat_id=chat_id,
            timeout=self._resolve_timeout(timeout, self._turn_timeout),
        ) as exchange:
            exchange.turn_ids.add(human_turn_id)
            exchange.awaits_reply_turn = True
            exchange.human_author_id = session.account_id
            reply_turn_id: str | None = None
            while True:
                frame = await self._next_frame(exchange)
                turn = _turn_from(frame)
                if turn.chat_id != chat_id or turn.turn_id == human_turn_id:
                    continue
                if _is_human_author(turn, session):
                    continue
                if reply_turn_id is None:
                    reply_turn_id = turn.turn_id
                    exchange.turn_ids.add(reply_turn_id)
                    exchange.awaits_reply_turn = False
                elif turn.turn_id != reply_turn_id:
                    continue
                yield turn
                if _is_final(turn):
                    return

    async def create_chat(
        self,
        character_id: str,
        *,
        session: AuthSession,
        greeting: bool = True,
        chat_id: str | None = None,
        timeout: float | None = None,
    ) -> tuple[Chat, Turn | None]:
        """Create a one-on-one chat and return it with its greeting turn.

        Without a greeting the chat-creation acknowledgement is the result and
        the turn is None.
        """
        _require_id("character_id", character_id)
        _require_id("session.account_id", session.account_id)
        new_chat_id = chat_id or str(uuid.uuid4())
        payload = CreateChatPayload(
            chat=ChatPayload(
                chat_id=new_chat_id,
                creator_id=session.account_id,
                character_id=character_id,
            ),
            with_greeting=greeting,
        )
        default_timeout = self._turn_timeout if greeting else self._request_timeout

        async with self._operation(
            CREATE_CHAT,
            payload,
            chat_id=new_chat_id,
            timeout=self._resolve_timeout(timeout, default_timeout),
        ) as exchange:
            chat: Chat | None = None
            while True:
                frame = await self._next_frame(exchange)
                if frame.command == CREATE_CHAT_RESPONSE_COMMAND:
                    if chat is not None:
                        continue
                    ack = frame.decode_payload(CreateChatResponsePayload)
                    if frame.request_id is None and ack.chat.chat_id != new_chat_id:
                        continue
                    chat = ack.chat
                    exchange.chat_id = chat.chat_id
                    if not greeting:
                        return chat, None
                    continue

                if chat is None:
                    continue
                turn = _turn_from(frame)
                if turn.chat_id != chat.chat_id or _is_human_author(turn, session):
                    continue
                return chat, turn

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
        """Ask for another candidate on a character turn and return the updated turn."""
        _require_id("character_id", character_id)
        _require_id("chat_id", chat_id)
        _require_id("turn_id", turn_id)
        payload = GenerateTurnCandidatePayload(
            character_id=character_id,
            tts_enabled=tts_enabled,
            previous_annotations=default_previous_annotations(),
            selected_language=selected_language,
            user_name=(session.name or session.username) if session is not None else "",
            turn_key=TurnKeyPayload(chat_id=chat_id, turn_id=turn_id),
        )

        async with self._operation(
            REGENERATE_CANDIDATE,
            payload,
            chat_id=chat_id,
            turn_ids=(turn_id,),
            timeout=self._resolve_timeout(timeout, self._turn_timeout),
        ) as exchange:
            while True:
                turn = await self._next_turn(exchange, chat_id, turn_id)
                if _is_final(turn):
                    return turn

    async def edit_turn_candidate(
        self,
        chat_id: str,
        turn_id: str,
        candidate_id: str,
        text: str,
        *,
        timeout: float | None = None,
    ) -> Turn:
        """Replace the text of a candidate and return the updated turn."""
        _require_id("chat_id", chat_id)
        _require_id("turn_id", turn_id)
        _require_id("candidate_id", candidate_id)
        _require_text("text", text)
        payload = EditTurnCandidatePayload(
            turn_key=TurnKeyPayload(chat_id=chat_id, turn_id=turn_id),
            current_candidate_id=candidate_id,
            new_candidate_raw_content=text,
        )

        async with self._operation(
            EDIT_TURN_CANDIDATE,
            payload,
            chat_id=chat_id,
            turn_ids=(turn_id,),
            timeout=self._resolve_timeout(timeout, self._request_timeout),
        ) as exchange:
            return await self._next_turn(exchange, chat_id, turn_id)

    async def set_primary_candidate(
        self,
        chat_id: str,
        turn_id: str,
        candidate_id: str,
        *,
        timeout: float | None = None,
    ) -> None:
        """Make `candidate_id` the candidate shown for a turn."""
        _require_id("chat_id", chat_id)
        _require_id("turn_id", turn_id)
        _require_id("candidate_id", candidate_id)
        payload = UpdatePrimaryCandidatePayload(
            candidate_id=candidate_id,
            turn_key=TurnKeyPayload(chat_id=chat_id, turn_id=turn_id),
        )

        async with self._operation(
            SET_PRIMARY_CANDIDATE,
            payload,
            chat_id=chat_id,
            turn_ids=(turn_id,),
            timeout=self._resolve_timeout(timeout, self._request_timeout),
        ) as exchange:
            await self._next_frame(exchange)

    async def delete_turns(
        self,
        chat_id: str,
        turn_ids: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> None:
        """Remove turns from a chat."""
        _require_id("chat_id", chat_id)
        if isinstance(turn_ids, str) or not turn_ids:
            raise CaiValidationError("turn_ids must be a non-empty sequence of turn ids")
        for value in turn_ids:
            _require_id("turn_ids[]", value)
        payload = RemoveTurnsPayload(chat_id=chat_id, turn_ids=list(turn_ids))

        async with self._operation(
            DELETE_TURNS,
            payload,
            chat_id=chat_id,
            turn_ids=turn_ids,
            timeout=self._resolve_timeout(timeout, self._request_timeout),
        ) as exchange:
            while True:
                frame = await self._next_frame(exchange)
                acked_chat_id = (frame.payload or {}).get("chat_id")
                if frame.request_id is None and acked_chat_id not in (None, chat_id):
                    continue
                return

    async def set_turn_pin(
        self,
        chat_id: str,
        turn_id: str,
        pinned: bool,
        *,
        timeout: float | None = None,
    ) -> Turn:
        """Pin or unpin a turn and return the updated turn.

        Raises `CaiNotAppliedError` when the service answers with a turn whose
        pin flag differs from the requested one.
        """
        _require_id("chat_id", chat_id)
        _require_id("turn_id", turn_id)
        payload = SetTurnPinPayload(
            is_pinned=pinned,
            turn_key=TurnKeyPayload(chat_id=chat_id, turn_id=turn_id),
        )

        async with self._operation(
            SET_TURN_PIN,
            payload,
            chat_id=chat_id,
            turn_ids=(turn_id,),
            timeout=self._resolve_timeout(timeout, self._request_timeout),
        ) as exchange:
            turn = await self._next_turn(exchange, chat_id, turn_id)
            if turn.is_pinned != pinned:
                action = "pin" if pinned else "unpin"
                raise CaiNotAppliedError(
                    f"{action} of turn {turn_id!r} in chat {chat_id!r} did not take effect"
                )
            return turn

    @contextlib.asynccontextmanager
    async def _operation(
        self,
        operation: OperationSpec,
        payload: EnvelopePayload,
        *,
        chat_id: str | None,
        timeout: float,
        turn_ids: Iterable[str] = (),
    ) -> AsyncIterator[_Exchange]:
        """Hold the guard, send the envelope and track the operation state."""
        async with self._guard:
            loop = asyncio.get_running_loop()
            self._prune_stale(loop.time())
            exchange = _Exchange(
                operation=operation,
                request_id=str(uuid.uuid4()),
                deadline=loop.time() + timeout,
                timeout=timeout,
                chat_id=chat_id,
                turn_ids=set(turn_ids),
            )
            try:
                await self._transport.ensure_connected()
                envelope = make_envelope(
                    payload,
                    request_id=exchange.request_id,
                    origin_id=self._origin_id,
                )
                await self._transport.send(encode_envelope(envelope))
                exchange.transition(OperationState.AWAITING_ACK)
                yield exchange
            except asyncio.TimeoutError as exc:
                exchange.transition(OperationState.FAILED)
                self._remember_stale(exchange, loop.time())
                raise CaiTimeoutError(
                    f"{operation.name} timed out after {timeout:.1f}s"
                ) from exc
            except CaiError:
                exchange.transition(OperationState.FAILED)
                raise
            except (asyncio.CancelledError, GeneratorExit):
                exchange.transition(OperationState.FAILED)
                self._remember_stale(exchange, loop.time())
                raise
            else:
                exchange.transition(OperationState.SATISFIED)

    async def _next_frame(self, exchange: _Exchange) -> Frame:
        """Return the next frame relevant to `exchange`.

        Raises `CaiServerError` on an error frame and `asyncio.TimeoutError`
        once the deadline passes.
        """
        loop = asyncio.get_running_loop()
        while True:
            remaining = exchange.deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError
            raw = await asyncio.wait_for(self._transport.recv(), timeout=remaining)
            frame = decode_frame(raw)
            if self._should_discard(exchange, frame):
                continue
            if is_error_frame(frame, exchange.operation):
                raise CaiServerError(
                    frame.comment or f"{exchange.operation.name} failed",
                    command=frame.command,
                )
            exchange.received.add(frame.command)
            return frame

    async def _next_turn(self, exchange: _Exchange, chat_id: str, turn_id: str) -> Turn:
        """Return the next turn frame addressed to the given turn key."""
        while True:
            frame = await self._next_frame(exchange)
            turn = _turn_from(frame)
            if turn.chat_id == chat_id and turn.turn_id == turn_id:
                return turn
            logger.debug(
                "engine.turn.unmatched name={} expected={}/{} got={}/{}",
                exchange.operation.name,
                chat_id,
                turn_id,
                turn.chat_id,
                turn.turn_id,
            )

    def _should_discard(self, exchange: _Exchange, frame: Frame) -> bool:
        if frame.request_id is not None and frame.request_id != exchange.request_id:
            if frame.request_id in self._stale:
                logger.debug(
                    "engine.frame.stale command={} request_id={}",
                    frame.command,
                    frame.request_id,
                )
            else:
                logger.debug(
                    "engine.frame.foreign command={} request_id={}",
                    frame.command,
                    frame.request_id,
                )
            return True

        if frame.request_id is None and self._stale and self._settles_stale(exchange, frame):
            return True

        if frame.command not in exchange.operation.relevant:
            logger.debug(
                "engine.frame.ignored name={} command={}",
                exchange.operation.name,
                frame.command,
            )
            return True

        return False

    def _settles_stale(self, exchange: _Exchange, frame: Frame) -> bool:
        """Attribute an untagged frame to a timed-out operation, oldest first.

        Turn frames belong to a stale operation when they name one of its
        turns, or when they are the first character turn in the chat of a
        send that timed out before its reply turn was known. Other terminal
        frames pay off one acknowledgement a stale operation still owes.
        """
        now = asyncio.get_running_loop().time()
        live = [stale for stale in self._stale.values() if stale.expires_at > now]

        if frame.command in TURN_COMMANDS:
            turn = _peek_turn(frame)
            if turn is None:
                return False
            chat_id, turn_id, author = turn
            if turn_id in exchange.turn_ids:
                return False
            for stale in live:
                if stale.chat_id == chat_id and turn_id in stale.turn_ids:
                    logger.debug(
                        "engine.frame.stale command={} turn={}/{} request_id={}",
                        frame.command,
                        chat_id,
                        turn_id,
                        stale.request_id,
                    )
                    return True
            for stale in live:
                if (
                    stale.awaits_reply_turn
                    and stale.chat_id == chat_id
                    and not _is_human_payload(author, stale.human_author_id)
                ):
                    stale.turn_ids.add(turn_id)
                    stale.awaits_reply_turn = False
                    logger.debug(
                        "engine.frame.stale command={} turn={}/{} request_id={} bound=true",
                        frame.command,
                        chat_id,
                        turn_id,
                        stale.request_id,
                    )
                    return True
            return False

        frame_chat_id = _peek_chat_id(frame)
        for stale in live:
            if frame.command not in stale.owed:
                continue
            if frame_chat_id is not None and frame_chat_id != stale.chat_id:
                continue
            stale.owed.discard(frame.command)
            logger.debug(
                "engine.frame.stale command={} request_id={} owed={}",
                frame.command,
                stale.request_id,
                sorted(stale.owed),
            )
            return True
        return False

    def _remember_stale(self, exchange: _Exchange, now: float) -> None:
        if self._stale_frame_window <= 0:
            return
        operation = exchange.operation
        owed = (operation.success | operation.intermediate) - TURN_COMMANDS - exchange.received
        self._stale[exchange.request_id] = _StaleOperation(
            request_id=exchange.request_id,
            chat_id=exchange.chat_id,
            turn_ids=set(exchange.turn_ids),
            owed=set(owed),
            expires_at=now + self._stale_frame_window,
            awaits_reply_turn=exchange.awaits_reply_turn,
            human_author_id=exchange.human_author_id,
        )

    def _prune_stale(self, now: float) -> None:
        expired = [key for key, stale in self._stale.items() if stale.expires_at <= now]
        for key in expired:
            del self._stale[key]

    def _resolve_timeout(self, timeout: float | None, default: float) -> float:
        value = timeout if timeout is not None else default
        if value <= 0:
            raise CaiValidationError("timeout must be positive")
        return value


def _require_id(name: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise CaiValidationError(f"{name} must be a non-empty string")


def _require_text(name: str, value: Any) -> None:
    if not isinstance(value, str) or not value:
        raise CaiValidationError(f"{name} must be a non-empty string")


def _turn_from(frame: Frame) -> Turn:
    return frame.decode_payload(TurnFramePayload).turn


def _is_final(turn: Turn) -> bool:
    candidate = turn.primary_candidate
    return candidate is not None and candidate.is_final


def _is_human_author(turn: Turn, session: AuthSession) -> bool:
    return turn.author.is_human or turn.author.author_id == session.account_id


def _is_human_payload(author: Any, account_id: str | None) -> bool:
    if not isinstance(author, dict):
        return False
    if author.get("is_human"):
        return True
    return account_id is not None and str(author.get("author_id")) == account_id


def _peek_turn(frame: Frame) -> tuple[str, str, Any] | None:
    turn = (frame.payload or {}).get("turn")
    if not isinstance(turn, dict):
        return None
    key = turn.get("turn_key")
    if not isinstance(key, dict):
        return None
    chat_id = key.get("chat_id")
    turn_id = key.get("turn_id")
    if not isinstance(chat_id, str) or not isinstance(turn_id, str):
        return None
    return chat_id, turn_id, turn.get("author")


def _peek_chat_id(frame: Frame) -> str | None:
    payload = frame.payload or {}
    chat_id = payload.get("chat_id")
    if chat_id is None and isinstance(payload.get("chat"), dict):
        chat_id = payload["chat"].get("chat_id")
    return chat_id if isinstance(chat_id, str) else None
