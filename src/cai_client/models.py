from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, ClassVar, Generic, TypeAlias, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, model_validator

from .errors import CaiDecodingError


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


#: Service timestamps arrive as RFC 3339 strings; blanks mean "unset".
Timestamp: TypeAlias = Annotated[datetime | None, BeforeValidator(_blank_to_none)]


class _Snapshot(BaseModel):
    """Immutable value returned to callers."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class _WireModel(BaseModel):
    """Outgoing payload model; serialized by alias."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class TurnKey(_Snapshot):
    """Composite key addressing one turn within a chat."""

    chat_id: str
    turn_id: str = ""


class Author(_Snapshot):
    """Author of a turn.

    Attributes:
        author_id: Account id for humans, character id for characters.
        name: Display name.
        is_human: True when a person wrote the turn.
    """

    author_id: str = ""
    name: str = ""
    is_human: bool = False


class Candidate(_Snapshot):
    """One generated response option within a turn.

    Attributes:
        candidate_id: Candidate identifier.
        text: Text content (``raw_content`` on the wire).
        is_final: True once the candidate is fully assembled.
        is_filtered: True when the safety filter truncated the text.
        create_time: Creation time, if reported.
    """

    candidate_id: str
    text: str = Field(default="", alias="raw_content")
    is_final: bool = False
    is_filtered: bool = Field(default=False, alias="safety_truncated")
    create_time: Timestamp = None


class Turn(_Snapshot):
    """A single exchange unit within a chat.

    Attributes:
        turn_key: Chat id and turn id.
        author: Turn author.
        candidates: Response candidates in the order the service lists them.
        primary_candidate_id: Candidate currently shown as the reply.
        is_pinned: Pin flag.
        state: Service-side turn state.
        create_time: Creation time.
        last_update_time: Last modification time.
    """

    turn_key: TurnKey
    author: Author = Field(default_factory=Author)
    candidates: tuple[Candidate, ...] = ()
    primary_candidate_id: str | None = None
    is_pinned: bool = False
    state: str | None = None
    create_time: Timestamp = None
    last_update_time: Timestamp = None

    @model_validator(mode="before")
    @classmethod
    def _default_primary_candidate(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("primary_candidate_id"):
            return data
        candidates = data.get("candidates") or ()
        first = candidates[0] if candidates else None
        # Frames may omit the primary id; the first candidate is shown then.
        if isinstance(first, dict) and first.get("candidate_id"):
            return {**data, "primary_candidate_id": first["candidate_id"]}
        return {**data, "primary_candidate_id": None}

    @model_validator(mode="after")
    def _check_primary_candidate(self) -> Turn:
        if self.primary_candidate_id is None:
            return self
        if not any(c.candidate_id == self.primary_candidate_id for c in self.candidates):
            raise ValueError(
                f"primary candidate {self.primary_candidate_id!r} is not among the turn candidates"
            )
        return self

    @property
    def chat_id(self) -> str:
        return self.turn_key.chat_id

    @property
    def turn_id(self) -> str:
        return self.turn_key.turn_id

    @property
    def candidates_by_id(self) -> dict[str, Candidate]:
        """Candidates keyed by candidate id."""
        return {candidate.candidate_id: candidate for candidate in self.candidates}

    @property
    def primary_candidate(self) -> Candidate | None:
        """The primary candidate, falling back to the first one."""
        if self.primary_candidate_id is not None:
            return self.candidates_by_id.get(self.primary_candidate_id)
        return self.candidates[0] if self.candidates else None

    @property
    def text(self) -> str:
        """Text of the primary candidate, empty when there is none."""
        candidate = self.primary_candidate
        return candidate.text if candidate is not None else ""


class Chat(_Snapshot):
    """A conversation between the caller and one character."""

    chat_id: str
    character_id: str = ""
    creator_id: str = ""
    visibility: str | None = None
    type: str | None = None
    state: str | None = None
    create_time: Timestamp = None
    name: str | None = None
    character_name: str | None = None
    character_avatar_uri: str | None = None
    preview_turns: tuple[Turn, ...] = ()


class HistoryMessage(_Snapshot):
    """Preview message of a legacy chat history."""

    uuid: str = ""
    id: str | int | None = None
    text: str = ""
    src: str = ""
    tgt: str = ""
    is_alternative: bool = False
    image_rel_path: str | None = None


class ChatHistory(_Snapshot):
    """Entry of the legacy chat histories listing."""

    external_id: str
    created: Timestamp = None
    last_interaction: Timestamp = None
    msgs: tuple[HistoryMessage, ...] = ()


class AuthSession(_Snapshot):
    """Authenticated account identity produced by ``CaiClient.authenticate()``.

    Attributes:
        account_id: Numeric account id rendered as a string.
        username: Account username.
        name: Display name used when authoring turns.
    """

    account_id: str
    username: str = ""
    name: str = ""


T = TypeVar("T")
_M = TypeVar("_M", bound=BaseModel)


class Page(BaseModel, Generic[T]):
    """One page of a paginated listing.

    Attributes:
        items: Items of this page in arrival order.
        next_token: Continuation token for the next page; empty or None at the end.
    """

    model_config = ConfigDict(frozen=True)

    items: list[T] = Field(default_factory=list)
    next_token: str | None = None


# Outgoing payload variants. Each one names the command that carries it.


class AuthorPayload(_WireModel):
    author_id: str
    is_human: bool = True
    name: str | None = None


class CandidatePayload(_WireModel):
    candidate_id: str | None = None
    raw_content: str


class TurnKeyPayload(_WireModel):
    chat_id: str
    turn_id: str | None = None


class TurnPayload(_WireModel):
    author: AuthorPayload
    candidates: list[CandidatePayload]
    primary_candidate_id: str | None = None
    turn_key: TurnKeyPayload


class CreateAndGenerateTurnPayload(_WireModel):
    command: ClassVar[str] = "create_and_generate_turn"

    character_id: str
    num_candidates: int = 1
    previous_annotations: dict[str, int] = Field(default_factory=dict)
    selected_language: str = ""
    tts_enabled: bool = False
    turn: TurnPayload
    user_name: str = ""


class ChatPayload(_WireModel):
    chat_id: str
    creator_id: str
    visibility: str = "VISIBILITY_PRIVATE"
    character_id: str
    type: str = "TYPE_ONE_ON_ONE"


class CreateChatPayload(_WireModel):
    command: ClassVar[str] = "create_chat"

    chat: ChatPayload
    with_greeting: bool = True


class GenerateTurnCandidatePayload(_WireModel):
    command: ClassVar[str] = "generate_turn_candidate"

    character_id: str
    tts_enabled: bool = False
    previous_annotations: dict[str, int] = Field(default_factory=dict)
    selected_language: str = ""
    user_name: str = ""
    turn_key: TurnKeyPayload


class EditTurnCandidatePayload(_WireModel):
    command: ClassVar[str] = "edit_turn_candidate"

    turn_key: TurnKeyPayload
    current_candidate_id: str
    new_candidate_raw_content: str


class UpdatePrimaryCandidatePayload(_WireModel):
    command: ClassVar[str] = "update_primary_candidate"

    candidate_id: str
    turn_key: TurnKeyPayload


class RemoveTurnsPayload(_WireModel):
    command: ClassVar[str] = "remove_turns"

    chat_id: str
    turn_ids: list[str]


class SetTurnPinPayload(_WireModel):
    command: ClassVar[str] = "set_turn_pin"

    is_pinned: bool
    turn_key: TurnKeyPayload


#: Closed set of payloads the engine can send.
EnvelopePayload: TypeAlias = (
    CreateAndGenerateTurnPayload
    | CreateChatPayload
    | GenerateTurnCandidatePayload
    | EditTurnCandidatePayload
    | UpdatePrimaryCandidatePayload
    | RemoveTurnsPayload
    | SetTurnPinPayload
)


class Envelope(BaseModel):
    """Outgoing command wrapper.

    Attributes:
        command: Command tag, taken from the payload variant.
        origin_id: Origin tag of the sending client.
        request_id: Correlation id minted per operation.
        payload: Command payload.
    """

    model_config = ConfigDict(frozen=True)

    command: str
    origin_id: str | None = None
    request_id: str
    payload: dict[str, Any]


class Frame(BaseModel):
    """One message received from the duplex connection.

    The payload stays an untyped mapping until the caller knows which shape to
    expect; use `decode_payload` to validate it.
    """

    model_config = ConfigDict(frozen=True)

    command: str
    payload: dict[str, Any] | None = None
    comment: str | None = None
    request_id: str | None = None

    def decode_payload(self, model: type[_M]) -> _M:
        """Validate the payload against `model`."""
        try:
            return model.model_validate(self.payload or {})
        except ValidationError as exc:
            raise CaiDecodingError(
                f"{self.command} frame does not match {model.__name__}: {exc}"
            ) from exc


class TurnFramePayload(_Snapshot):
    """Payload of ``add_turn`` / ``update_turn`` frames."""

    turn: Turn


class CreateChatResponsePayload(_Snapshot):
    """Payload of the chat-creation acknowledgement."""

    chat: Chat


# REST response bodies.


class PageMeta(_Snapshot):
    next_token: str | None = None


class TurnListResponse(_Snapshot):
    turns: tuple[Turn, ...] = ()
    meta: PageMeta = Field(default_factory=PageMeta)


class ChatListResponse(_Snapshot):
    chats: tuple[Chat, ...] = ()


class ChatResponse(_Snapshot):
    chat: Chat


class HistoriesResponse(_Snapshot):
    histories: tuple[ChatHistory, ...] = ()


class CopyChatResponse(_Snapshot):
    new_chat_id: str


class _AccountProfile(_Snapshot):
    name: str = ""


class _UserIdentity(_Snapshot):
    id: int | str
    username: str = ""
    first_name: str = ""
    account: _AccountProfile | None = None


class CurrentUser(_Snapshot):
    """Account record returned by the current-user endpoint."""

    user: _UserIdentity
    name: str = ""
    is_human: bool = True

    def to_session(self) -> AuthSession:
        profile_name = self.user.account.name if self.user.account is not None else ""
        return AuthSession(
            account_id=str(self.user.id),
            username=self.user.username,
            name=profile_name or self.name or self.user.first_name or self.user.username,
        )


class CurrentUserResponse(_Snapshot):
    user: CurrentUser
