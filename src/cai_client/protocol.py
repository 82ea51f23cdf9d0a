from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .errors import CaiDecodingError, CaiEncodingError
from .models import Envelope, EnvelopePayload, Frame

# Outgoing command tags.
CREATE_AND_GENERATE_TURN_COMMAND = "create_and_generate_turn"
CREATE_CHAT_COMMAND = "create_chat"
GENERATE_TURN_CANDIDATE_COMMAND = "generate_turn_candidate"
EDIT_TURN_CANDIDATE_COMMAND = "edit_turn_candidate"
UPDATE_PRIMARY_CANDIDATE_COMMAND = "update_primary_candidate"
REMOVE_TURNS_COMMAND = "remove_turns"
SET_TURN_PIN_COMMAND = "set_turn_pin"

OUTGOING_COMMANDS = frozenset(
    {
        CREATE_AND_GENERATE_TURN_COMMAND,
        CREATE_CHAT_COMMAND,
        GENERATE_TURN_CANDIDATE_COMMAND,
        EDIT_TURN_CANDIDATE_COMMAND,
        UPDATE_PRIMARY_CANDIDATE_COMMAND,
        REMOVE_TURNS_COMMAND,
        SET_TURN_PIN_COMMAND,
    }
)

# Incoming command tags.
ADD_TURN_COMMAND = "add_turn"
UPDATE_TURN_COMMAND = "update_turn"
CREATE_CHAT_RESPONSE_COMMAND = "create_chat_response"
REMOVE_TURNS_RESPONSE_COMMAND = "remove_turns_response"
OK_COMMAND = "ok"
NEO_ERROR_COMMAND = "neo_error"

TURN_COMMANDS = frozenset({ADD_TURN_COMMAND, UPDATE_TURN_COMMAND})
ERROR_COMMANDS = frozenset({NEO_ERROR_COMMAND})

# Top-level keys that belong to the frame itself rather than its payload.
_FRAME_KEYS = frozenset({"command", "payload", "comment", "request_id"})

# Annotation flags the web client sends with every generation request.
_ANNOTATION_KEYS = (
    "bad_memory",
    "boring",
    "ends_chat_early",
    "funny",
    "helpful",
    "inaccurate",
    "interesting",
    "long",
    "not_bad_memory",
    "not_boring",
    "not_ends_chat_early",
    "not_funny",
    "not_helpful",
    "not_inaccurate",
    "not_interesting",
    "not_long",
    "not_out_of_character",
    "not_repetitive",
    "not_short",
    "out_of_character",
    "repetitive",
    "short",
)


@dataclass(frozen=True, slots=True)
class OperationSpec:
    """Tag table of one turn-exchange operation.

    Attributes:
        name: Operation name used in logs and errors.
        command: Command tag of the envelope the operation sends.
        success: Tags that may end the operation successfully.
        errors: Tags that end the operation with a server error.
        intermediate: Tags that must be consumed before the result arrives.
    """

    name: str
    command: str
    success: frozenset[str]
    errors: frozenset[str] = ERROR_COMMANDS
    intermediate: frozenset[str] = frozenset()

    @property
    def relevant(self) -> frozenset[str]:
        return self.success | self.errors | self.intermediate


SEND_MESSAGE = OperationSpec(
    name="send_message",
    command=CREATE_AND_GENERATE_TURN_COMMAND,
    success=TURN_COMMANDS,
)
CREATE_CHAT = OperationSpec(
    name="create_chat",
    command=CREATE_CHAT_COMMAND,
    success=frozenset({ADD_TURN_COMMAND, CREATE_CHAT_RESPONSE_COMMAND}),
    intermediate=frozenset({CREATE_CHAT_RESPONSE_COMMAND}),
)
REGENERATE_CANDIDATE = OperationSpec(
    name="regenerate_candidate",
    command=GENERATE_TURN_CANDIDATE_COMMAND,
    success=frozenset({UPDATE_TURN_COMMAND}),
)
EDIT_TURN_CANDIDATE = OperationSpec(
    name="edit_turn_candidate",
    command=EDIT_TURN_CANDIDATE_COMMAND,
    success=frozenset({UPDATE_TURN_COMMAND}),
)
SET_PRIMARY_CANDIDATE = OperationSpec(
    name="set_primary_candidate",
    command=UPDATE_PRIMARY_CANDIDATE_COMMAND,
    success=frozenset({OK_COMMAND}),
)
DELETE_TURNS = OperationSpec(
    name="delete_turns",
    command=REMOVE_TURNS_COMMAND,
    success=frozenset({REMOVE_TURNS_RESPONSE_COMMAND}),
)
SET_TURN_PIN = OperationSpec(
    name="set_turn_pin",
    command=SET_TURN_PIN_COMMAND,
    success=frozenset({UPDATE_TURN_COMMAND}),
)


def default_previous_annotations() -> dict[str, int]:
    """Return the all-zero annotation map sent with generation requests."""
    return dict.fromkeys(_ANNOTATION_KEYS, 0)


def make_envelope(
    payload: EnvelopePayload,
    *,
    request_id: str,
    origin_id: str | None = None,
) -> Envelope:
    """Wrap a payload variant into an envelope."""
    command = type(payload).command
    if command not in OUTGOING_COMMANDS:
        raise CaiEncodingError(f"unknown command tag: {command!r}")
    try:
        body = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    except (TypeError, ValueError) as exc:
        raise CaiEncodingError(f"failed to serialize {command} payload") from exc
    return Envelope(
        command=command,
        origin_id=origin_id,
        request_id=request_id,
        payload=body,
    )


def encode_envelope(envelope: Envelope) -> str:
    """Serialize an envelope into one text frame."""
    if envelope.command not in OUTGOING_COMMANDS:
        raise CaiEncodingError(f"unknown command tag: {envelope.command!r}")
    message: dict[str, Any] = {
        "command": envelope.command,
        "request_id": envelope.request_id,
        "payload": envelope.payload,
    }
    if envelope.origin_id:
        message["origin_id"] = envelope.origin_id
    try:
        return json.dumps(message, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise CaiEncodingError(f"failed to encode {envelope.command} envelope") from exc


def decode_frame(data: str | bytes | bytearray) -> Frame:
    """Parse one incoming frame.

    The payload is left undecoded. Services that send payload fields flat at
    the top level get them gathered into the payload mapping.
    """
    try:
        text = data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data
        message = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CaiDecodingError("received invalid JSON frame") from exc

    if not isinstance(message, dict):
        raise CaiDecodingError("frame is not a JSON object")

    command = message.get("command")
    if not isinstance(command, str) or not command:
        raise CaiDecodingError("frame has no command tag")

    payload = message.get("payload")
    if payload is None:
        flat = {key: value for key, value in message.items() if key not in _FRAME_KEYS}
        payload = flat or None
    elif not isinstance(payload, dict):
        raise CaiDecodingError(f"{command} frame payload is not an object")

    comment = message.get("comment")
    if comment is not None and not isinstance(comment, str):
        raise CaiDecodingError(f"{command} frame comment is not a string")

    request_id = message.get("request_id")
    if request_id is None and payload is not None:
        request_id = payload.get("request_id")
    if request_id is not None and not isinstance(request_id, str):
        request_id = str(request_id)

    try:
        return Frame(
            command=command,
            payload=payload,
            comment=comment,
            request_id=request_id or None,
        )
    except ValidationError as exc:  # pragma: no cover
        raise CaiDecodingError(f"malformed {command} frame") from exc


def is_error_frame(frame: Frame, operation: OperationSpec) -> bool:
    """Return True when the frame ends `operation` with a server error."""
    return frame.command in operation.errors


def extract_rest_error(body: Any) -> tuple[str, bool] | None:
    """Return ``(message, is_auth_failure)`` for a REST error envelope."""
    if not isinstance(body, dict):
        return None

    if body.get("command") == NEO_ERROR_COMMAND:
        comment = body.get("comment")
        return (str(comment) if comment else "neo_error", False)

    if body.get("detail") == "Auth":
        return ("invalid token", True)

    error = body.get("error")
    status = body.get("status")
    if isinstance(status, str) and status != "OK":
        if status.startswith("Error") or error:
            return (str(error) if error else status, False)

    if error:
        if isinstance(error, dict):
            message = error.get("message")
            return (str(message) if message else json.dumps(error), False)
        return (str(error), False)

    return None
