from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from cai_client.engine import TurnExchangeEngine
from cai_client.errors import (
    CaiConnectionError,
    CaiDecodingError,
    CaiNotAppliedError,
    CaiServerError,
    CaiTimeoutError,
    CaiValidationError,
)
from cai_client.models import AuthSession
from cai_client.transport import Transport

Reply = Callable[[dict[str, Any]], list[dict[str, Any]]]

SESSION = AuthSession(account_id="42", username="sam", name="Sam")


class ScriptedTransport(Transport):
    """Answers each sent envelope with the next scripted batch of frames."""

    def __init__(self, *replies: Reply) -> None:
        self._incoming: asyncio.Queue[str] = asyncio.Queue()
        self._replies = list(replies)
        self.sent: list[dict[str, Any]] = []
        self.connect_calls = 0
        self.close_calls = 0

    async def connect(self) -> None:
        self.connect_calls += 1

    async def send(self, data: str) -> None:
        message = json.loads(data)
        self.sent.append(message)
        if self._replies:
            for frame in self._replies.pop(0)(message):
                self.push(frame)

    def queue_reply(self, reply: Reply) -> None:
        self._replies.append(reply)

    def push(self, frame: dict[str, Any]) -> None:
        self._incoming.put_nowait(json.dumps(frame))

    async def recv(self) -> str:
        return await self._incoming.get()

    async def close(self) -> None:
        self.close_calls += 1


class BrokenTransport(Transport):
    async def connect(self) -> None:
        return None

    async def send(self, data: str) -> None:
        return None

    async def recv(self) -> str:
        raise CaiConnectionError("failed reading from websocket transport")

    async def close(self) -> None:
        return None


def frames(*items: dict[str, Any]) -> Reply:
    return lambda _message: list(items)


def turn_frame(
    command: str,
    turn_id: str,
    *,
    chat_id: str = "c1",
    author_id: str = "ch1",
    is_human: bool = False,
    candidates: list[tuple[str, str, bool]] | None = None,
    primary: str | None = None,
    is_pinned: bool = False,
    request_id: str | None = None,
) -> dict[str, Any]:
    candidates = candidates if candidates is not None else [("cand1", "hello back", True)]
    frame: dict[str, Any] = {
        "command": command,
        "payload": {
            "turn": {
                "turn_key": {"chat_id": chat_id, "turn_id": turn_id},
                "author": {"author_id": author_id, "name": "Guide", "is_human": is_human},
                "candidates": [
                    {"candidate_id": cid, "raw_content": text, "is_final": final}
                    for cid, text, final in candidates
                ],
                "primary_candidate_id": primary or candidates[0][0],
                "is_pinned": is_pinned,
            }
        },
    }
    if request_id is not None:
        frame["request_id"] = request_id
    return frame


def test_send_message_skips_unrelated_frames_and_returns_reply() -> None:
    async def _run() -> None:
        reply = {
            "command": "add_turn",
            "payload": {
                "turn": {
                    "turn_key": {"chat_id": "c1", "turn_id": "t2"},
                    "author": {"author_id": "ch1", "name": "Guide"},
                    "candidates": [
                        {"candidate_id": "cand1", "raw_content": "hello back", "is_final": True}
                    ],
                }
            },
        }
        transport = ScriptedTransport(frames({"command": "ping"}, reply))
        engine = TurnExchangeEngine(transport, origin_id="web-next")

        turn = await engine.send_message("ch1", "c1", "hi", session=SESSION)

        assert turn.primary_candidate_id == "cand1"
        assert turn.text == "hello back"
        assert turn.turn_id == "t2"

        [message] = transport.sent
        assert message["command"] == "create_and_generate_turn"
        assert message["origin_id"] == "web-next"
        assert isinstance(message["request_id"], str) and message["request_id"]
        payload = message["payload"]
        assert payload["character_id"] == "ch1"
        assert payload["turn"]["turn_key"]["chat_id"] == "c1"
        assert payload["turn"]["candidates"][0]["raw_content"] == "hi"
        assert payload["turn"]["author"] == {"author_id": "42", "is_human": True, "name": "Sam"}
        assert payload["user_name"] == "Sam"

    asyncio.run(_run())


def test_send_message_ignores_human_echo_and_waits_for_final_candidate() -> None:
    def reply(message: dict[str, Any]) -> list[dict[str, Any]]:
        human_turn_id = message["payload"]["turn"]["turn_key"]["turn_id"]
        return [
            turn_frame(
                "add_turn",
                human_turn_id,
                author_id="42",
                is_human=True,
                candidates=[("h1", "hi", True)],
            ),
            turn_frame("add_turn", "t2", candidates=[("cand1", "hel", False)]),
            turn_frame("update_turn", "t9", chat_id="other", candidates=[("x", "noise", True)]),
            turn_frame("update_turn", "t2", candidates=[("cand1", "hello back", True)]),
        ]

    async def _run() -> None:
        transport = ScriptedTransport(reply)
        engine = TurnExchangeEngine(transport)

        snapshots = [
            turn async for turn in engine.stream_message("ch1", "c1", "hi", session=SESSION)
        ]

        assert [turn.text for turn in snapshots] == ["hel", "hello back"]
        assert snapshots[-1].primary_candidate is not None
        assert snapshots[-1].primary_candidate.is_final
        assert not engine.busy

    asyncio.run(_run())


def test_frames_with_foreign_request_id_are_discarded() -> None:
    def reply(message: dict[str, Any]) -> list[dict[str, Any]]:
        return [
            turn_frame("add_turn", "t7", candidates=[("x", "someone else's", True)], request_id="other"),
            turn_frame("add_turn", "t2", request_id=message["request_id"]),
        ]

    async def _run() -> None:
        engine = TurnExchangeEngine(ScriptedTransport(reply))
        turn = await engine.send_message("ch1", "c1", "hi", session=SESSION)
        assert turn.turn_id == "t2"

    asyncio.run(_run())


def test_error_frame_fails_operation_and_connection_stays_usable() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(
            frames({"command": "neo_error", "comment": "turn not found"}),
            frames({"command": "ok"}),
        )
        engine = TurnExchangeEngine(transport)

        with pytest.raises(CaiServerError) as exc_info:
            await engine.set_primary_candidate("c1", "t1", "k2")
        assert exc_info.value.message == "turn not found"
        assert exc_info.value.command == "neo_error"

        await engine.set_primary_candidate("c1", "t1", "k2")
        assert len(transport.sent) == 2
        assert transport.sent[1]["payload"] == {
            "candidate_id": "k2",
            "turn_key": {"chat_id": "c1", "turn_id": "t1"},
        }

    asyncio.run(_run())


def test_create_chat_without_greeting_returns_acknowledged_chat() -> None:
    def reply(message: dict[str, Any]) -> list[dict[str, Any]]:
        chat = message["payload"]["chat"]
        return [
            {
                "command": "create_chat_response",
                "payload": {"chat": {"chat_id": chat["chat_id"], "character_id": "ch1"}},
            }
        ]

    async def _run() -> None:
        transport = ScriptedTransport(reply)
        engine = TurnExchangeEngine(transport)

        chat, greeting = await engine.create_chat("ch1", session=SESSION, greeting=False)

        assert greeting is None
        assert chat.character_id == "ch1"
        payload = transport.sent[0]["payload"]
        assert payload["with_greeting"] is False
        assert payload["chat"]["creator_id"] == "42"
        assert payload["chat"]["type"] == "TYPE_ONE_ON_ONE"
        assert chat.chat_id == payload["chat"]["chat_id"]

    asyncio.run(_run())


def test_create_chat_waits_past_acknowledgement_for_greeting() -> None:
    def reply(message: dict[str, Any]) -> list[dict[str, Any]]:
        chat_id = message["payload"]["chat"]["chat_id"]
        return [
            turn_frame("add_turn", "g0", chat_id="elsewhere"),
            {
                "command": "create_chat_response",
                "payload": {"chat": {"chat_id": chat_id, "character_id": "ch1"}},
            },
            turn_frame("add_turn", "g1", chat_id=chat_id, candidates=[("k1", "Welcome!", True)]),
        ]

    async def _run() -> None:
        engine = TurnExchangeEngine(ScriptedTransport(reply))
        chat, greeting = await engine.create_chat("ch1", session=SESSION, chat_id="c-new")
        assert chat.chat_id == "c-new"
        assert greeting is not None
        assert greeting.turn_id == "g1"
        assert greeting.text == "Welcome!"

    asyncio.run(_run())


def test_regenerate_ignores_update_turn_for_other_turns() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(
            frames(
                turn_frame("update_turn", "t5", candidates=[("z", "unrelated", True)]),
                turn_frame(
                    "update_turn",
                    "t1",
                    candidates=[("k1", "old", True), ("k2", "new", False)],
                    primary="k2",
                ),
                turn_frame(
                    "update_turn",
                    "t1",
                    candidates=[("k1", "old", True), ("k2", "newer answer", True)],
                    primary="k2",
                ),
            )
        )
        engine = TurnExchangeEngine(transport)

        turn = await engine.regenerate_candidate("ch1", "c1", "t1", session=SESSION)

        assert turn.turn_id == "t1"
        assert turn.primary_candidate_id == "k2"
        assert turn.text == "newer answer"
        assert len(turn.candidates) == 2
        message = transport.sent[0]
        assert message["command"] == "generate_turn_candidate"
        assert message["payload"]["turn_key"] == {"chat_id": "c1", "turn_id": "t1"}
        assert len(message["payload"]["previous_annotations"]) == 22

    asyncio.run(_run())


def test_edit_turn_candidate_returns_updated_turn() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(
            frames(turn_frame("update_turn", "t1", candidates=[("k1", "edited", True)]))
        )
        engine = TurnExchangeEngine(transport)

        turn = await engine.edit_turn_candidate("c1", "t1", "k1", "edited")

        assert turn.text == "edited"
        assert transport.sent[0]["payload"] == {
            "turn_key": {"chat_id": "c1", "turn_id": "t1"},
            "current_candidate_id": "k1",
            "new_candidate_raw_content": "edited",
        }

    asyncio.run(_run())


def test_delete_turns_completes_on_removal_acknowledgement() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(
            frames(
                turn_frame("update_turn", "t3"),
                {"command": "remove_turns_response", "payload": {"chat_id": "c1"}},
            )
        )
        engine = TurnExchangeEngine(transport)

        await engine.delete_turns("c1", ["t1", "t2"])

        assert transport.sent[0]["command"] == "remove_turns"
        assert transport.sent[0]["payload"] == {"chat_id": "c1", "turn_ids": ["t1", "t2"]}

    asyncio.run(_run())


def test_pin_reply_with_wrong_flag_is_not_applied() -> None:
    async def _run() -> None:
        transport = ScriptedTransport(
            frames(turn_frame("update_turn", "t1", is_pinned=False)),
            frames(turn_frame("update_turn", "t1", is_pinned=True)),
        )
        engine = TurnExchangeEngine(transport)

        with pytest.raises(CaiNotAppliedError):
            await engine.set_turn_pin("c1", "t1", True)

        turn = await engine.set_turn_pin("c1", "t1", True)
        assert turn.is_pinned is True
        assert transport.sent[0]["payload"] == {
            "is_pinned": True,
            "turn_key": {"chat_id": "c1", "turn_id": "t1"},
        }

    asyncio.run(_run())


def test_late_frames_of_timed_out_operation_are_discarded() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        engine = TurnExchangeEngine(transport, stale_frame_window=60.0)

        with pytest.raises(CaiTimeoutError):
            await engine.set_turn_pin("c1", "t1", True, timeout=0.05)
        stale_request_id = transport.sent[0]["request_id"]

        def reply(_message: dict[str, Any]) -> list[dict[str, Any]]:
            return [
                turn_frame("update_turn", "t1", is_pinned=True, request_id=stale_request_id),
                turn_frame("add_turn", "t1", candidates=[("late", "late reply", True)]),
                turn_frame("add_turn", "t3", candidates=[("fresh", "fresh reply", True)]),
            ]

        transport.queue_reply(reply)
        turn = await engine.send_message("ch1", "c1", "hi again", session=SESSION)

        assert turn.turn_id == "t3"
        assert turn.text == "fresh reply"
        assert not engine.busy

    asyncio.run(_run())


def test_untagged_reply_to_timed_out_send_is_not_taken_as_next_reply() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        engine = TurnExchangeEngine(transport, stale_frame_window=60.0)

        with pytest.raises(CaiTimeoutError):
            await engine.send_message("ch1", "c1", "first", session=SESSION, timeout=0.05)

        transport.queue_reply(
            frames(
                turn_frame("add_turn", "t-old", candidates=[("old", "late reply to first", False)]),
                turn_frame("add_turn", "t-new", candidates=[("new", "reply to", False)]),
                turn_frame("update_turn", "t-old", candidates=[("old", "late reply to first", True)]),
                turn_frame("update_turn", "t-new", candidates=[("new", "reply to second", True)]),
            )
        )
        turn = await engine.send_message("ch1", "c1", "second", session=SESSION)

        assert turn.turn_id == "t-new"
        assert turn.text == "reply to second"
        assert not engine.busy

    asyncio.run(_run())


def test_untagged_acknowledgement_owed_to_timed_out_operation_is_dropped() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        engine = TurnExchangeEngine(transport, stale_frame_window=60.0)

        with pytest.raises(CaiTimeoutError):
            await engine.set_primary_candidate("c1", "t1", "k2", timeout=0.05)

        transport.queue_reply(
            frames(
                {"command": "ok"},
                {"command": "neo_error", "comment": "candidate k9 not found"},
            )
        )
        with pytest.raises(CaiServerError, match="candidate k9 not found"):
            await engine.set_primary_candidate("c1", "t1", "k9")

        transport.queue_reply(frames({"command": "ok"}))
        await engine.set_primary_candidate("c1", "t1", "k2")
        assert not engine.busy

    asyncio.run(_run())


def test_owed_removal_acknowledgement_only_settles_its_own_chat() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        engine = TurnExchangeEngine(transport, stale_frame_window=60.0)

        with pytest.raises(CaiTimeoutError):
            await engine.delete_turns("c1", ["t1"], timeout=0.05)

        transport.queue_reply(
            frames(
                {"command": "remove_turns_response", "payload": {"chat_id": "c1"}},
                {"command": "remove_turns_response", "payload": {"chat_id": "c2"}},
            )
        )
        await asyncio.wait_for(engine.delete_turns("c2", ["t5"]), timeout=1.0)

        transport.queue_reply(
            frames({"command": "remove_turns_response", "payload": {"chat_id": "c1"}})
        )
        await asyncio.wait_for(engine.delete_turns("c1", ["t2"]), timeout=1.0)
        assert not engine.busy

    asyncio.run(_run())


def test_concurrent_operations_are_serialized() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        engine = TurnExchangeEngine(transport)

        first = asyncio.create_task(engine.set_primary_candidate("c1", "t1", "k2"))
        while not transport.sent:
            await asyncio.sleep(0)
        second = asyncio.create_task(engine.delete_turns("c1", ["t1"]))

        for _ in range(10):
            await asyncio.sleep(0)
        assert [message["command"] for message in transport.sent] == ["update_primary_candidate"]
        assert engine.busy

        transport.push({"command": "ok"})
        await first
        while len(transport.sent) < 2:
            await asyncio.sleep(0)
        assert transport.sent[1]["command"] == "remove_turns"

        transport.push({"command": "remove_turns_response", "payload": {"chat_id": "c1"}})
        await second
        assert not engine.busy

    asyncio.run(_run())


def test_receive_failure_propagates_as_connection_error() -> None:
    async def _run() -> None:
        engine = TurnExchangeEngine(BrokenTransport())
        with pytest.raises(CaiConnectionError):
            await engine.edit_turn_candidate("c1", "t1", "k1", "text")
        assert not engine.busy

    asyncio.run(_run())


def test_malformed_turn_frame_raises_decoding_error() -> None:
    async def _run() -> None:
        engine = TurnExchangeEngine(
            ScriptedTransport(frames({"command": "update_turn", "payload": {"turn": {}}}))
        )
        with pytest.raises(CaiDecodingError):
            await engine.edit_turn_candidate("c1", "t1", "k1", "text")

    asyncio.run(_run())


def test_invalid_arguments_fail_before_any_io() -> None:
    async def _run() -> None:
        transport = ScriptedTransport()
        engine = TurnExchangeEngine(transport)

        with pytest.raises(CaiValidationError):
            await engine.send_message("ch1", "", "hi", session=SESSION)
        with pytest.raises(CaiValidationError):
            await engine.delete_turns("c1", [])
        with pytest.raises(CaiValidationError):
            await engine.set_turn_pin("c1", "t1", True, timeout=0)

        assert transport.sent == []
        assert transport.connect_calls == 0

    asyncio.run(_run())
