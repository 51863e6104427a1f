import asyncio
import json
from datetime import UTC, datetime

from chatrelay.relay.events import RelayedReply, sse_event
from chatrelay.relay.prompt import build_prompt


def test_prompt_without_tenant_prompt_is_the_message() -> None:
    assert build_prompt("  hi  ", None) == "  hi  "
    assert build_prompt("hi", "   ") == "hi"


def test_prompt_with_tenant_prompt() -> None:
    assert build_prompt("hi", " You are a pirate. ") == "You are a pirate.\n\nUser: hi"


def test_sse_event_frame() -> None:
    assert sse_event("done", {"ok": True}) == 'event: done\ndata: {"ok":true}\n\n'


def test_relayed_reply_emits_meta_token_done() -> None:
    received_at = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
    reply = RelayedReply(conversation_id="c-1", received_at=received_at, text="Ahoy")

    async def collect() -> list[str]:
        return [frame async for frame in reply.event_stream()]

    frames = asyncio.run(collect())

    assert [frame.split("\n")[0] for frame in frames] == [
        "event: meta",
        "event: token",
        "event: done",
    ]
    meta = json.loads(frames[0].split("\n")[1].removeprefix("data: "))
    assert meta == {
        "ok": True,
        "cache": "miss",
        "receivedAt": "2026-01-01T12:00:00+00:00",
        "conversationId": "c-1",
    }
    assert json.loads(frames[1].split("\n")[1].removeprefix("data: ")) == {"text": "Ahoy"}
