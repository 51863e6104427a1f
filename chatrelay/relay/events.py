import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_event(name: str, payload: dict[str, object]) -> str:
    return f"event: {name}\ndata: {json.dumps(payload, separators=(',', ':'))}\n\n"


@dataclass(frozen=True)
class RelayedReply:
    """A generated reply that is ready to be streamed."""

    conversation_id: str
    received_at: datetime
    text: str

    def events(self) -> list[str]:
        return [
            sse_event(
                "meta",
                {
                    "ok": True,
                    "cache": "miss",
                    "receivedAt": self.received_at.isoformat(),
                    "conversationId": self.conversation_id,
                },
            ),
            sse_event("token", {"text": self.text}),
            sse_event("done", {"ok": True}),
        ]

    async def event_stream(self) -> AsyncIterator[str]:
        for frame in self.events():
            yield frame
