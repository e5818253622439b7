"""
Incremental parsing of streamed chat completions.

The proxy forwards upstream SSE bytes to the client untouched. In parallel the
same bytes go through SSEEventParser, and the decoded chunks rebuild each tool
call in a StreamAccumulator so thought signatures reach the store before the
stream ends.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from signatures import SignatureStore, get_tool_call_signature

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class SSEEventParser:
    """Split a byte stream into the JSON payloads of its ``data:`` lines."""

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, data: bytes) -> list[dict[str, Any]]:
        """Consume a chunk of bytes and return the events it completed."""
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        events = []
        for raw in lines:
            event = self._parse_line(raw)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever is left after the stream closed without a newline."""
        raw, self._buffer = self._buffer, b""
        event = self._parse_line(raw)
        return [event] if event is not None else []

    @staticmethod
    def _parse_line(raw: bytes) -> dict[str, Any] | None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line.startswith(DATA_PREFIX):
            return None

        data = line[len(DATA_PREFIX):].strip()
        if data == DONE_SENTINEL:
            return None

        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"Skipping unparseable stream event: {data[:200]}")
            return None
        return event if isinstance(event, dict) else None


class StreamAccumulator:
    """
    Rebuild tool calls from streamed deltas, one instance per request.

    Slots are keyed by the tool call ``index``. ``arguments`` only grows;
    ``id`` and the signature are replaced only by non-empty values. As soon as
    a slot has both an id and a signature the pair is written to the store,
    and every later delta for that slot writes it again (refreshing the
    timestamp).
    """

    def __init__(self, store: SignatureStore, conversation_key: str):
        self.store = store
        self.conversation_key = conversation_key
        self._slots: dict[int, dict[str, Any]] = {}
        self.committed = 0

    def feed(self, chunk: dict[str, Any]) -> None:
        """Apply one decoded stream chunk."""
        choices = chunk.get("choices")
        if not isinstance(choices, list):
            return
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta") or choice.get("message")
            if not isinstance(delta, dict):
                continue
            tool_calls = delta.get("tool_calls")
            if not isinstance(tool_calls, list):
                continue
            for position, tool_call in enumerate(tool_calls):
                if isinstance(tool_call, dict):
                    self.apply_delta(tool_call, position)

    def apply_delta(self, delta: dict[str, Any], position: int = 0) -> None:
        index = delta.get("index", position)
        if not isinstance(index, int):
            index = position

        slot = self._slots.get(index)
        if slot is None:
            slot = {
                "id": "",
                "type": "function",
                "function": {"name": "", "arguments": ""},
                "token": "",
            }
            self._slots[index] = slot

        if isinstance(delta.get("id"), str) and delta["id"]:
            slot["id"] = delta["id"]
        if isinstance(delta.get("type"), str) and delta["type"]:
            slot["type"] = delta["type"]

        function = delta.get("function")
        if isinstance(function, dict):
            if isinstance(function.get("name"), str) and function["name"]:
                slot["function"]["name"] = function["name"]
            if isinstance(function.get("arguments"), str):
                slot["function"]["arguments"] += function["arguments"]

        token = get_tool_call_signature(delta)
        if token:
            slot["token"] = token

        if slot["id"] and slot["token"]:
            self.store.put(self.conversation_key, slot["id"], slot["token"])
            self.committed += 1
            logger.debug(
                f"[{self.conversation_key}] Stored streamed signature for {slot['id']}"
            )

    def tool_calls(self) -> list[dict[str, Any]]:
        """Return the reconstructed tool calls in index order."""
        return [
            {
                "id": slot["id"],
                "type": slot["type"],
                "function": dict(slot["function"]),
                "token": slot["token"] or None,
            }
            for _, slot in sorted(self._slots.items())
        ]

    def signature_ids(self) -> set[str]:
        """Tool call ids that had a signature committed."""
        return {slot["id"] for slot in self._slots.values() if slot["id"] and slot["token"]}
