"""
Thought signature tracking for GeminiBridge.

Gemini attaches an opaque "thought signature" to the first tool call of each
model turn and requires it to be echoed back when the conversation continues.
OpenAI-compatible clients drop it, so the proxy keeps it here:

- Signatures are partitioned by conversation key (explicit session header, or
  a digest of client IP + user agent)
- Records expire after a TTL and each conversation is capped in size
- Expiry runs inline on every request via sweep(), never on a timer
"""

from __future__ import annotations

import copy
import hashlib
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Injected when no signature was ever captured for a tool call. Gemini skips
# continuity validation for calls carrying this value.
FALLBACK_SIGNATURE = "skip_thought_signature_validator"

DEFAULT_TTL = 3600
DEFAULT_MAX_PER_CONVERSATION = 100
AUTO_KEY_LENGTH = 16


# =============================================================================
# Conversation Keying
# =============================================================================


def derive_conversation_key(
    session_id: str | None,
    client_ip: str | None = None,
    user_agent: str | None = None,
) -> str:
    """
    Derive the cache partition for a request.

    An explicit session id is used verbatim under the ``explicit:`` namespace.
    Otherwise the key is a truncated SHA-256 over client IP and user agent
    under ``auto:``. This is best-effort isolation between clients, not an
    authentication boundary: anyone sharing an IP and user agent shares
    signatures.
    """
    if session_id:
        return f"explicit:{session_id}"

    material = f"{client_ip or ''}|{user_agent or ''}"
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
    return f"auto:{digest[:AUTO_KEY_LENGTH]}"


# =============================================================================
# Signature Store
# =============================================================================


@dataclass
class SignatureRecord:
    """A captured signature and the time it was stored."""

    token: str
    stored_at: float


@dataclass
class _Conversation:
    records: dict[str, SignatureRecord] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)
    # Set once sweep() has unlinked this map from the store
    dead: bool = False


class SignatureStore:
    """
    In-memory signature cache: conversation key → tool call id → record.

    Locking is per conversation. The store-level lock only guards the
    conversation table itself and is never held while records are scanned,
    so a sweep of one conversation does not block reads or writes of another.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        max_per_conversation: int = DEFAULT_MAX_PER_CONVERSATION,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            ttl: Seconds a record stays valid after its last write
            max_per_conversation: Max records kept per conversation (oldest evicted)
            clock: Time source, replaceable in tests
        """
        self.ttl = ttl
        self.max_per_conversation = max_per_conversation
        self.clock = clock
        self._conversations: dict[str, _Conversation] = {}
        self._lock = threading.Lock()

    def get(self, key: str, tool_call_id: str) -> str | None:
        """Return the stored signature for a tool call, if any."""
        with self._lock:
            conversation = self._conversations.get(key)
        if conversation is None:
            return None
        with conversation.lock:
            record = conversation.records.get(tool_call_id)
            return record.token if record else None

    def put(
        self, key: str, tool_call_id: str, token: str, now: float | None = None
    ) -> None:
        """Store a signature, replacing any earlier one for the same tool call."""
        stored_at = self.clock() if now is None else now
        while True:
            with self._lock:
                conversation = self._conversations.get(key)
                if conversation is None:
                    conversation = _Conversation()
                    self._conversations[key] = conversation
            with conversation.lock:
                if conversation.dead:
                    # Lost a race with sweep(); look the key up again
                    continue
                conversation.records[tool_call_id] = SignatureRecord(token, stored_at)
                self._trim(conversation)
                return

    def sweep(self, now: float | None = None) -> int:
        """
        Expire old records and enforce the per-conversation cap.

        Returns the number of records removed.
        """
        now = self.clock() if now is None else now
        cutoff = now - self.ttl
        removed = 0

        with self._lock:
            snapshot = list(self._conversations.items())

        for key, conversation in snapshot:
            with conversation.lock:
                expired = [
                    call_id
                    for call_id, record in conversation.records.items()
                    if record.stored_at < cutoff
                ]
                for call_id in expired:
                    del conversation.records[call_id]
                removed += len(expired)

                if conversation.records:
                    removed += self._trim(conversation)
                    continue

                conversation.dead = True

            with self._lock:
                if self._conversations.get(key) is conversation:
                    del self._conversations[key]

        if removed:
            logger.debug(f"Signature sweep removed {removed} record(s)")
        return removed

    def _trim(self, conversation: _Conversation) -> int:
        """Evict the oldest records beyond the cap. Caller holds the lock."""
        excess = len(conversation.records) - self.max_per_conversation
        if excess <= 0:
            return 0
        oldest = sorted(
            conversation.records.items(), key=lambda item: item[1].stored_at
        )[:excess]
        for call_id, _ in oldest:
            del conversation.records[call_id]
        return excess

    def stats(self) -> dict[str, int]:
        with self._lock:
            conversations = list(self._conversations.values())
        records = 0
        for conversation in conversations:
            with conversation.lock:
                records += len(conversation.records)
        return {"conversations": len(conversations), "signatures": records}

    def __len__(self) -> int:
        with self._lock:
            return len(self._conversations)


# =============================================================================
# Extraction and Injection
# =============================================================================


def get_tool_call_signature(tool_call: dict[str, Any]) -> str | None:
    """Read ``extra_content.google.thought_signature`` from a tool call."""
    extra = tool_call.get("extra_content")
    if not isinstance(extra, dict):
        return None
    google = extra.get("google")
    if not isinstance(google, dict):
        return None
    signature = google.get("thought_signature")
    if isinstance(signature, str) and signature:
        return signature
    return None


def extract_signatures(store: SignatureStore, key: str, payload: Any) -> int:
    """
    Store every signature found in a buffered chat completion response.

    Malformed tool calls are skipped one at a time so a single bad entry does
    not hide the signatures of its siblings. Returns the number stored.
    """
    if not isinstance(payload, dict):
        return 0
    choices = payload.get("choices")
    if not isinstance(choices, list):
        return 0

    stored = 0
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        message = choice.get("message") or choice.get("delta")
        if not isinstance(message, dict):
            continue
        tool_calls = message.get("tool_calls")
        if not isinstance(tool_calls, list):
            continue

        for tool_call in tool_calls:
            if not isinstance(tool_call, dict):
                continue
            call_id = tool_call.get("id")
            if not isinstance(call_id, str) or not call_id:
                continue
            function = tool_call.get("function")
            if not isinstance(function, dict) or not function.get("name"):
                continue
            signature = get_tool_call_signature(tool_call)
            if signature is None:
                continue
            store.put(key, call_id, signature)
            stored += 1
            logger.debug(f"[{key}] Stored signature for {call_id}")

    return stored


@dataclass
class InjectionResult:
    """Outbound request body plus counts of what was injected."""

    body: dict[str, Any]
    injected: int = 0
    fallbacks: int = 0


def inject_signatures(
    store: SignatureStore, key: str, body: dict[str, Any]
) -> InjectionResult:
    """
    Attach signatures to the assistant turns of an outgoing request.

    Only the first tool call of each assistant message carries a signature;
    Gemini puts it there for a parallel call group. A call with nothing
    stored gets FALLBACK_SIGNATURE, replacing whatever the client sent.
    """
    messages = body.get("messages")
    if not isinstance(messages, list):
        return InjectionResult(body=body)

    result = InjectionResult(body={**body})
    new_messages = []
    for message in messages:
        if (
            not isinstance(message, dict)
            or message.get("role") != "assistant"
            or not isinstance(message.get("tool_calls"), list)
            or not message["tool_calls"]
            or not isinstance(message["tool_calls"][0], dict)
        ):
            new_messages.append(message)
            continue

        first, *rest = message["tool_calls"]
        call_id = first.get("id")
        signature = store.get(key, call_id) if isinstance(call_id, str) else None
        if signature is not None:
            result.injected += 1
        else:
            signature = FALLBACK_SIGNATURE
            result.fallbacks += 1

        extra = copy.deepcopy(first.get("extra_content"))
        if not isinstance(extra, dict):
            extra = {}
        google = extra.get("google")
        if not isinstance(google, dict):
            google = {}
        extra["google"] = {**google, "thought_signature": signature}

        new_messages.append(
            {**message, "tool_calls": [{**first, "extra_content": extra}, *rest]}
        )

    result.body["messages"] = new_messages
    return result
