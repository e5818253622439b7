"""Tests for conversation keying, the signature store, extraction and injection."""

import threading

import pytest

from signatures import (
    FALLBACK_SIGNATURE,
    SignatureStore,
    derive_conversation_key,
    extract_signatures,
    get_tool_call_signature,
    inject_signatures,
)

MINUTE = 60.0
T0 = 1_700_000_000.0


def signed_call(call_id: str, token: str | None = None, name: str = "read_file") -> dict:
    call = {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": "{}"},
    }
    if token is not None:
        call["extra_content"] = {"google": {"thought_signature": token}}
    return call


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestConversationKeying:
    """Tests for derive_conversation_key."""

    def test_explicit_id_used_verbatim(self) -> None:
        """Test an explicit session id is namespaced, not hashed."""
        assert derive_conversation_key("my session/1") == "explicit:my session/1"

    def test_explicit_id_deterministic(self) -> None:
        """Test the same explicit id always maps to the same key."""
        assert derive_conversation_key("abc", "1.2.3.4", "a") == derive_conversation_key(
            "abc", "5.6.7.8", "b"
        )

    def test_auto_key_format(self) -> None:
        """Test auto keys are a fixed-length lowercase hex digest."""
        key = derive_conversation_key(None, "10.0.0.1", "curl/8.0")
        prefix, digest = key.split(":")
        assert prefix == "auto"
        assert len(digest) == 16
        assert digest == digest.lower()
        int(digest, 16)

    def test_auto_key_deterministic(self) -> None:
        """Test the same address and agent give the same key."""
        assert derive_conversation_key(None, "10.0.0.1", "curl/8.0") == (
            derive_conversation_key(None, "10.0.0.1", "curl/8.0")
        )

    def test_different_agent_different_key(self) -> None:
        """Test a different user agent gives a different key."""
        assert derive_conversation_key(None, "10.0.0.1", "curl/8.0") != (
            derive_conversation_key(None, "10.0.0.1", "httpie/3.0")
        )

    def test_namespaces_never_collide(self) -> None:
        """Test an explicit id that looks like an auto key stays distinct."""
        auto = derive_conversation_key(None, "10.0.0.1", "curl/8.0")
        explicit = derive_conversation_key(auto.split(":")[1])
        assert auto != explicit

    def test_missing_metadata(self) -> None:
        """Test keying works with no address or agent at all."""
        assert derive_conversation_key(None).startswith("auto:")
        assert derive_conversation_key("") == derive_conversation_key(None)


class TestSignatureStore:
    """Tests for SignatureStore."""

    def test_put_and_get(self) -> None:
        """Test a stored token is returned for its conversation only."""
        store = SignatureStore()
        store.put("a", "call_1", "tok", now=T0)
        assert store.get("a", "call_1") == "tok"
        assert store.get("b", "call_1") is None
        assert store.get("a", "call_2") is None

    def test_put_overwrites(self) -> None:
        """Test later writes replace the token and timestamp."""
        store = SignatureStore()
        store.put("a", "call_1", "old", now=T0)
        store.put("a", "call_1", "new", now=T0 + 50 * MINUTE)
        assert store.get("a", "call_1") == "new"
        store.sweep(now=T0 + 70 * MINUTE)
        assert store.get("a", "call_1") == "new"

    def test_ttl(self) -> None:
        """Test a record survives 59 minutes and is gone after 61."""
        store = SignatureStore()
        store.put("a", "call_1", "tok", now=T0)

        store.sweep(now=T0 + 59 * MINUTE)
        assert store.get("a", "call_1") == "tok"

        store.sweep(now=T0 + 61 * MINUTE)
        assert store.get("a", "call_1") is None

    def test_sweep_removes_empty_conversations(self) -> None:
        """Test the store never keeps an empty conversation map."""
        store = SignatureStore()
        store.put("a", "call_1", "tok", now=T0)
        store.put("b", "call_1", "tok", now=T0 + 30 * MINUTE)

        removed = store.sweep(now=T0 + 61 * MINUTE)

        assert removed == 1
        assert len(store) == 1
        assert store.stats() == {"conversations": 1, "signatures": 1}

    def test_cap_evicts_oldest(self) -> None:
        """Test the 101st signature evicts exactly the oldest one."""
        store = SignatureStore(max_per_conversation=100)
        for i in range(101):
            store.put("a", f"call_{i}", f"tok_{i}", now=T0 + i)

        store.sweep(now=T0 + 200)

        assert store.stats()["signatures"] == 100
        assert store.get("a", "call_0") is None
        assert store.get("a", "call_1") == "tok_1"
        assert store.get("a", "call_100") == "tok_100"

    def test_cap_enforced_by_sweep(self) -> None:
        """Test sweep trims a conversation that is over the cap."""
        store = SignatureStore(max_per_conversation=5)
        for i in range(5):
            store.put("a", f"call_{i}", "tok", now=T0 + i)
        store.max_per_conversation = 3

        assert store.sweep(now=T0 + 10) == 2
        assert store.get("a", "call_0") is None
        assert store.get("a", "call_1") is None
        assert store.get("a", "call_2") == "tok"

    def test_uses_injected_clock(self) -> None:
        """Test put and sweep default to the injected clock."""
        clock = FakeClock()
        store = SignatureStore(ttl=10, clock=clock)
        store.put("a", "call_1", "tok")

        clock.now += 11
        store.sweep()

        assert store.get("a", "call_1") is None

    def test_put_after_sweep_recreates_conversation(self) -> None:
        """Test a conversation removed by sweep can be written again."""
        store = SignatureStore(ttl=10)
        store.put("a", "call_1", "tok", now=T0)
        store.sweep(now=T0 + 20)
        store.put("a", "call_2", "tok2", now=T0 + 21)
        assert store.get("a", "call_2") == "tok2"
        assert len(store) == 1

    def test_concurrent_writers(self) -> None:
        """Test parallel puts across conversations lose nothing."""
        store = SignatureStore(max_per_conversation=1000)

        def writer(conversation: str) -> None:
            for i in range(200):
                store.put(conversation, f"call_{i}", f"tok_{i}")
                if i % 50 == 0:
                    store.sweep()

        threads = [threading.Thread(target=writer, args=(f"c{n}",)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.stats() == {"conversations": 8, "signatures": 1600}


class TestExtractSignatures:
    """Tests for extraction from buffered responses."""

    def test_extracts_from_all_choices(self) -> None:
        """Test every tool call with a signature is stored."""
        store = SignatureStore()
        payload = {
            "choices": [
                {"message": {"tool_calls": [signed_call("c1", "t1"), signed_call("c2")]}},
                {"message": {"tool_calls": [signed_call("c3", "t3")]}},
            ]
        }
        assert extract_signatures(store, "k", payload) == 2
        assert store.get("k", "c1") == "t1"
        assert store.get("k", "c2") is None
        assert store.get("k", "c3") == "t3"

    def test_malformed_entries_skipped_individually(self) -> None:
        """Test bad tool calls don't stop extraction of their siblings."""
        store = SignatureStore()
        no_function = signed_call("c2", "t2")
        del no_function["function"]
        nameless = signed_call("c3", "t3")
        nameless["function"] = {"arguments": "{}"}
        payload = {
            "choices": [
                {
                    "message": {
                        "tool_calls": [
                            "not a dict",
                            signed_call("", "t0"),
                            {"function": {"name": "x"}, "extra_content": {"google": {"thought_signature": "t"}}},
                            no_function,
                            nameless,
                            {"id": "c4", "function": {"name": "x"}, "extra_content": "bad"},
                            signed_call("c5", "t5"),
                        ]
                    }
                },
                "not a choice",
                {"message": None},
                {"message": {"tool_calls": "nope"}},
            ]
        }
        assert extract_signatures(store, "k", payload) == 1
        assert store.get("k", "c5") == "t5"

    @pytest.mark.parametrize("payload", [None, [], "text", {}, {"choices": "x"}])
    def test_non_completion_payloads(self, payload: object) -> None:
        """Test payloads without choices store nothing."""
        assert extract_signatures(SignatureStore(), "k", payload) == 0


class TestInjectSignatures:
    """Tests for injection into outgoing requests."""

    def test_only_first_tool_call_gets_signature(self) -> None:
        """Test A gets its stored token and B gets nothing."""
        store = SignatureStore()
        store.put("k", "A", "tok_a")
        body = {
            "model": "gemini-2.5-pro",
            "messages": [
                {"role": "user", "content": "hi"},
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [signed_call("A"), signed_call("B")],
                },
            ],
        }

        result = inject_signatures(store, "k", body)

        calls = result.body["messages"][1]["tool_calls"]
        assert get_tool_call_signature(calls[0]) == "tok_a"
        assert "extra_content" not in calls[1]
        assert result.injected == 1
        assert result.fallbacks == 0
        assert result.body["model"] == "gemini-2.5-pro"
        assert result.body["messages"][0] == {"role": "user", "content": "hi"}

    def test_fallback_signature(self) -> None:
        """Test a first call with nothing stored gets the sentinel."""
        body = {"messages": [{"role": "assistant", "tool_calls": [signed_call("X")]}]}
        result = inject_signatures(SignatureStore(), "k", body)
        call = result.body["messages"][0]["tool_calls"][0]
        assert get_tool_call_signature(call) == FALLBACK_SIGNATURE
        assert result.fallbacks == 1

    def test_client_signature_replaced_when_nothing_stored(self) -> None:
        """Test an unknown call gets the sentinel even if the client sent a signature."""
        body = {"messages": [{"role": "assistant", "tool_calls": [signed_call("X", "from_client")]}]}
        result = inject_signatures(SignatureStore(), "k", body)
        call = result.body["messages"][0]["tool_calls"][0]
        assert get_tool_call_signature(call) == FALLBACK_SIGNATURE
        assert result.fallbacks == 1
        assert result.injected == 0

    def test_stored_signature_wins_over_client(self) -> None:
        """Test the captured signature replaces whatever the client sent."""
        store = SignatureStore()
        store.put("k", "X", "captured")
        body = {"messages": [{"role": "assistant", "tool_calls": [signed_call("X", "stale")]}]}
        call = inject_signatures(store, "k", body).body["messages"][0]["tool_calls"][0]
        assert get_tool_call_signature(call) == "captured"

    def test_other_extra_content_preserved(self) -> None:
        """Test unrelated extra_content keys survive injection."""
        first = signed_call("X")
        first["extra_content"] = {"other": 1, "google": {"cached": True}}
        body = {"messages": [{"role": "assistant", "tool_calls": [first]}]}
        call = inject_signatures(SignatureStore(), "k", body).body["messages"][0]["tool_calls"][0]
        assert call["extra_content"] == {
            "other": 1,
            "google": {"cached": True, "thought_signature": FALLBACK_SIGNATURE},
        }
        assert first["extra_content"] == {"other": 1, "google": {"cached": True}}

    def test_non_assistant_and_plain_messages_untouched(self) -> None:
        """Test messages without assistant tool calls pass through."""
        messages = [
            {"role": "system", "content": "s"},
            {"role": "assistant", "content": "no tools"},
            {"role": "assistant", "tool_calls": []},
            {"role": "tool", "tool_call_id": "A", "content": "done"},
            "garbage",
        ]
        result = inject_signatures(SignatureStore(), "k", {"messages": messages})
        assert result.body["messages"] == messages
        assert result.injected == result.fallbacks == 0

    def test_input_body_not_mutated(self) -> None:
        """Test injection returns a new body."""
        body = {"messages": [{"role": "assistant", "tool_calls": [signed_call("A")]}]}
        inject_signatures(SignatureStore(), "k", body)
        assert "extra_content" not in body["messages"][0]["tool_calls"][0]

    def test_body_without_messages(self) -> None:
        """Test bodies lacking a messages list are returned as-is."""
        body = {"input": "embed me"}
        assert inject_signatures(SignatureStore(), "k", body).body is body
