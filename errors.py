"""Error envelopes: Gemini's shape in, OpenAI's shape out."""

import json
from typing import Any

DEFAULT_ERROR_MESSAGE = "Upstream request failed"
DEFAULT_ERROR_TYPE = "upstream_error"


def error_payload(
    message: str, error_type: str = "proxy_error", code: Any = None
) -> dict[str, Any]:
    """Build an OpenAI-style error body for errors raised by the proxy itself."""
    payload: dict[str, Any] = {"error": {"message": message, "type": error_type}}
    if code is not None:
        payload["error"]["code"] = code
    return payload


def translate_error(payload: Any) -> dict[str, Any] | None:
    """
    Rewrite ``{"error": {"code", "message", "status"}}`` (Gemini) into
    ``{"error": {"message", "type", "code"}}`` (OpenAI).

    Returns None when the payload has no error object to translate.
    """
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if not isinstance(error, dict):
        return None

    return {
        "error": {
            "message": error.get("message") or DEFAULT_ERROR_MESSAGE,
            "type": error.get("status") or DEFAULT_ERROR_TYPE,
            "code": error.get("code"),
        }
    }


def translate_error_body(body: bytes) -> bytes:
    """Translate a raw upstream error body, returning it unchanged if it isn't one."""
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return body

    translated = translate_error(payload)
    if translated is None:
        return body
    return json.dumps(translated).encode("utf-8")
