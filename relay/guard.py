"""Token counting and the tool-output size guard."""

import json
import logging
import math

import tiktoken

from .report import ContentTooLargeError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIMIT = 100_000
IMAGE_PLACEHOLDER = "[base64 image data removed for token calculation]"

_encoder = None
_encoder_unavailable = False


def _get_encoder():
    """Load the cl100k_base BPE once; None when it cannot be loaded."""
    global _encoder, _encoder_unavailable
    if _encoder is None and not _encoder_unavailable:
        try:
            _encoder = tiktoken.get_encoding("cl100k_base")
        except Exception as e:  # BPE file download fails when offline
            logger.warning("tiktoken encoder unavailable, estimating: %s", e)
            _encoder_unavailable = True
    return _encoder


def count_tokens(text: str) -> int:
    """Count BPE tokens, or ~4 characters per token without an encoder."""
    enc = _get_encoder()
    if enc is None:
        return math.ceil(len(text) / 4)
    return len(enc.encode(text, disallowed_special=()))


def strip_images(value):
    """Return a copy of *value* with base64 image payloads replaced.

    Handles ``{"type": "image", "data": ...}`` blocks and Anthropic-style
    ``{"source": {"type": "base64", "data": ...}}`` blocks at any depth.
    """
    if isinstance(value, list):
        return [strip_images(v) for v in value]
    if not isinstance(value, dict):
        return value

    out = {k: strip_images(v) for k, v in value.items()}
    if out.get("type") == "image" and isinstance(out.get("data"), str):
        out["data"] = IMAGE_PLACEHOLDER
    source = out.get("source")
    if (
        isinstance(source, dict)
        and source.get("type") == "base64"
        and isinstance(source.get("data"), str)
    ):
        out["source"] = {**source, "data": IMAGE_PLACEHOLDER}
    return out


def serialize_result(result) -> str:
    """Tool results travel as text: strings as-is, everything else as JSON."""
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False)


def measure_result(result) -> int:
    """Token count of a tool result with image payloads excluded."""
    if isinstance(result, str):
        stripped = result.lstrip()
        if not stripped.startswith(("{", "[")):
            return count_tokens(result)
        try:
            result = json.loads(result)
        except json.JSONDecodeError:
            return count_tokens(result)
    return count_tokens(serialize_result(strip_images(result)))


def check_tool_result(result, limit: int = DEFAULT_TOKEN_LIMIT) -> int:
    """Raise ContentTooLargeError when *result* exceeds *limit* tokens.

    Returns the measured token count otherwise.
    """
    tokens = measure_result(result)
    if tokens > limit:
        raise ContentTooLargeError(tokens, limit)
    return tokens


def guard_tool_result(name: str, result, limit: int = DEFAULT_TOKEN_LIMIT) -> str:
    """Serialize a tool result, or produce the error text when it is too large."""
    try:
        check_tool_result(result, limit)
    except ContentTooLargeError as e:
        return f'error: Tool "{name}" returned content that exceeds token limit. {e}'
    return serialize_result(result)


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages."""
    total = 0
    for m in messages:
        content = m.get("content", "") or ""
        if not isinstance(content, str):
            content = json.dumps(strip_images(content))
        for tc in m.get("tool_calls") or ():
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += count_tokens(content)
    if tools:
        total += count_tokens(json.dumps(tools))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total
