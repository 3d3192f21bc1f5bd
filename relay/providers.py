"""Provider adapter: four streaming wire protocols behind one event model.

Each protocol class turns a neutral ChatRequest into (url, headers, body)
and turns the provider's server-sent events into StreamEvent values:

    content     incremental assistant text
    tool_calls  the turn's complete tool calls, emitted once at end of stream
    usage       token counters for the turn, emitted once at end of stream
    error       transport or provider failure; the stream ends after it
    done        normal end of stream

The adapter never retries. LLMClient.stream_with_retry() is the caller-side
retry wrapper used by the conversation engine.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Iterator

import httpx

from .report import AbortedError, ProviderError

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_TIMEOUT = 600.0

RETRIABLE_STATUS = {408, 409, 429, 529}
_RETRIABLE_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "connection",
    "rate limit",
    "too many requests",
    "overloaded",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)


# ---------------------------------------------------------------------------
# Neutral data model
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "TokenUsage | None") -> "TokenUsage":
        """Accumulate *other* into this object (in place) and return self."""
        if other is not None:
            self.input_tokens += other.input_tokens
            self.output_tokens += other.output_tokens
            self.cache_creation_input_tokens += other.cache_creation_input_tokens
            self.cache_read_input_tokens += other.cache_read_input_tokens
        return self

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class StreamEvent:
    kind: str
    content: str = ""
    tool_calls: list[dict] | None = None
    usage: TokenUsage | None = None
    error: str | None = None
    status: int | None = None
    body: str = ""


def content_event(text: str) -> StreamEvent:
    return StreamEvent("content", content=text)


def error_event(message: str, status: int | None = None, body: str = "") -> StreamEvent:
    return StreamEvent("error", error=message, status=status, body=body)


DONE = StreamEvent("done")


@dataclass
class ChatRequest:
    model: str
    messages: list[dict]
    tools: list[dict] | None = None
    temperature: float | None = None
    max_tokens: int | None = None


def make_tool_call(call_id: str, name: str, arguments: str) -> dict:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": arguments},
    }


def _parse_args(raw: str) -> dict:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


# ---------------------------------------------------------------------------
# SSE framing
# ---------------------------------------------------------------------------


class SSEDecoder:
    """Split a text stream into SSE ``data`` payloads.

    Network reads do not respect line boundaries, so a trailing partial
    line is kept until the next feed() completes it.
    """

    def __init__(self):
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return [d for d in map(self._data, lines) if d is not None]

    def flush(self) -> list[str]:
        rest, self._buffer = self._buffer, ""
        data = self._data(rest)
        return [data] if data is not None else []

    @staticmethod
    def _data(line: str) -> str | None:
        line = line.strip()
        if not line or line.startswith(":"):
            return None
        if not line.startswith("data:"):
            # event:, id:, retry: carry nothing the parsers need
            return None
        return line[5:].strip()


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class Protocol:
    """One wire protocol. Instances hold per-stream parse state."""

    name = ""

    def build_request(
        self, request: ChatRequest, base_url: str, api_key: str | None
    ) -> tuple[str, dict, dict]:
        raise NotImplementedError

    def parse(self, data: dict) -> list[StreamEvent]:
        raise NotImplementedError

    def finish(self) -> list[StreamEvent]:
        raise NotImplementedError


class ChatCompletionsProtocol(Protocol):
    """OpenAI Chat Completions: ``choices[0].delta`` chunks."""

    name = "chat"

    def __init__(self):
        self._calls: dict[int, dict] = {}
        self._usage: TokenUsage | None = None

    def build_request(self, request, base_url, api_key):
        body: dict = {
            "model": request.model,
            "messages": [_chat_message(m) for m in request.messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            body["tools"] = request.tools
            body["tool_choice"] = "auto"
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.max_tokens:
            body["max_tokens"] = request.max_tokens
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return f"{base_url}/chat/completions", headers, body

    def parse(self, data):
        if "error" in data:
            return [error_event(_error_message(data["error"]))]

        if data.get("usage"):
            u = data["usage"]
            details = u.get("prompt_tokens_details") or {}
            self._usage = TokenUsage(
                input_tokens=u.get("prompt_tokens") or 0,
                output_tokens=u.get("completion_tokens") or 0,
                cache_creation_input_tokens=u.get("cache_creation_input_tokens") or 0,
                cache_read_input_tokens=details.get("cached_tokens") or 0,
            )

        choices = data.get("choices") or []
        if not choices:
            return []
        delta = choices[0].get("delta") or {}

        events = []
        if delta.get("content"):
            events.append(content_event(delta["content"]))
        for frag in delta.get("tool_calls") or ():
            idx = frag.get("index", 0)
            buf = self._calls.setdefault(idx, make_tool_call("", "", ""))
            if frag.get("id"):
                buf["id"] = frag["id"]
            fn = frag.get("function") or {}
            if fn.get("name"):
                buf["function"]["name"] += fn["name"]
            if fn.get("arguments"):
                buf["function"]["arguments"] += fn["arguments"]
        return events

    def finish(self):
        events = []
        if self._calls:
            calls = [self._calls[i] for i in sorted(self._calls)]
            for n, call in enumerate(calls):
                call["id"] = call["id"] or f"call_{n}"
                call["function"]["arguments"] = call["function"]["arguments"] or "{}"
            events.append(StreamEvent("tool_calls", tool_calls=calls))
        if self._usage is not None:
            events.append(StreamEvent("usage", usage=self._usage))
        events.append(DONE)
        return events


class ResponsesProtocol(Protocol):
    """OpenAI Responses API: typed ``response.*`` events."""

    name = "responses"

    def __init__(self):
        self._calls: dict[str, dict] = {}
        self._order: list[str] = []
        self._usage: TokenUsage | None = None

    def build_request(self, request, base_url, api_key):
        instructions, items = _responses_input(request.messages)
        body: dict = {"model": request.model, "input": items, "stream": True}
        if instructions:
            body["instructions"] = instructions
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "name": t["function"]["name"],
                    "description": t["function"].get("description", ""),
                    "parameters": t["function"].get("parameters", {}),
                }
                for t in request.tools
            ]
            body["tool_choice"] = "auto"
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.max_tokens:
            body["max_output_tokens"] = request.max_tokens
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return f"{base_url}/responses", headers, body

    def _track(self, key: str, item: dict) -> dict:
        if key not in self._calls:
            self._calls[key] = make_tool_call(
                item.get("call_id") or item.get("id") or key, item.get("name", ""), ""
            )
            self._order.append(key)
        return self._calls[key]

    def parse(self, data):
        kind = data.get("type", "")

        if kind == "response.output_text.delta":
            return [content_event(data["delta"])] if data.get("delta") else []

        if kind in ("response.output_item.added", "response.output_item.done"):
            item = data.get("item") or {}
            if item.get("type") == "function_call":
                call = self._track(item.get("id") or item.get("call_id", ""), item)
                if item.get("arguments"):
                    call["function"]["arguments"] = item["arguments"]
            return []

        if kind == "response.function_call_arguments.delta":
            call = self._calls.get(data.get("item_id", ""))
            if call is not None:
                call["function"]["arguments"] += data.get("delta", "")
            return []

        if kind == "response.function_call_arguments.done":
            call = self._calls.get(data.get("item_id", ""))
            if call is not None and data.get("arguments") is not None:
                call["function"]["arguments"] = data["arguments"]
            return []

        if kind == "response.completed":
            u = (data.get("response") or {}).get("usage") or {}
            details = u.get("input_tokens_details") or {}
            self._usage = TokenUsage(
                input_tokens=u.get("input_tokens") or 0,
                output_tokens=u.get("output_tokens") or 0,
                cache_read_input_tokens=details.get("cached_tokens") or 0,
            )
            return []

        if kind in ("response.failed", "response.cancelled", "error"):
            err = (data.get("response") or {}).get("error") or data.get("error") or data
            return [error_event(_error_message(err) or kind)]

        # reasoning summaries, content part bookkeeping, etc.
        return []

    def finish(self):
        events = []
        if self._order:
            calls = [self._calls[k] for k in self._order]
            for call in calls:
                call["function"]["arguments"] = call["function"]["arguments"] or "{}"
            events.append(StreamEvent("tool_calls", tool_calls=calls))
        if self._usage is not None:
            events.append(StreamEvent("usage", usage=self._usage))
        events.append(DONE)
        return events


class GeminiProtocol(Protocol):
    """Gemini ``streamGenerateContent`` with ``alt=sse``."""

    name = "gemini"

    def __init__(self):
        self._calls: list[dict] = []
        self._usage: TokenUsage | None = None

    def build_request(self, request, base_url, api_key):
        system, contents = _gemini_contents(request.messages)
        body: dict = {"contents": contents}
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        if request.tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": t["function"]["name"],
                            "description": t["function"].get("description", ""),
                            "parameters": _gemini_schema(
                                t["function"].get("parameters", {})
                            ),
                        }
                        for t in request.tools
                    ]
                }
            ]
        generation: dict = {}
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        if request.max_tokens:
            generation["maxOutputTokens"] = request.max_tokens
        if generation:
            body["generationConfig"] = generation
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["x-goog-api-key"] = api_key
        url = f"{base_url}/models/{request.model}:streamGenerateContent?alt=sse"
        return url, headers, body

    def parse(self, data):
        if "error" in data:
            return [error_event(_error_message(data["error"]))]

        if data.get("usageMetadata"):
            u = data["usageMetadata"]
            self._usage = TokenUsage(
                input_tokens=u.get("promptTokenCount") or 0,
                output_tokens=u.get("candidatesTokenCount") or 0,
                cache_read_input_tokens=u.get("cachedContentTokenCount") or 0,
            )

        candidates = data.get("candidates") or []
        if not candidates:
            return []
        events = []
        for part in (candidates[0].get("content") or {}).get("parts") or ():
            if part.get("thought"):
                continue
            if part.get("text"):
                events.append(content_event(part["text"]))
            elif "functionCall" in part:
                fc = part["functionCall"]
                self._calls.append(
                    make_tool_call(
                        f"call_{len(self._calls)}",
                        fc.get("name", ""),
                        json.dumps(fc.get("args") or {}),
                    )
                )
        return events

    def finish(self):
        events = []
        if self._calls:
            events.append(StreamEvent("tool_calls", tool_calls=list(self._calls)))
        if self._usage is not None:
            events.append(StreamEvent("usage", usage=self._usage))
        events.append(DONE)
        return events


class AnthropicProtocol(Protocol):
    """Anthropic Messages API: ``message_start`` / ``content_block_*`` events."""

    name = "anthropic"
    default_max_tokens = 4096

    def __init__(self):
        self._blocks: dict[int, dict] = {}
        self._usage = TokenUsage()
        self._saw_usage = False

    def build_request(self, request, base_url, api_key):
        system, messages = _anthropic_messages(request.messages)
        body: dict = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens or self.default_max_tokens,
            "stream": True,
        }
        if system:
            body["system"] = system
        if request.tools:
            body["tools"] = [
                {
                    "name": t["function"]["name"],
                    "description": t["function"].get("description", ""),
                    "input_schema": t["function"].get(
                        "parameters", {"type": "object", "properties": {}}
                    ),
                }
                for t in request.tools
            ]
        if request.temperature is not None:
            body["temperature"] = request.temperature
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if api_key:
            headers["x-api-key"] = api_key
        return f"{base_url}/messages", headers, body

    def parse(self, data):
        kind = data.get("type", "")

        if kind == "message_start":
            u = (data.get("message") or {}).get("usage") or {}
            self._saw_usage = True
            self._usage.input_tokens = u.get("input_tokens") or 0
            self._usage.cache_creation_input_tokens = (
                u.get("cache_creation_input_tokens") or 0
            )
            self._usage.cache_read_input_tokens = u.get("cache_read_input_tokens") or 0
            self._usage.output_tokens = u.get("output_tokens") or 0
            return []

        if kind == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                self._blocks[data.get("index", 0)] = make_tool_call(
                    block.get("id", ""), block.get("name", ""), ""
                )
            return []

        if kind == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [content_event(delta["text"])]
            if delta.get("type") == "input_json_delta":
                call = self._blocks.get(data.get("index", 0))
                if call is not None:
                    call["function"]["arguments"] += delta.get("partial_json", "")
            return []

        if kind == "message_delta":
            u = data.get("usage") or {}
            if "output_tokens" in u:
                self._saw_usage = True
                self._usage.output_tokens = u["output_tokens"] or 0
            return []

        if kind == "error":
            return [error_event(_error_message(data.get("error") or data))]

        # ping, content_block_stop, message_stop, thinking deltas
        return []

    def finish(self):
        events = []
        if self._blocks:
            calls = [self._blocks[i] for i in sorted(self._blocks)]
            for call in calls:
                call["function"]["arguments"] = call["function"]["arguments"] or "{}"
            events.append(StreamEvent("tool_calls", tool_calls=calls))
        if self._saw_usage:
            events.append(StreamEvent("usage", usage=self._usage))
        events.append(DONE)
        return events


PROTOCOLS: dict[str, type[Protocol]] = {
    cls.name: cls
    for cls in (
        ChatCompletionsProtocol,
        ResponsesProtocol,
        GeminiProtocol,
        AnthropicProtocol,
    )
}


# ---------------------------------------------------------------------------
# Request conversion helpers
# ---------------------------------------------------------------------------


def _error_message(err) -> str:
    if isinstance(err, dict):
        return str(err.get("message") or err.get("type") or json.dumps(err))
    return str(err)


def _chat_message(m: dict) -> dict:
    out = {"role": m["role"], "content": m.get("content") or ""}
    if m.get("tool_calls"):
        out["tool_calls"] = m["tool_calls"]
    if m.get("tool_call_id"):
        out["tool_call_id"] = m["tool_call_id"]
    return out


def _system_text(messages: list[dict]) -> str:
    return "\n\n".join(
        m.get("content") or "" for m in messages if m["role"] == "system"
    )


def _responses_input(messages: list[dict]) -> tuple[str, list[dict]]:
    items: list[dict] = []
    for m in messages:
        role = m["role"]
        content = m.get("content") or ""
        if role == "system":
            continue
        if role == "user":
            items.append(
                {"role": "user", "content": [{"type": "input_text", "text": content}]}
            )
        elif role == "assistant":
            if content:
                items.append(
                    {
                        "role": "assistant",
                        "content": [{"type": "output_text", "text": content}],
                    }
                )
            for tc in m.get("tool_calls") or ():
                items.append(
                    {
                        "type": "function_call",
                        "call_id": tc["id"],
                        "name": tc["function"]["name"],
                        "arguments": tc["function"]["arguments"],
                    }
                )
        elif role == "tool":
            items.append(
                {
                    "type": "function_call_output",
                    "call_id": m["tool_call_id"],
                    "output": content,
                }
            )
    return _system_text(messages), items


_GEMINI_DROP_KEYS = {"default", "additionalProperties", "$schema", "minItems"}


def _gemini_schema(schema):
    """Strip JSON Schema keywords the Gemini function schema rejects."""
    if isinstance(schema, dict):
        return {
            k: _gemini_schema(v) for k, v in schema.items() if k not in _GEMINI_DROP_KEYS
        }
    if isinstance(schema, list):
        return [_gemini_schema(v) for v in schema]
    return schema


def _gemini_contents(messages: list[dict]) -> tuple[str, list[dict]]:
    contents: list[dict] = []
    call_names: dict[str, str] = {}
    for m in messages:
        role = m["role"]
        content = m.get("content") or ""
        if role == "system":
            continue
        if role == "user":
            contents.append({"role": "user", "parts": [{"text": content}]})
        elif role == "assistant":
            parts: list[dict] = []
            if content:
                parts.append({"text": content})
            for tc in m.get("tool_calls") or ():
                call_names[tc["id"]] = tc["function"]["name"]
                parts.append(
                    {
                        "functionCall": {
                            "name": tc["function"]["name"],
                            "args": _parse_args(tc["function"]["arguments"]),
                        }
                    }
                )
            contents.append({"role": "model", "parts": parts or [{"text": ""}]})
        elif role == "tool":
            part = {
                "functionResponse": {
                    "name": call_names.get(m.get("tool_call_id", ""), "unknown"),
                    "response": {"content": content},
                }
            }
            prev = contents[-1] if contents else None
            if prev and prev["role"] == "user" and "functionResponse" in prev["parts"][0]:
                prev["parts"].append(part)
            else:
                contents.append({"role": "user", "parts": [part]})
    return _system_text(messages), contents


def _anthropic_messages(messages: list[dict]) -> tuple[str, list[dict]]:
    out: list[dict] = []
    for m in messages:
        role = m["role"]
        content = m.get("content") or ""
        if role == "system":
            continue
        if role == "user":
            out.append({"role": "user", "content": content})
        elif role == "assistant":
            blocks: list[dict] = []
            if content:
                blocks.append({"type": "text", "text": content})
            for tc in m.get("tool_calls") or ():
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": tc["id"],
                        "name": tc["function"]["name"],
                        "input": _parse_args(tc["function"]["arguments"]),
                    }
                )
            out.append({"role": "assistant", "content": blocks or content})
        elif role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": m["tool_call_id"],
                "content": content,
            }
            prev = out[-1] if out else None
            if (
                prev
                and prev["role"] == "user"
                and isinstance(prev["content"], list)
                and prev["content"][0].get("type") == "tool_result"
            ):
                prev["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})
    return _system_text(messages), out


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


def iter_events(protocol: Protocol, chunks: Iterable[str]) -> Iterator[StreamEvent]:
    """Run SSE text chunks through *protocol*, ending with done or error."""
    decoder = SSEDecoder()

    def _payloads():
        for chunk in chunks:
            yield from decoder.feed(chunk)
        yield from decoder.flush()

    for data in _payloads():
        if data == "[DONE]":
            break
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("skipping malformed SSE payload: %.200s", data)
            continue
        if not isinstance(payload, dict):
            continue
        for event in protocol.parse(payload):
            yield event
            if event.kind == "error":
                return
    yield from protocol.finish()


def is_retriable(event: StreamEvent) -> bool:
    """Network failures, timeouts, rate limits and 5xx responses are retriable."""
    if event.status is not None:
        return event.status in RETRIABLE_STATUS or event.status >= 500
    msg = (event.error or "").lower()
    return any(marker in msg for marker in _RETRIABLE_MARKERS)


class LLMClient:
    """Streaming client for one model on one provider protocol."""

    def __init__(
        self,
        *,
        provider: str,
        model: str,
        base_url: str,
        api_key: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.Client | None = None,
    ):
        if provider not in PROTOCOLS:
            raise ValueError(f"unknown provider protocol {provider!r}")
        self.provider = provider
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._http = http_client or httpx.Client(timeout=timeout)

    def with_model(self, model: str | None) -> "LLMClient":
        """Same provider and connection, different model (basic/compact)."""
        if not model or model == self.model:
            return self
        return LLMClient(
            provider=self.provider,
            model=model,
            base_url=self.base_url,
            api_key=self.api_key,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
            max_retries=self.max_retries,
            retry_base_delay=self.retry_base_delay,
            http_client=self._http,
        )

    def close(self) -> None:
        self._http.close()

    def stream(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        *,
        max_tokens: int | None = None,
    ) -> Iterator[StreamEvent]:
        """Open one HTTP stream and yield normalized events. Never retries."""
        protocol = PROTOCOLS[self.provider]()
        request = ChatRequest(
            model=self.model,
            messages=messages,
            tools=tools or None,
            temperature=self.temperature,
            max_tokens=max_tokens or self.max_output_tokens,
        )
        url, headers, body = protocol.build_request(
            request, self.base_url, self.api_key
        )
        headers["Accept"] = "text/event-stream"
        try:
            with self._http.stream("POST", url, headers=headers, json=body) as resp:
                if not resp.is_success:
                    text = resp.read().decode("utf-8", errors="replace")
                    yield error_event(
                        f"HTTP {resp.status_code}: {text[:1000]}",
                        status=resp.status_code,
                        body=text,
                    )
                    return
                yield from iter_events(protocol, resp.iter_text())
        except httpx.TimeoutException as e:
            yield error_event(f"request timeout: {e}")
        except httpx.HTTPError as e:
            yield error_event(f"network error: {e}")

    def stream_with_retry(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        *,
        max_tokens: int | None = None,
        abort=None,
        on_retry=None,
    ) -> Iterator[StreamEvent]:
        """stream() with exponential backoff on retriable errors.

        A failed attempt is retried only if it yielded nothing before the
        error. *abort* is a threading.Event; tripping it during a backoff
        wait raises AbortedError. *on_retry(attempt, delay, event)* is
        called before each wait.
        """
        attempt = 0
        while True:
            yielded = False
            failed: StreamEvent | None = None
            events = self.stream(messages, tools, max_tokens=max_tokens)
            try:
                for event in events:
                    if (
                        event.kind == "error"
                        and not yielded
                        and attempt < self.max_retries
                        and is_retriable(event)
                    ):
                        failed = event
                        break
                    yielded = True
                    yield event
            finally:
                events.close()
            if failed is None:
                return

            delay = self.retry_base_delay * (2**attempt)
            attempt += 1
            logger.info(
                "retrying %s request (attempt %d) in %.1fs: %s",
                self.provider,
                attempt,
                delay,
                failed.error,
            )
            if on_retry is not None:
                on_retry(attempt, delay, failed)
            if abort is not None:
                if abort.wait(delay):
                    raise AbortedError("aborted while waiting to retry")
            else:
                time.sleep(delay)

    def complete(
        self,
        messages: list[dict],
        *,
        max_tokens: int | None = None,
        abort=None,
    ) -> tuple[str, TokenUsage]:
        """Drain a tool-less stream into (text, usage). Raises ProviderError."""
        parts: list[str] = []
        usage = TokenUsage()
        for event in self.stream_with_retry(
            messages, max_tokens=max_tokens, abort=abort
        ):
            if event.kind == "content":
                parts.append(event.content)
            elif event.kind == "usage":
                usage.add(event.usage)
            elif event.kind == "error":
                raise ProviderError(event.error or "stream error", event.status, event.body)
        return "".join(parts), usage


@dataclass
class TurnResult:
    """One drained model turn."""

    content: str = ""
    tool_calls: list[dict] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
