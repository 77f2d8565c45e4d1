"""Turn one model reply, streamed or whole, into visible text plus tool calls.

Tool calls arrive in one of two encodings and are normalized to the same
``ToolCall`` list:

* structured ``tool_calls`` fields, streamed as fragments keyed by index;
* inline JSON between ``<@TOOL_CALL>`` and ``</@TOOL_CALL>`` inside the
  assistant text, for transports without native tool calling.
"""

import dataclasses
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import ConfigError, TransportError
from .messages import ToolCall, new_call_id

logger = logging.getLogger(__name__)

START_MARKER = "<@TOOL_CALL>"
END_MARKER = "</@TOOL_CALL>"

PROVIDERS = ("openai", "openrouter", "azure", "lmstudio")
LMSTUDIO_DEFAULT_URL = "http://127.0.0.1:1234"


def _get(obj, key, default=None):
    """Read a field from either a dict or an attribute-style response object."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


@dataclass
class TurnResponse:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None


# ---------------------------------------------------------------------------
# Inline delimited-text protocol
# ---------------------------------------------------------------------------


def parse_inline_payload(payload: str) -> list[ToolCall] | None:
    """Parse the JSON found between the markers.

    Accepts a single ``{"name", "arguments"}`` object or an array of them.
    Returns None when the payload is not a valid tool-call description.
    """
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, TypeError):
        return None

    entries = data if isinstance(data, list) else [data]
    calls = []
    for entry in entries:
        if not isinstance(entry, dict):
            return None
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            return None
        arguments = entry.get("arguments")
        if arguments is None:
            arguments = "{}"
        elif not isinstance(arguments, str):
            # Not double-encoded; accept the object as-is.
            arguments = json.dumps(arguments)
        call_id = entry.get("id")
        if not isinstance(call_id, str) or not call_id:
            call_id = new_call_id()
        calls.append(ToolCall(id=call_id, name=name, arguments=arguments))
    return calls


class InlineToolCallParser:
    """Incremental scanner for inline tool-call blocks.

    Feed it text chunks in delivery order. Text outside blocks is handed to
    ``on_text`` as soon as it is known not to be the start of a marker;
    the markers themselves are never emitted.
    """

    def __init__(self, on_text: Callable[[str], Any] | None = None):
        self._on_text = on_text
        self._buffer = ""
        self._in_block = False
        self._text: list[str] = []
        self.tool_calls: list[ToolCall] = []
        self.failed_blocks = 0

    @property
    def text(self) -> str:
        return "".join(self._text)

    def feed(self, chunk: str) -> None:
        if not chunk:
            return
        self._buffer += chunk
        self._drain(final=False)

    def finish(self) -> None:
        """Flush whatever is left once the stream has ended."""
        self._drain(final=True)

    def _emit(self, text: str) -> None:
        if not text:
            return
        self._text.append(text)
        if self._on_text is not None:
            self._on_text(text)

    def _drain(self, final: bool) -> None:
        while True:
            if not self._in_block:
                idx = self._buffer.find(START_MARKER)
                if idx >= 0:
                    self._emit(self._buffer[:idx])
                    self._buffer = self._buffer[idx + len(START_MARKER) :]
                    self._in_block = True
                    continue
                if final:
                    self._emit(self._buffer)
                    self._buffer = ""
                elif len(self._buffer) > len(START_MARKER):
                    # Hold back a tail that could still be the start of a split marker.
                    safe = len(self._buffer) - len(START_MARKER) + 1
                    self._emit(self._buffer[:safe])
                    self._buffer = self._buffer[safe:]
                return

            idx = self._buffer.find(END_MARKER)
            if idx >= 0:
                payload = self._buffer[:idx]
                self._buffer = self._buffer[idx + len(END_MARKER) :]
                self._in_block = False
                self._close_block(payload)
                continue
            if final:
                # Unterminated block: treat the stream end as the closing marker.
                payload, self._buffer = self._buffer, ""
                self._in_block = False
                self._close_block(payload)
            return

    def _close_block(self, payload: str) -> None:
        calls = parse_inline_payload(payload)
        if calls is None:
            logger.debug("malformed inline tool call, keeping it as text: %.200r", payload)
            self.failed_blocks += 1
            self._emit(payload)
            return
        self.tool_calls.extend(calls)


def parse_inline_tool_calls(text: str) -> tuple[str, list[ToolCall]]:
    """One-shot helper: split a complete reply into visible text and tool calls."""
    parser = InlineToolCallParser()
    parser.feed(text or "")
    parser.finish()
    return parser.text, parser.tool_calls


# ---------------------------------------------------------------------------
# Structured tool-call fields
# ---------------------------------------------------------------------------


class ToolCallAccumulator:
    """Reassemble structured tool calls from fragments keyed by index.

    The id and name are taken from the first fragment that carries them;
    argument text is concatenated across fragments.
    """

    def __init__(self):
        self._parts: dict[int, dict[str, str]] = {}

    def add(self, fragment, position: int | None = None) -> None:
        index = position if position is not None else _get(fragment, "index")
        if index is None:
            index = len(self._parts)
        part = self._parts.setdefault(index, {"id": "", "name": "", "arguments": ""})
        call_id = _get(fragment, "id")
        if call_id and not part["id"]:
            part["id"] = call_id
        fn = _get(fragment, "function")
        name = _get(fn, "name")
        if name and not part["name"]:
            part["name"] = name
        arguments = _get(fn, "arguments")
        if arguments:
            part["arguments"] += arguments

    def __len__(self) -> int:
        return len(self._parts)

    def tool_calls(self) -> list[ToolCall]:
        return [
            ToolCall(
                id=part["id"] or new_call_id(),
                name=part["name"],
                arguments=part["arguments"] or "{}",
            )
            for _, part in sorted(self._parts.items())
        ]


def ensure_unique_ids(calls: list[ToolCall]) -> list[ToolCall]:
    """Replace missing or repeated ids so every call in a turn is addressable."""
    seen: set[str] = set()
    result = []
    for call in calls:
        if not call.id or call.id in seen:
            call = dataclasses.replace(call, id=new_call_id())
        seen.add(call.id)
        result.append(call)
    return result


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


def resolve_model(
    provider: str, model: str, *, api_key: str | None = None, base_url: str | None = None
) -> tuple[str, dict]:
    """Map a provider and model id to a LiteLLM model string and connection kwargs."""
    if provider == "openai":
        model_str = model if model.startswith("openai/") else f"openai/{model}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider == "openrouter":
        # Only strip a doubled prefix; "openrouter/free" is a real model id.
        bare_id = (
            model[len("openrouter/") :]
            if model.startswith("openrouter/openrouter/")
            else model
        )
        model_str = f"openrouter/{bare_id}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider == "azure":
        if not base_url:
            raise ConfigError("--base-url is required when --provider is azure")
        model_str = f"azure/{model.removeprefix('azure/')}"
        kwargs = {"api_key": api_key, "api_base": base_url}
    elif provider == "lmstudio":
        model_str = f"openai/{model}"
        kwargs = {
            "api_base": f"{base_url or LMSTUDIO_DEFAULT_URL}/v1",
            "api_key": "lm-studio",
        }
    else:
        raise ConfigError(f"unknown provider {provider!r}")
    return model_str, kwargs


async def _litellm_completion(**kwargs):
    import litellm

    litellm.suppress_debug_info = True
    return await litellm.acompletion(**kwargs)


class ResponseConsumer:
    """Obtain one assistant turn from the remote model.

    ``completion`` is the awaitable used to reach the model; it defaults to
    ``litellm.acompletion`` and is swapped out in tests.
    """

    def __init__(
        self,
        *,
        provider: str = "openai",
        api_key: str | None = None,
        base_url: str | None = None,
        stream: bool = True,
        tool_protocol: str = "native",
        temperature: float | None = None,
        completion=None,
    ):
        if tool_protocol not in ("native", "inline"):
            raise ConfigError(f"unknown tool protocol {tool_protocol!r}")
        self.provider = provider
        self.api_key = api_key
        self.base_url = base_url
        self.stream = stream
        self.tool_protocol = tool_protocol
        self.temperature = temperature
        self._completion = completion or _litellm_completion

    async def get_response(
        self,
        messages: list[dict],
        model: str,
        tools: list[dict] | None = None,
        on_text: Callable[[str], Any] | None = None,
    ) -> TurnResponse:
        model_str, kwargs = resolve_model(
            self.provider, model, api_key=self.api_key, base_url=self.base_url
        )
        request = dict(model=model_str, messages=messages, stream=self.stream, **kwargs)
        if tools and self.tool_protocol == "native":
            request["tools"] = tools
            request["tool_choice"] = "auto"
        if self.temperature is not None:
            request["temperature"] = self.temperature

        logger.debug(
            "requesting %s (%d messages, stream=%s)", model_str, len(messages), self.stream
        )
        try:
            response = await self._completion(**request)
            if self.stream:
                return await self._consume_stream(response, on_text)
            return self._consume_message(response, on_text)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(model, str(e)) from e

    async def _consume_stream(self, stream, on_text) -> TurnResponse:
        parser = InlineToolCallParser(on_text)
        accumulator = ToolCallAccumulator()
        finish_reason = None
        async for chunk in stream:
            choices = _get(chunk, "choices") or []
            if not choices:
                continue
            choice = choices[0]
            delta = _get(choice, "delta")
            parser.feed(_get(delta, "content") or "")
            for fragment in _get(delta, "tool_calls") or ():
                accumulator.add(fragment)
            finish_reason = _get(choice, "finish_reason") or finish_reason
        parser.finish()
        return TurnResponse(
            text=parser.text,
            tool_calls=ensure_unique_ids(accumulator.tool_calls() + parser.tool_calls),
            finish_reason=finish_reason,
        )

    def _consume_message(self, response, on_text) -> TurnResponse:
        choice = (_get(response, "choices") or [None])[0]
        message = _get(choice, "message")
        parser = InlineToolCallParser(on_text)
        parser.feed(_get(message, "content") or "")
        parser.finish()
        accumulator = ToolCallAccumulator()
        for position, tc in enumerate(_get(message, "tool_calls") or ()):
            accumulator.add(tc, position)
        return TurnResponse(
            text=parser.text,
            tool_calls=ensure_unique_ids(accumulator.tool_calls() + parser.tool_calls),
            finish_reason=_get(choice, "finish_reason"),
        )
