"""Completion service: the streaming and one-shot calls into the LLM backend."""

import logging
import re
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Protocol

from .messages import Message, to_chat_messages
from .report import CompletionError, ContextOverflowError

logger = logging.getLogger(__name__)

PROVIDERS = ("openai", "wingman", "lmstudio", "openrouter")

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class TextChunk:
    text: str


@dataclass(frozen=True)
class CompletedToolCall:
    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class StreamUsage:
    input_tokens: int
    output_tokens: int


StreamEvent = TextChunk | CompletedToolCall | StreamUsage


class CompletionService(Protocol):
    def stream(
        self,
        model: str,
        instructions: str,
        messages: Sequence[Message],
        tools: list[dict],
    ) -> Iterator[StreamEvent]: ...

    def complete(self, model: str, instructions: str, input_text: str) -> str: ...


def _translate_error(e: Exception) -> CompletionError:
    import litellm

    if isinstance(e, litellm.ContextWindowExceededError):
        return ContextOverflowError(f"context window exceeded: {e}")
    if isinstance(e, litellm.BadRequestError) and _CONTEXT_OVERFLOW_RE.search(str(e)):
        return ContextOverflowError(f"context window exceeded (inferred): {e}")
    return CompletionError(f"LLM call failed: {e}")


class LiteLLMCompletionService:
    """CompletionService backed by litellm's OpenAI-compatible completion API."""

    def __init__(
        self,
        provider: str = "openai",
        *,
        api_base: str | None = None,
        api_key: str | None = None,
        extra: dict | None = None,
    ):
        if provider not in PROVIDERS:
            raise CompletionError(f"unknown provider {provider!r}")
        self.provider = provider
        self.api_base = api_base
        self.api_key = api_key
        self.extra = dict(extra or {})

    def _route(self, model: str) -> tuple[str, dict]:
        """Return the litellm model string and connection kwargs."""
        kwargs: dict = {}
        if self.provider == "lmstudio":
            model_str = f"openai/{model}"
            kwargs["api_base"] = f"{self.api_base or 'http://127.0.0.1:1234'}/v1"
            kwargs["api_key"] = "lm-studio"
        elif self.provider == "wingman":
            # OpenAI-compatible gateway; api_base already ends in /v1
            model_str = f"openai/{model}"
            kwargs["api_base"] = self.api_base
            kwargs["api_key"] = self.api_key or "-"
        elif self.provider == "openrouter":
            bare_id = model.removeprefix("openrouter/")
            model_str = f"openrouter/{bare_id}"
            kwargs["api_key"] = self.api_key
            if self.api_base:
                kwargs["api_base"] = self.api_base
        else:
            model_str = model if model.startswith("openai/") else f"openai/{model}"
            kwargs["api_key"] = self.api_key
            if self.api_base:
                kwargs["api_base"] = self.api_base
        return model_str, kwargs

    def stream(
        self,
        model: str,
        instructions: str,
        messages: Sequence[Message],
        tools: list[dict],
    ) -> Iterator[StreamEvent]:
        import litellm

        litellm.suppress_debug_info = True

        model_str, kwargs = self._route(model)
        completion_kwargs = dict(
            model=model_str,
            messages=to_chat_messages(messages, instructions),
            stream=True,
            stream_options={"include_usage": True},
            **kwargs,
            **self.extra,
        )
        if tools:
            completion_kwargs["tools"] = tools
            completion_kwargs["tool_choice"] = "auto"

        logger.debug(
            "streaming %s with %d messages, %d tools",
            model_str,
            len(completion_kwargs["messages"]),
            len(tools),
        )

        try:
            response = litellm.completion(**completion_kwargs)
        except Exception as e:
            raise _translate_error(e) from e

        # Tool-call fragments arrive spread over many chunks, keyed by index.
        pending: dict[int, dict] = {}
        usage = None
        try:
            for chunk in response:
                chunk_usage = getattr(chunk, "usage", None)
                if chunk_usage and getattr(chunk_usage, "prompt_tokens", None):
                    usage = chunk_usage

                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = choices[0].delta

                content = getattr(delta, "content", None)
                if content:
                    yield TextChunk(content)

                for tc in getattr(delta, "tool_calls", None) or []:
                    idx = tc.index if tc.index is not None else len(pending)
                    entry = pending.setdefault(idx, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        entry["id"] = tc.id
                    if tc.function is not None:
                        if tc.function.name:
                            entry["name"] = tc.function.name
                        if tc.function.arguments:
                            entry["arguments"] += tc.function.arguments
        except GeneratorExit:
            close = getattr(response, "close", None)
            if callable(close):
                close()
            raise
        except Exception as e:
            raise _translate_error(e) from e

        for idx in sorted(pending):
            entry = pending[idx]
            yield CompletedToolCall(
                id=entry["id"] or f"call_{idx}",
                name=entry["name"],
                arguments=entry["arguments"],
            )

        if usage is not None:
            yield StreamUsage(
                input_tokens=usage.prompt_tokens or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            )

    def complete(self, model: str, instructions: str, input_text: str) -> str:
        import litellm

        litellm.suppress_debug_info = True

        model_str, kwargs = self._route(model)
        messages = [
            {"role": "system", "content": instructions},
            {"role": "user", "content": input_text},
        ]
        try:
            response = litellm.completion(
                model=model_str, messages=messages, **kwargs, **self.extra
            )
        except Exception as e:
            raise _translate_error(e) from e

        if not response.choices:
            raise CompletionError("LLM call failed: response has no choices")
        return response.choices[0].message.content or ""
