from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Protocol

from openai import AsyncOpenAI

from chatrelay.logging import get_logger

logger = get_logger(__name__)


@dataclass
class StreamChunk:
    """One provider chunk: a text fragment and, on the final chunk, usage."""

    text: str = ""
    usage: Optional[Dict[str, int]] = None


class ModelBackend(Protocol):
    """Interface for pluggable text-generation backends.

    Backends are stateless with respect to model ids: the model is chosen per
    call, so one backend instance serves every catalogue entry.
    """

    name: str

    def stream_chat(
        self,
        model_id: str,
        messages: List[dict],
        *,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[StreamChunk]: ...

    async def complete(
        self,
        model_id: str,
        messages: List[dict],
        *,
        max_tokens: Optional[int] = None,
    ) -> str: ...


def _usage_dict(usage) -> Optional[Dict[str, int]]:
    if usage is None:
        return None
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
        "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
        "total_tokens": getattr(usage, "total_tokens", 0) or 0,
    }


class OpenRouterBackend:
    """Streams chat completions from OpenRouter's OpenAI-compatible API."""

    name = "openrouter"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.base_url = base_url
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def stream_chat(
        self,
        model_id: str,
        messages: List[dict],
        *,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[StreamChunk]:
        kwargs: dict = {
            "model": model_id,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        stream = await self.client.chat.completions.create(**kwargs)
        async for chunk in stream:
            choices = getattr(chunk, "choices", None) or []
            text = ""
            if choices:
                delta = getattr(choices[0], "delta", None)
                text = getattr(delta, "content", None) or ""
            usage = _usage_dict(getattr(chunk, "usage", None))
            if text or usage:
                yield StreamChunk(text=text, usage=usage)

    async def complete(
        self,
        model_id: str,
        messages: List[dict],
        *,
        max_tokens: Optional[int] = None,
    ) -> str:
        kwargs: dict = {"model": model_id, "messages": messages}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        completion = await self.client.chat.completions.create(**kwargs)
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("completion_no_choices", model_id=model_id)
            return ""
        return first_choice.message.content or ""


class StubBackend:
    """Deterministic backend used when no provider key is configured and in tests.

    Streams ``reply`` (or an echo of the last user message) word by word and
    records every call in ``calls``.
    """

    name = "stub"

    def __init__(
        self,
        *,
        reply: Optional[str] = None,
        completion_reply: str = "Quick chat",
    ) -> None:
        self.reply = reply
        self.completion_reply = completion_reply
        self.calls: List[dict] = []

    def _reply_for(self, model_id: str, messages: List[dict]) -> str:
        if self.reply is not None:
            return self.reply
        last_user = next(
            (m.get("content", "") for m in reversed(messages) if m.get("role") == "user"),
            "",
        )
        return f"[{model_id}] You said: {last_user}"

    async def stream_chat(
        self,
        model_id: str,
        messages: List[dict],
        *,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[StreamChunk]:
        self.calls.append({"kind": "stream", "model_id": model_id, "messages": messages})
        text = self._reply_for(model_id, messages)
        words = text.split(" ")
        for idx, word in enumerate(words):
            yield StreamChunk(text=word if idx == len(words) - 1 else f"{word} ")
        yield StreamChunk(
            usage={
                "prompt_tokens": sum(len(m.get("content", "").split()) for m in messages),
                "completion_tokens": len(words),
                "total_tokens": 0,
            }
        )

    async def complete(
        self,
        model_id: str,
        messages: List[dict],
        *,
        max_tokens: Optional[int] = None,
    ) -> str:
        self.calls.append({"kind": "complete", "model_id": model_id, "messages": messages})
        return self.completion_reply


__all__ = ["StreamChunk", "ModelBackend", "OpenRouterBackend", "StubBackend"]
