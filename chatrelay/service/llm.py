from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from chatrelay.config import DEFAULT_AGENT_INSTRUCTIONS, StreamChunking
from chatrelay.logging import get_logger
from chatrelay.service.model_backend import ModelBackend
from chatrelay.storage.models import MESSAGE_FAILED, Message

logger = get_logger(__name__)

TITLE_MAX_CHARS = 50
TITLE_MAX_WORDS = 6

_TITLE_INSTRUCTIONS = (
    "Write a short title (max 6 words) for the conversation below. "
    "Reply with the title only, without quotes or punctuation at the end."
)

_WORD_RE = re.compile(r"\S*\s+")


class DeltaChunker:
    """Regroup provider chunks into persisted deltas.

    ``line`` emits each completed line, ``word`` each completed word, and
    ``none`` passes provider chunks through. Concatenating every emitted
    delta (including the final flush) reproduces the input exactly.
    """

    def __init__(self, mode: StreamChunking = StreamChunking.LINE) -> None:
        self.mode = StreamChunking(mode)
        self._buffer = ""

    def feed(self, text: str) -> List[str]:
        if not text:
            return []
        if self.mode == StreamChunking.NONE:
            return [text]
        self._buffer += text
        if self.mode == StreamChunking.LINE:
            cut = self._buffer.rfind("\n")
            if cut < 0:
                return []
            ready, self._buffer = self._buffer[: cut + 1], self._buffer[cut + 1 :]
            return ready.splitlines(keepends=True)
        words = [m.group(0) for m in _WORD_RE.finditer(self._buffer)]
        consumed = sum(len(w) for w in words)
        self._buffer = self._buffer[consumed:]
        return words

    def flush(self) -> List[str]:
        if not self._buffer:
            return []
        rest, self._buffer = self._buffer, ""
        return [rest]


@dataclass
class GenerationResult:
    text: str
    usage: Optional[Dict[str, int]] = None
    deltas: int = 0
    model_id: str = ""


def sanitize_title(raw: Optional[str]) -> Optional[str]:
    """Normalize a model-written title; ``None`` when nothing usable remains."""

    if not raw:
        return None
    line = raw.strip().splitlines()[0] if raw.strip() else ""
    line = line.strip().strip("\"'`“”‘’").strip()
    line = re.sub(r"^title\s*:\s*", "", line, flags=re.IGNORECASE)
    line = line.rstrip(".!?:;").strip()
    if not line:
        return None
    if len(line) > TITLE_MAX_CHARS:
        cut = line[:TITLE_MAX_CHARS]
        space = cut.rfind(" ")
        line = (cut[:space] if space > 0 else cut).rstrip()
    return line or None


class LLMService:
    """Runs the chat agent against a pluggable model backend."""

    def __init__(
        self,
        backend: ModelBackend,
        *,
        instructions: str = DEFAULT_AGENT_INSTRUCTIONS,
        chunking: StreamChunking = StreamChunking.LINE,
        title_model_id: Optional[str] = None,
    ) -> None:
        self.backend = backend
        self.instructions = instructions
        self.chunking = chunking
        self.title_model_id = title_model_id

    def build_messages(self, history: List[Message]) -> List[dict]:
        messages = [{"role": "system", "content": self.instructions}]
        for msg in history:
            if msg.role == "tool" or msg.status == MESSAGE_FAILED or msg.streaming:
                continue
            messages.append({"role": msg.role, "content": msg.content})
        return messages

    async def stream_text(
        self,
        model_id: str,
        history: List[Message],
        *,
        on_delta: Callable[[str], Awaitable[None]],
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        """Stream a reply, handing each chunked delta to ``on_delta`` in order."""

        chunker = DeltaChunker(self.chunking)
        parts: List[str] = []
        usage: Optional[Dict[str, int]] = None
        deltas = 0
        async for chunk in self.backend.stream_chat(
            model_id, self.build_messages(history), max_tokens=max_tokens
        ):
            if chunk.usage:
                usage = chunk.usage
            if not chunk.text:
                continue
            parts.append(chunk.text)
            for delta in chunker.feed(chunk.text):
                await on_delta(delta)
                deltas += 1
        for delta in chunker.flush():
            await on_delta(delta)
            deltas += 1
        return GenerationResult(text="".join(parts), usage=usage, deltas=deltas, model_id=model_id)

    async def generate_title(
        self, model_id: str, context: List[Message], prompt: str
    ) -> Optional[str]:
        lines = [
            f"{msg.role}: {msg.content}"
            for msg in context
            if msg.role in {"user", "assistant"} and msg.content
        ]
        if not lines or lines[-1] != f"user: {prompt}":
            lines.append(f"user: {prompt}")
        messages = [
            {"role": "system", "content": _TITLE_INSTRUCTIONS},
            {"role": "user", "content": "\n".join(lines)},
        ]
        raw = await self.backend.complete(
            self.title_model_id or model_id, messages, max_tokens=20
        )
        title = sanitize_title(raw)
        if title:
            words = title.split()
            if len(words) > TITLE_MAX_WORDS:
                title = " ".join(words[:TITLE_MAX_WORDS])
        return title


__all__ = ["LLMService", "DeltaChunker", "GenerationResult", "sanitize_title"]
