"""Contracts for the external collaborators used by built-in handlers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

MIN_TEXT_CHARS = 50
MIN_MEANINGFUL_IMAGES = 2
MIN_YOUTUBE_CAPTIONS = 3


@dataclass(slots=True, frozen=True)
class AttentionWindow:
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass(slots=True, frozen=True)
class AttentionItem:
    """One captured attention signal (page visit, text read, image hovered...)."""

    item_id: str
    observed_at: datetime
    url: str = ""
    text: str = ""
    duration_ms: int = 0


@dataclass(slots=True)
class AttentionData:
    visits: list[AttentionItem] = field(default_factory=list)
    text_attentions: list[AttentionItem] = field(default_factory=list)
    image_attentions: list[AttentionItem] = field(default_factory=list)
    audio_attentions: list[AttentionItem] = field(default_factory=list)
    youtube_attentions: list[AttentionItem] = field(default_factory=list)

    def by_kind(self) -> dict[str, list[AttentionItem]]:
        return {
            "visits": self.visits,
            "text": self.text_attentions,
            "images": self.image_attentions,
            "audio": self.audio_attentions,
            "youtube": self.youtube_attentions,
        }

    @property
    def item_count(self) -> int:
        return sum(len(items) for items in self.by_kind().values())

    def has_minimal_content(self) -> bool:
        """Enough signal for an LLM call to be worth making."""

        if sum(len(item.text) for item in self.text_attentions) >= MIN_TEXT_CHARS:
            return True
        meaningful_images = [
            item for item in self.image_attentions if item.text and item.duration_ms > 1000
        ]
        if len(meaningful_images) >= MIN_MEANINGFUL_IMAGES:
            return True
        captions = [item for item in self.youtube_attentions if item.text]
        return len(captions) >= MIN_YOUTUBE_CAPTIONS

    def within(self, window: AttentionWindow) -> AttentionData:
        def _keep(items: list[AttentionItem]) -> list[AttentionItem]:
            return [item for item in items if window.contains(item.observed_at)]

        return AttentionData(
            visits=_keep(self.visits),
            text_attentions=_keep(self.text_attentions),
            image_attentions=_keep(self.image_attentions),
            audio_attentions=_keep(self.audio_attentions),
            youtube_attentions=_keep(self.youtube_attentions),
        )


class AttentionDataProvider(Protocol):
    async def fetch_raw_attention_data(
        self,
        user_id: str,
        window: AttentionWindow,
    ) -> AttentionData: ...


class LlmProvider(Protocol):
    async def generate(self, prompt: str) -> str: ...

    async def flush(self) -> None: ...


class StaticAttentionDataProvider:
    """In-memory attention data keyed by user, for demos and tests."""

    def __init__(self, data: dict[str, AttentionData] | None = None) -> None:
        self.data = data or {}
        self.requests: list[tuple[str, AttentionWindow]] = []

    async def fetch_raw_attention_data(
        self,
        user_id: str,
        window: AttentionWindow,
    ) -> AttentionData:
        self.requests.append((user_id, window))
        return self.data.get(user_id, AttentionData()).within(window)


class EchoLlmProvider:
    """Deterministic local provider: answers with the prompt's first line."""

    def __init__(self) -> None:
        self.prompts: list[str] = []
        self.flushes = 0

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        first_line = next((line for line in prompt.splitlines() if line.strip()), "")
        return f"echo: {first_line.strip()}"

    async def flush(self) -> None:
        self.flushes += 1
