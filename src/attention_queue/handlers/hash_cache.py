"""Short-lived memory of attention windows that were already processed."""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Callable

from attention_queue.collaborators import AttentionData

DEFAULT_HASH_TTL_SECONDS = 300.0


def hash_attention_data(data: AttentionData) -> str:
    """Stable digest of the item ids in a window, independent of item order."""

    content = json.dumps(
        {kind: sorted(item.item_id for item in items) for kind, items in data.by_kind().items()},
        sort_keys=True,
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


class ContentHashCache:
    """TTL set of content hashes.

    Skips redundant work across sequential tasks with unchanged input. It
    does not replace the queue's dedupe key, which prevents concurrent
    duplicate tasks.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_HASH_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0.")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, float] = {}

    def seen(self, content_hash: str) -> bool:
        stored_at = self._entries.get(content_hash)
        if stored_at is None:
            return False
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[content_hash]
            return False
        return True

    def remember(self, content_hash: str) -> None:
        self._entries[content_hash] = self._clock()

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, stored_at in self._entries.items() if now - stored_at > self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
