"""Per-relay watermarks and processed-event markers.

Pure persistence over the [Store][pushbrotr.core.store.Store], with no
notification logic:

- ``watermark:{relay}`` holds ``{"created_at": int}``, the newest event
  timestamp seen from that relay. It never moves backwards.
- ``processed:{event_id}`` marks an event that already went through the
  extractor. Markers expire after ``processed_ttl`` seconds (24 h by
  default); an event re-served by a relay after that may be processed again.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pushbrotr.models.constants import KeyPrefix


if TYPE_CHECKING:
    from pushbrotr.core.store import Store


DEFAULT_PROCESSED_TTL = 86_400


class EventState:
    """Watermark and dedup state shared by the monitor and the extractor."""

    def __init__(self, store: Store, processed_ttl: int = DEFAULT_PROCESSED_TTL) -> None:
        self._store = store
        self._processed_ttl = processed_ttl

    async def get_watermark(self, relay: str) -> int | None:
        """Return the watermark of ``relay``, or ``None`` if it was never polled."""
        value = await self._store.get(KeyPrefix.WATERMARK.key(relay))
        if not isinstance(value, dict):
            return None
        created_at = value.get("created_at")
        return int(created_at) if created_at is not None else None

    async def advance_watermark(self, relay: str, timestamp: int) -> bool:
        """Move the watermark of ``relay`` forward to ``timestamp``.

        A no-op when ``timestamp`` is not greater than the current value.
        Concurrent writers are resolved with compare-and-set, retrying until
        either this write lands or a newer value is already stored.

        Returns:
            True if the stored watermark changed.
        """
        key = KeyPrefix.WATERMARK.key(relay)
        while True:
            entry = await self._store.get_entry(key)
            current = None
            if entry is not None and isinstance(entry.value, dict):
                current = entry.value.get("created_at")
            if current is not None and timestamp <= int(current):
                return False
            version = entry.version if entry is not None else 0
            if await self._store.compare_and_set(key, {"created_at": timestamp}, version):
                return True

    async def has_processed(self, event_id: str) -> bool:
        return await self._store.get(KeyPrefix.PROCESSED.key(event_id)) is not None

    async def mark_processed(self, event_id: str) -> None:
        await self._store.put(KeyPrefix.PROCESSED.key(event_id), 1, ttl=self._processed_ttl)
