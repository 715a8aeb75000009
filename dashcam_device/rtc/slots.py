"""Owned-resource slot.

Holds at most one live resource. Installing a new one always releases the
previous occupant first, and tells its owner it was evicted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

EvictedCallback = Callable[[], None]


class OwnedSlot(Generic[T]):
    def __init__(self, name: str, release: Callable[[T], Awaitable[None]]):
        self.name = name
        self._release = release
        self._item: Optional[T] = None
        self._on_evicted: Optional[EvictedCallback] = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> Optional[T]:
        return self._item

    async def replace(
        self,
        factory: Callable[[], Awaitable[T]],
        on_evicted: Optional[EvictedCallback] = None,
    ) -> T:
        """Release the current occupant, then build and install a new one.

        If `factory` raises, the slot is left empty.
        """
        async with self._lock:
            await self._evict_locked()
            item = await factory()
            self._item = item
            self._on_evicted = on_evicted
            logger.debug("slot %s installed item=%r", self.name, item)
            return item

    async def release(self, item: T) -> None:
        """Release `item`; clears the slot if it still holds it. Idempotent."""
        async with self._lock:
            if self._item is item:
                self._item = None
                self._on_evicted = None
        await self._release(item)

    async def clear(self) -> None:
        async with self._lock:
            await self._evict_locked(notify=False)

    async def _evict_locked(self, notify: bool = True) -> None:
        item, callback = self._item, self._on_evicted
        self._item = None
        self._on_evicted = None
        if item is None:
            return
        logger.info("slot %s evicting item=%r", self.name, item)
        await self._release(item)
        if notify and callback is not None:
            callback()
