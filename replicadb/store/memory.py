"""
In-memory object store backend.

The default backend: every store lives in process memory, so all data is
lost when the process exits. Useful for:
- Unit and integration tests
- Short-lived replicas that re-pull from the beginning on start

Invariants:
    - Same transaction, ordering and constraint semantics as persisted backends
    - Safe to use from multiple coroutines (store-level asyncio locks)
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .base import Key, ObjectStoreBackend, Record, StoreChanges, StoreSpec

logger = logging.getLogger(__name__)


class InMemoryBackend(ObjectStoreBackend):
    """In-memory implementation of ObjectStoreBackend.

    Example:
        >>> backend = InMemoryBackend()
        >>> await backend.open([StoreSpec("Board", ("id",))])
    """

    async def _load(self, specs: Dict[str, StoreSpec], fingerprint: Optional[str]) -> Dict[str, Dict[Key, Record]]:
        return {name: {} for name in specs}

    async def _persist(self, changes: Dict[str, StoreChanges]) -> None:
        # Committed state is published by the transaction itself.
        return None

    async def close(self) -> None:
        """Close and clear all data."""
        await super().close()
        self._committed = {name: {} for name in self._specs}
        logger.debug("InMemoryBackend closed")
