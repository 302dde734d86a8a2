from __future__ import annotations

import logging
from typing import Any, Callable, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ComputedCache:
    """Memoizes computed artifacts for the duration of one audit run.

    Key = (artifact name, identity of each input object, settings). Inputs are
    treated as immutable once captured, so entries are never invalidated; the
    cache keeps a reference to its inputs so their identities stay unique.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[Any, ...], tuple[tuple[Any, ...], Any]] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key_for(
        artifact: str, inputs: tuple[Any, ...], settings: Hashable = None
    ) -> tuple[Any, ...]:
        return (artifact, tuple(id(obj) for obj in inputs), settings)

    def get_or_compute(
        self,
        artifact: str,
        *,
        inputs: tuple[Any, ...],
        compute: Callable[[], T],
        settings: Hashable = None,
    ) -> T:
        key = self.key_for(artifact, inputs, settings)
        entry = self._entries.get(key)
        if entry is not None:
            self.hits += 1
            return entry[1]
        self.misses += 1
        logger.debug("computing %s", artifact)
        value = compute()
        self._entries[key] = (inputs, value)
        return value

    def __len__(self) -> int:
        return len(self._entries)
