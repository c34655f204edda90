"""Seedable random utilities, one stream per room."""

from __future__ import annotations

import hashlib
import random
from typing import Optional, Sequence, TypeVar

T = TypeVar("T")


def room_seed(base_seed: int, room_id: str) -> int:
    """Derive a stable 32-bit seed for ``room_id`` from ``base_seed``."""

    digest = hashlib.sha256(f"{base_seed}:{room_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big")


class DeterministicRNG:
    """Wraps :mod:`random` with deterministic replay support."""

    def __init__(self, seed: int) -> None:
        self._seed = seed & 0xFFFFFFFF
        # nosec B311 - pseudo-RNG acceptable for game mechanics
        self._random = random.Random(self._seed)

    @classmethod
    def for_room(cls, room_id: str, base_seed: Optional[int] = None) -> "DeterministicRNG":
        """Build an independent stream for a room.

        Without ``base_seed`` the stream is seeded from system entropy so
        restarts do not replay the same rolls.
        """

        if base_seed is None:
            return cls(random.SystemRandom().getrandbits(32))
        return cls(room_seed(base_seed, room_id))

    @property
    def seed(self) -> int:
        return self._seed

    def random(self) -> float:
        return self._random.random()

    def uniform(self, a: float, b: float) -> float:
        return self._random.uniform(a, b)

    def choice(self, seq: Sequence[T]) -> T:
        return self._random.choice(seq)

    def sample(self, population: Sequence[T], k: int) -> list[T]:
        return self._random.sample(list(population), k)


__all__ = ["DeterministicRNG", "room_seed"]
