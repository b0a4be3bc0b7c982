"""Approximate nearest-neighbour search over embeddings with random hyperplanes."""

from __future__ import annotations

import logging
import math
from typing import Iterable, Sequence

logger = logging.getLogger(__name__)

NUM_HYPERPLANES = 32
MAX_SINGLE_BIT_NEIGHBORS = 32
MAX_TOTAL_NEIGHBORS = 64
HYPERPLANE_SEED = 42

_U64_MASK = (1 << 64) - 1
_U32_MAX = (1 << 32) - 1
_LCG_MULTIPLIER = 6364136223846793005


def _dot(a: Iterable[float], b: Iterable[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 for mismatched or zero vectors."""
    if len(a) != len(b):
        return 0.0
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return _dot(a, b) / (norm_a * norm_b)


class SimpleRng:
    """A small deterministic linear congruential generator."""

    def __init__(self, seed: int) -> None:
        self.state = seed & _U64_MASK

    def next(self) -> float:
        """Return the next value, uniformly spread over [-1.0, 1.0]."""
        self.state = (self.state * _LCG_MULTIPLIER + 1) & _U64_MASK
        bits = self.state >> 32
        return (bits / _U32_MAX) * 2.0 - 1.0


class AnnIndex:
    """Locality-sensitive hash index that buckets vectors by hyperplane signs."""

    def __init__(self, dim: int) -> None:
        self.dim = dim
        rng = SimpleRng(HYPERPLANE_SEED)
        self.hyperplanes: list[list[float]] = []
        for _ in range(NUM_HYPERPLANES):
            plane = [rng.next() for _ in range(dim)]
            magnitude = math.sqrt(sum(x * x for x in plane))
            if magnitude > 0.0:
                plane = [x / magnitude for x in plane]
            self.hyperplanes.append(plane)
        self._buckets: dict[int, list[str]] = {}
        self._id_to_bucket: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._id_to_bucket)

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._id_to_bucket

    def insert(self, chunk_id: str, vector: Sequence[float]) -> None:
        """Add a vector under ``chunk_id``; vectors of the wrong dimension are ignored."""
        if len(vector) != self.dim:
            logger.warning(
                "Vector dimension %d does not match ANN index dimension %d",
                len(vector),
                self.dim,
            )
            return
        bucket_hash = self.hash_vector(vector)
        self._buckets.setdefault(bucket_hash, []).append(chunk_id)
        self._id_to_bucket[chunk_id] = bucket_hash

    def remove(self, chunk_id: str) -> None:
        """Drop ``chunk_id`` from the index; unknown ids are ignored."""
        bucket_hash = self._id_to_bucket.pop(chunk_id, None)
        if bucket_hash is None:
            return
        bucket = self._buckets.get(bucket_hash)
        if bucket is None:
            return
        bucket[:] = [stored for stored in bucket if stored != chunk_id]
        if not bucket:
            del self._buckets[bucket_hash]

    def search(self, vector: Sequence[float], max_candidates: int) -> list[str]:
        """Return up to ``max_candidates`` ids, nearest buckets first."""
        if not self._buckets or max_candidates <= 0:
            return []

        candidates: list[str] = []
        visited: set[int] = set()
        primary = self.hash_vector(vector)

        self._collect_bucket(primary, candidates, visited, max_candidates)

        if len(candidates) < max_candidates:
            for neighbor in self.neighbor_hashes(primary):
                if len(candidates) >= max_candidates:
                    break
                self._collect_bucket(neighbor, candidates, visited, max_candidates)

        if len(candidates) < max_candidates:
            for bucket_hash, bucket in self._buckets.items():
                if len(candidates) >= max_candidates:
                    break
                if bucket_hash in visited:
                    continue
                room = max_candidates - len(candidates)
                candidates.extend(bucket[:room])

        return candidates

    def hash_vector(self, vector: Sequence[float]) -> int:
        """Bit i is set when the vector lies on the non-negative side of hyperplane i."""
        bucket_hash = 0
        for i, plane in enumerate(self.hyperplanes):
            if _dot(vector, plane) >= 0.0:
                bucket_hash |= 1 << i
        return bucket_hash

    def neighbor_hashes(self, bucket_hash: int) -> list[int]:
        """Hashes one bit away, then two bits away, up to the neighbour limits."""
        bits = min(len(self.hyperplanes), 64)
        neighbors = [bucket_hash ^ (1 << i) for i in range(bits)][:MAX_SINGLE_BIT_NEIGHBORS]

        if len(neighbors) < MAX_SINGLE_BIT_NEIGHBORS:
            for i in range(bits):
                if len(neighbors) >= MAX_TOTAL_NEIGHBORS:
                    break
                for j in range(i + 1, bits):
                    neighbors.append(bucket_hash ^ (1 << i) ^ (1 << j))
                    if len(neighbors) >= MAX_TOTAL_NEIGHBORS:
                        break
        return neighbors

    def _collect_bucket(
        self, bucket_hash: int, candidates: list[str], visited: set[int], limit: int
    ) -> None:
        if bucket_hash in visited:
            return
        visited.add(bucket_hash)
        bucket = self._buckets.get(bucket_hash)
        if bucket:
            room = limit - len(candidates)
            if room > 0:
                candidates.extend(bucket[:room])