from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class MatcherConfig:
    # Number of neighbors consulted by the vote; clamped to the database size.
    k: int = 3
    # Maximum mean distance of the winning label's neighbors (L2-normalized
    # embeddings, so distances fall in [0, 2]).
    threshold: float = 1.0
