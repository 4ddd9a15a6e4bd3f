from __future__ import annotations

import logging
import math
from collections import Counter

import numpy as np

from .enrollment_db import EnrollmentDatabase
from .errors import InvalidArgument
from .face_types import MatchDecision

logger = logging.getLogger(__name__)


def clamp_k(k: int, db_size: int) -> int:
    if db_size < 1:
        return 1
    return max(1, min(int(k), db_size))


def euclidean_distances(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    diff = matrix.astype(np.float64) - query.astype(np.float64)
    return np.sqrt(np.sum(diff * diff, axis=1))


def classify(
    query: np.ndarray, db: EnrollmentDatabase, k: int, threshold: float
) -> MatchDecision:
    """Classify ``query`` by a K-nearest-neighbor majority vote.

    The winning label is accepted only if it holds at least ceil(K/2) of the
    K votes and the mean distance of its own neighbors is below
    ``threshold``. Count ties go to the label met first while scanning the
    neighbors nearest-first.
    """
    if len(db) == 0:
        raise InvalidArgument("Cannot classify against an empty database")
    if not 1 <= k <= len(db):
        raise InvalidArgument(f"k must be in [1, {len(db)}], got {k}")
    if not threshold > 0:
        raise InvalidArgument(f"threshold must be positive, got {threshold}")
    query = np.asarray(query, dtype=np.float32).reshape(-1)
    if query.shape[0] != db.dimension:
        raise InvalidArgument(
            f"Query dimension {query.shape[0]} does not match database dimension {db.dimension}"
        )

    distances = euclidean_distances(query, db.matrix())
    # Stable sort keeps equal distances in insertion order.
    nearest = np.argsort(distances, kind="stable")[:k]
    labels = db.labels
    neighbor_labels = [labels[idx] for idx in nearest]

    votes = Counter(neighbor_labels)
    majority_label, majority_count = max(votes.items(), key=lambda item: item[1])
    is_majority = majority_count >= math.ceil(k / 2)

    agreeing = [
        float(distances[idx]) for idx in nearest if labels[idx] == majority_label
    ]
    confidence_distance = float(np.mean(agreeing))
    is_confident = is_majority and confidence_distance < threshold

    decision = MatchDecision(
        matched_identity_id=majority_label if is_confident else None,
        majority_label=majority_label,
        majority_count=majority_count,
        k=k,
        confidence_distance=confidence_distance,
        closest_distance=float(distances[nearest[0]]),
        is_majority=is_majority,
        is_confident=is_confident,
    )
    logger.debug(
        "knn k=%d label=%s votes=%d mean_dist=%.4f closest=%.4f confident=%s",
        k,
        majority_label,
        majority_count,
        confidence_distance,
        decision.closest_distance,
        is_confident,
    )
    return decision
