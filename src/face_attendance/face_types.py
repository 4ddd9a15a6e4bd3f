from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import numpy as np


@dataclass(frozen=True)
class FaceBox:
    # (x1, y1, x2, y2) bounding box in image coordinates.
    x1: int
    y1: int
    x2: int
    y2: int

    @property
    def width(self) -> int:
        return max(0, self.x2 - self.x1)

    @property
    def height(self) -> int:
        return max(0, self.y2 - self.y1)

    @property
    def area(self) -> int:
        return self.width * self.height

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.x1, self.y1, self.x2, self.y2)


@dataclass(frozen=True)
class FeatureRecord:
    # One embedding per enrolled face image.
    embedding: np.ndarray  # shape (D,)
    # Roster identity the image was enrolled under.
    identity_id: str
    # Name of the extractor that produced the embedding.
    extractor: str


class AttendanceStatus(str, enum.Enum):
    ABSENT = "Absent"
    PRESENT = "Present"


@dataclass
class IdentityEntry:
    identity_id: str
    display_name: str
    status: AttendanceStatus = AttendanceStatus.ABSENT
    # Time of the first transition to PRESENT.
    marked_at: Optional[datetime] = None


@dataclass(frozen=True)
class MatchDecision:
    # Winning label if the vote passed the confidence gate, otherwise None.
    matched_identity_id: Optional[str]
    # Label with the most votes among the K neighbors, accepted or not.
    majority_label: str
    majority_count: int
    k: int
    # Mean distance over the neighbors that voted for the majority label.
    confidence_distance: float
    # Distance to the nearest record in the whole database.
    closest_distance: float
    is_majority: bool
    is_confident: bool
