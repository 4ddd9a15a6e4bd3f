from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Tuple, Union

import numpy as np

from .attendance_config import MatcherConfig
from .enrollment_db import (
    EnrollmentBuilder,
    EnrollmentDatabase,
    EnrollmentReport,
    ImageInput,
    iter_enrollment_images,
)
from .errors import EmptyDatabase, InvalidArgument, UnknownIdentity
from .face_embedder import FaceEmbedder
from .face_localizer import FaceLocalizer, largest_face
from .face_types import AttendanceStatus, FaceBox, MatchDecision
from .knn_matcher import clamp_k, classify
from .preprocess import DEFAULT_FACE_SIZE, crop_face, preprocess_face
from .roster import Roster

logger = logging.getLogger(__name__)

NO_FACE = "no_face"
UNKNOWN = "unknown"
PRESENT = "present"
UNKNOWN_IDENTITY = "unknown_identity"


@dataclass(frozen=True)
class RecognitionOutcome:
    # One of no_face, unknown, present, unknown_identity.
    status: str
    message: str
    bbox: Optional[FaceBox] = None
    decision: Optional[MatchDecision] = None
    identity_id: Optional[str] = None
    display_name: Optional[str] = None
    already_present: bool = False

    @property
    def accepted(self) -> bool:
        return self.status == PRESENT


class AttendanceSession:
    """Explicit session state: roster, enrollment database and tunables.

    Database swaps and roster updates go through a single writer lock;
    classification works on a snapshot of the current database.
    """

    def __init__(
        self,
        roster: Roster,
        enroll_localizer: FaceLocalizer,
        live_localizer: FaceLocalizer,
        embedder: FaceEmbedder,
        config: Optional[MatcherConfig] = None,
        face_size: Tuple[int, int] = DEFAULT_FACE_SIZE,
    ) -> None:
        self.roster = roster
        self.enroll_localizer = enroll_localizer
        self.live_localizer = live_localizer
        self.embedder = embedder
        self.face_size = face_size
        config = config or MatcherConfig()
        if config.k < 1:
            raise InvalidArgument(f"k must be at least 1, got {config.k}")
        if not config.threshold > 0:
            raise InvalidArgument(f"threshold must be positive, got {config.threshold}")
        self._k = config.k
        self._threshold = config.threshold
        self._database = EnrollmentDatabase()
        self._lock = threading.Lock()

    @property
    def database(self) -> EnrollmentDatabase:
        return self._database

    @property
    def k(self) -> int:
        return self._k

    @property
    def threshold(self) -> float:
        return self._threshold

    def set_k(self, k: int) -> int:
        if k < 1:
            raise InvalidArgument(f"k must be at least 1, got {k}")
        with self._lock:
            self._k = clamp_k(k, len(self._database)) if len(self._database) else k
            return self._k

    def set_threshold(self, threshold: float) -> None:
        if not threshold > 0:
            raise InvalidArgument(f"threshold must be positive, got {threshold}")
        with self._lock:
            self._threshold = float(threshold)

    def _install(self, database: EnrollmentDatabase) -> None:
        with self._lock:
            self._database = database
            clamped = clamp_k(self._k, len(database))
            if clamped != self._k:
                logger.info("Clamping k from %d to %d", self._k, clamped)
            self._k = clamped

    def enroll(
        self, images: Iterable[Tuple[str, ImageInput]]
    ) -> EnrollmentReport:
        builder = EnrollmentBuilder(
            self.enroll_localizer, self.embedder, face_size=self.face_size
        )
        # EmptyDatabase leaves the previous database installed.
        database, report = builder.build(images, roster_ids=self.roster.identity_ids())
        self._install(database)
        return report

    def enroll_directory(self, root: Union[Path, str]) -> EnrollmentReport:
        return self.enroll(iter_enrollment_images(root))

    def load_database(self, database: EnrollmentDatabase) -> None:
        if database.extractor is not None and database.extractor != self.embedder.name:
            logger.warning(
                "Database was built with %s, session embeds with %s",
                database.extractor,
                self.embedder.name,
            )
        known = database.filter_identities(self.roster.identity_ids())
        dropped = len(database) - len(known)
        if dropped:
            logger.warning("Dropped %d records for identities not on the roster", dropped)
        if len(known) == 0:
            raise EmptyDatabase("No enrolled records match the roster")
        self._install(known)

    def _embed_query(self, image: np.ndarray) -> Tuple[Optional[FaceBox], Optional[np.ndarray]]:
        box = largest_face(self.live_localizer.locate(image))
        if box is None:
            return None, None
        face = preprocess_face(crop_face(image, box), self.face_size)
        return box, self.embedder.embed(face)

    def recognize(self, image: np.ndarray) -> RecognitionOutcome:
        database = self._database
        if len(database) == 0:
            raise EmptyDatabase("Enroll faces before recognizing")
        box, query = self._embed_query(image)
        if query is None:
            return RecognitionOutcome(status=NO_FACE, message="No face detected")

        decision = classify(
            query, database, clamp_k(self._k, len(database)), self._threshold
        )
        if decision.matched_identity_id is None:
            return RecognitionOutcome(
                status=UNKNOWN,
                message=f"Unknown face (closest distance {decision.closest_distance:.3f})",
                bbox=box,
                decision=decision,
            )

        identity_id = decision.matched_identity_id
        with self._lock:
            entry = self.roster.get(identity_id)
            already_present = (
                entry is not None and entry.status is AttendanceStatus.PRESENT
            )
            try:
                display_name = self.roster.mark_present(identity_id)
            except UnknownIdentity:
                logger.error(
                    "Matched %s but the identity is missing from the roster", identity_id
                )
                return RecognitionOutcome(
                    status=UNKNOWN_IDENTITY,
                    message=f"Matched {identity_id}, which is not on the roster",
                    bbox=box,
                    decision=decision,
                    identity_id=identity_id,
                )
        message = (
            f"{display_name} is already marked present"
            if already_present
            else f"Marked present: {display_name}"
        )
        return RecognitionOutcome(
            status=PRESENT,
            message=f"{message} (distance {decision.confidence_distance:.3f})",
            bbox=box,
            decision=decision,
            identity_id=identity_id,
            display_name=display_name,
            already_present=already_present,
        )

    def export(self, directory: Union[Path, str], fmt: str = "csv") -> Path:
        with self._lock:
            return self.roster.save(directory, fmt=fmt)
