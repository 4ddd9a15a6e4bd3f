from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

import cv2
import numpy as np

from .errors import DatabaseFormatError, EmptyDatabase, ExtractorMismatch
from .face_embedder import FaceEmbedder
from .face_localizer import FaceLocalizer, largest_face
from .face_types import FeatureRecord
from .preprocess import DEFAULT_FACE_SIZE, crop_face, preprocess_face

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".bmp")

ImageInput = Union[np.ndarray, Path, str]


class EnrollmentDatabase:
    """Ordered embeddings labeled by identity; one record per enrolled image."""

    def __init__(self, records: Iterable[FeatureRecord] = ()) -> None:
        self._records: List[FeatureRecord] = []
        for record in records:
            self.append(record)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[FeatureRecord]:
        return iter(self._records)

    @property
    def records(self) -> Tuple[FeatureRecord, ...]:
        return tuple(self._records)

    @property
    def dimension(self) -> Optional[int]:
        if not self._records:
            return None
        return int(self._records[0].embedding.shape[0])

    @property
    def extractor(self) -> Optional[str]:
        if not self._records:
            return None
        return self._records[0].extractor

    @property
    def labels(self) -> List[str]:
        return [record.identity_id for record in self._records]

    def append(self, record: FeatureRecord) -> None:
        embedding = np.asarray(record.embedding, dtype=np.float32)
        if embedding.ndim != 1:
            raise ExtractorMismatch(
                f"Embedding for {record.identity_id} must be 1-D, got shape {embedding.shape}"
            )
        if self._records:
            if embedding.shape[0] != self.dimension:
                raise ExtractorMismatch(
                    f"Embedding dimension {embedding.shape[0]} does not match "
                    f"database dimension {self.dimension}"
                )
            if record.extractor != self.extractor:
                raise ExtractorMismatch(
                    f"Extractor {record.extractor!r} does not match database "
                    f"extractor {self.extractor!r}"
                )
        self._records.append(
            FeatureRecord(
                embedding=embedding,
                identity_id=record.identity_id,
                extractor=record.extractor,
            )
        )

    def matrix(self) -> np.ndarray:
        if not self._records:
            return np.zeros((0, 0), dtype=np.float32)
        return np.stack([record.embedding for record in self._records], axis=0)

    def identities(self) -> List[str]:
        return sorted(set(self.labels))

    def count_by_identity(self) -> Dict[str, int]:
        return dict(Counter(self.labels))

    def filter_identities(self, keep: Iterable[str]) -> "EnrollmentDatabase":
        """Keep records whose identity is in ``keep``, relabeled to its spelling."""
        canonical = _canonical_ids(keep)
        return EnrollmentDatabase(
            FeatureRecord(
                embedding=record.embedding,
                identity_id=canonical[record.identity_id.casefold()],
                extractor=record.extractor,
            )
            for record in self._records
            if record.identity_id.casefold() in canonical
        )

    def save(self, path: Union[Path, str]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = [
            {
                "identity_id": record.identity_id,
                "extractor": record.extractor,
                "embedding": record.embedding.astype(np.float32).tolist(),
            }
            for record in self._records
        ]
        path.write_text(json.dumps(payload, indent=2))

    @classmethod
    def load(cls, path: Union[Path, str]) -> "EnrollmentDatabase":
        path = Path(path)
        if not path.exists() or not path.read_text().strip():
            return cls()
        try:
            records = [
                FeatureRecord(
                    embedding=np.asarray(entry["embedding"], dtype=np.float32),
                    identity_id=str(entry["identity_id"]),
                    extractor=str(entry["extractor"]),
                )
                for entry in json.loads(path.read_text())
            ]
        except (ValueError, KeyError, TypeError) as exc:
            raise DatabaseFormatError(
                f"Corrupt enrollment database {path}: {exc}"
            ) from exc
        # Mixed extractors or dimensions still raise ExtractorMismatch.
        return cls(records)


def _canonical_ids(identity_ids: Iterable[str]) -> Dict[str, str]:
    return {identity_id.casefold(): identity_id for identity_id in identity_ids}


def iter_enrollment_images(root: Union[Path, str]) -> Iterator[Tuple[str, Path]]:
    """Yield ``(identity_id, image_path)`` for a folder-per-identity tree."""
    root = Path(root)
    if not root.is_dir():
        raise FileNotFoundError(f"Enrollment directory not found: {root}")
    for identity_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        for image_path in sorted(identity_dir.iterdir()):
            if image_path.is_file() and image_path.suffix.lower() in IMAGE_SUFFIXES:
                yield identity_dir.name, image_path


@dataclass
class EnrollmentReport:
    processed: int = 0
    enrolled: int = 0
    # (identity_id, source, reason) for every skipped image.
    skipped: List[Tuple[str, str, str]] = field(default_factory=list)

    def skip(self, identity_id: str, source: str, reason: str) -> None:
        self.skipped.append((identity_id, source, reason))
        logger.warning("Skipping %s for %s: %s", source, identity_id, reason)


def _describe(image: ImageInput, index: int) -> str:
    if isinstance(image, (Path, str)):
        return str(image)
    return f"image #{index}"


class EnrollmentBuilder:
    def __init__(
        self,
        localizer: FaceLocalizer,
        embedder: FaceEmbedder,
        face_size: Tuple[int, int] = DEFAULT_FACE_SIZE,
    ) -> None:
        self.localizer = localizer
        self.embedder = embedder
        self.face_size = face_size

    def _embed_image(self, image: np.ndarray) -> Optional[np.ndarray]:
        box = largest_face(self.localizer.locate(image))
        if box is None:
            return None
        face = preprocess_face(crop_face(image, box), self.face_size)
        return self.embedder.embed(face)

    def build(
        self,
        images: Iterable[Tuple[str, ImageInput]],
        roster_ids: Optional[Iterable[str]] = None,
    ) -> Tuple[EnrollmentDatabase, EnrollmentReport]:
        known = None if roster_ids is None else _canonical_ids(roster_ids)
        database = EnrollmentDatabase()
        report = EnrollmentReport()
        for index, (identity_id, image) in enumerate(images):
            report.processed += 1
            source = _describe(image, index)
            if known is not None:
                if identity_id.casefold() not in known:
                    report.skip(identity_id, source, "identity not on roster")
                    continue
                # Labels take the roster's spelling so "Alice/" and "alice/" vote together.
                identity_id = known[identity_id.casefold()]
            if isinstance(image, (Path, str)):
                image = cv2.imread(str(image))
                if image is None:
                    report.skip(identity_id, source, "unreadable image")
                    continue
            # One bad image must not abort the whole batch.
            try:
                embedding = self._embed_image(image)
            except Exception as exc:
                report.skip(identity_id, source, f"extraction failed: {exc}")
                continue
            if embedding is None:
                report.skip(identity_id, source, "no face detected")
                continue
            try:
                database.append(
                    FeatureRecord(
                        embedding=embedding,
                        identity_id=identity_id,
                        extractor=self.embedder.name,
                    )
                )
            except ExtractorMismatch as exc:
                report.skip(identity_id, source, f"embedding mismatch: {exc}")
                continue
            report.enrolled += 1
            logger.debug("Enrolled %s from %s", identity_id, source)
        if len(database) == 0:
            raise EmptyDatabase(
                f"No usable faces among {report.processed} enrollment images"
            )
        logger.info(
            "Enrollment database built: %d records, %d identities, %d skipped",
            len(database),
            len(database.identities()),
            len(report.skipped),
        )
        return database, report
