from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Sequence

import cv2
import numpy as np

from .face_types import FaceBox


class FaceLocalizer(Protocol):
    def locate(self, image: np.ndarray) -> List[FaceBox]:
        ...


def largest_face(boxes: Iterable[FaceBox]) -> Optional[FaceBox]:
    best: Optional[FaceBox] = None
    for box in boxes:
        # Strict comparison keeps the first box on equal areas.
        if best is None or box.area > best.area:
            best = box
    return best


@dataclass
class InsightFaceLocalizerConfig:
    model_name: str = "buffalo_l"
    providers: Sequence[str] = ("CPUExecutionProvider",)
    det_size: int = 640
    min_face_size: int = 40


class InsightFaceLocalizer:
    """Accurate, slower localizer used when building the enrollment database."""

    def __init__(self, config: Optional[InsightFaceLocalizerConfig] = None) -> None:
        self.config = config or InsightFaceLocalizerConfig()
        try:
            from insightface.app import FaceAnalysis
        except ImportError as exc:
            raise ImportError(
                "insightface is required. Install with: pip install insightface onnxruntime"
            ) from exc

        self._app = FaceAnalysis(
            name=self.config.model_name,
            providers=list(self.config.providers),
            allowed_modules=["detection"],
        )
        # ctx_id=-1 uses CPU; det_size controls the detector input size.
        self._app.prepare(
            ctx_id=-1, det_size=(self.config.det_size, self.config.det_size)
        )

    def locate(self, image: np.ndarray) -> List[FaceBox]:
        boxes: List[FaceBox] = []
        for face in self._app.get(image):
            x1, y1, x2, y2 = face.bbox.astype(int).tolist()
            box = FaceBox(
                x1=max(0, x1),
                y1=max(0, y1),
                x2=min(image.shape[1], x2),
                y2=min(image.shape[0], y2),
            )
            # Embeddings are unstable on tiny faces.
            if min(box.width, box.height) < self.config.min_face_size:
                continue
            boxes.append(box)
        return boxes


@dataclass
class HaarCascadeLocalizerConfig:
    cascade_file: str = "haarcascade_frontalface_default.xml"
    scale_factor: float = 1.1
    min_neighbors: int = 5
    min_face_size: int = 60


class HaarCascadeLocalizer:
    """Fast, approximate localizer used for live capture."""

    def __init__(self, config: Optional[HaarCascadeLocalizerConfig] = None) -> None:
        self.config = config or HaarCascadeLocalizerConfig()
        cascade_path = cv2.data.haarcascades + self.config.cascade_file
        self._cascade = cv2.CascadeClassifier(cascade_path)
        if self._cascade.empty():
            raise RuntimeError(f"Unable to load Haar cascade {cascade_path}")

    def locate(self, image: np.ndarray) -> List[FaceBox]:
        gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        size = self.config.min_face_size
        found = self._cascade.detectMultiScale(
            gray,
            scaleFactor=self.config.scale_factor,
            minNeighbors=self.config.min_neighbors,
            minSize=(size, size),
        )
        return [
            FaceBox(x1=int(x), y1=int(y), x2=int(x + w), y2=int(y + h))
            for (x, y, w, h) in found
        ]
