from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np

from .errors import InvalidArgument
from .face_types import FaceBox

# ArcFace models consume 112x112 crops.
DEFAULT_FACE_SIZE: Tuple[int, int] = (112, 112)


def crop_face(image: np.ndarray, box: FaceBox) -> np.ndarray:
    height, width = image.shape[:2]
    x1 = max(0, box.x1)
    y1 = max(0, box.y1)
    x2 = min(width, box.x2)
    y2 = min(height, box.y2)
    if x2 <= x1 or y2 <= y1:
        raise InvalidArgument(f"Face box {box.as_tuple()} lies outside the image")
    return image[y1:y2, x1:x2].copy()


def preprocess_face(
    face: np.ndarray, size: Tuple[int, int] = DEFAULT_FACE_SIZE
) -> np.ndarray:
    """Normalize lighting and size of a BGR face crop.

    The value channel is histogram-equalized in HSV space before resizing to
    ``size`` (width, height). Enrollment and live queries must go through the
    same function or their embeddings drift apart.
    """
    if face is None or face.size == 0:
        raise InvalidArgument("Cannot preprocess an empty face crop")
    if face.ndim == 2:
        face = cv2.cvtColor(face, cv2.COLOR_GRAY2BGR)
    hsv = cv2.cvtColor(face, cv2.COLOR_BGR2HSV)
    hsv[:, :, 2] = cv2.equalizeHist(hsv[:, :, 2])
    bgr = cv2.cvtColor(hsv, cv2.COLOR_HSV2BGR)
    return cv2.resize(bgr, size, interpolation=cv2.INTER_LINEAR)
