from __future__ import annotations

from pathlib import Path
from typing import Iterable, Iterator, Optional, Protocol, Union

import cv2
import numpy as np


class FrameSource(Protocol):
    def acquire_frame(self) -> np.ndarray:
        ...


class CameraFrameSource:
    """Blocking camera capture: one frame per ``acquire_frame`` call."""

    def __init__(self, source: Union[int, str] = 0) -> None:
        self.source = source
        self._cap: Optional[cv2.VideoCapture] = None

    def _open(self) -> cv2.VideoCapture:
        if self._cap is None:
            cap = cv2.VideoCapture(self.source)
            if not cap.isOpened():
                raise RuntimeError(f"Unable to open video source {self.source}")
            self._cap = cap
        return self._cap

    def acquire_frame(self) -> np.ndarray:
        ok, frame = self._open().read()
        if not ok or frame is None:
            raise RuntimeError(f"Unable to read a frame from {self.source}")
        return frame

    def release(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None

    def __enter__(self) -> "CameraFrameSource":
        self._open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class ImageFileFrameSource:
    def __init__(self, paths: Iterable[Union[Path, str]]) -> None:
        self._paths: Iterator[Path] = iter(Path(p) for p in paths)

    def acquire_frame(self) -> np.ndarray:
        try:
            path = next(self._paths)
        except StopIteration:
            raise EOFError("No more images") from None
        frame = cv2.imread(str(path))
        if frame is None:
            raise RuntimeError(f"Unable to read image {path}")
        return frame
