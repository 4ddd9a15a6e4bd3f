import cv2
import numpy as np
import pytest

from face_attendance.frame_source import CameraFrameSource, ImageFileFrameSource


class _FakeVideoCapture:
    def __init__(self, frames, opened=True):
        self._frames = list(frames)
        self._opened = opened
        self.released = False

    def isOpened(self):
        return self._opened

    def read(self):
        if not self._frames:
            return False, None
        return True, self._frames.pop(0)

    def release(self):
        self.released = True


def test_camera_returns_one_frame_per_call(monkeypatch):
    frames = [np.full((4, 4, 3), idx, dtype=np.uint8) for idx in range(2)]
    capture = _FakeVideoCapture(frames)
    monkeypatch.setattr(
        "face_attendance.frame_source.cv2.VideoCapture", lambda source: capture
    )
    with CameraFrameSource(0) as source:
        assert source.acquire_frame()[0, 0, 0] == 0
        assert source.acquire_frame()[0, 0, 0] == 1
        with pytest.raises(RuntimeError):
            source.acquire_frame()
    assert capture.released is True


def test_camera_that_cannot_open(monkeypatch):
    monkeypatch.setattr(
        "face_attendance.frame_source.cv2.VideoCapture",
        lambda source: _FakeVideoCapture([], opened=False),
    )
    with pytest.raises(RuntimeError):
        CameraFrameSource(3).acquire_frame()


def test_image_files_in_order(tmp_path):
    paths = []
    for idx in range(2):
        path = tmp_path / f"{idx}.png"
        cv2.imwrite(str(path), np.full((4, 4, 3), idx * 10, dtype=np.uint8))
        paths.append(path)
    source = ImageFileFrameSource(paths)
    assert source.acquire_frame()[0, 0, 0] == 0
    assert source.acquire_frame()[0, 0, 0] == 10
    with pytest.raises(EOFError):
        source.acquire_frame()
