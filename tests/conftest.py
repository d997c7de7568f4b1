from __future__ import annotations

from pathlib import Path

import pytest
from PIL import Image

from face_crop_tool.detection import Detection, FaceDetector
from face_crop_tool.models import BoundingBox


class StubDetector(FaceDetector):
    """Returns fixed boxes (most confident first) and counts calls."""

    def __init__(self, *boxes: BoundingBox):
        self.boxes = boxes
        self.calls = 0

    def detect(self, image):
        self.calls += 1
        return [Detection(b, 0.9 - i * 0.1) for i, b in enumerate(self.boxes)]


class FailingDetector(FaceDetector):
    def __init__(self):
        self.calls = 0

    def detect(self, image):
        self.calls += 1
        raise RuntimeError("model crashed")


@pytest.fixture
def make_image(tmp_path: Path):
    def _make(name: str, size: tuple[int, int], color=(128, 128, 128)) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        Image.new("RGB", size, color).save(path)
        return path

    return _make


@pytest.fixture
def broken_file(tmp_path: Path) -> Path:
    path = tmp_path / "broken.png"
    path.write_bytes(b"definitely not a png")
    return path
