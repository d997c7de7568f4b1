"""
Face detection capability.

``FaceDetector`` is the interface the session consumes: ``detect`` returns
detections ordered from most to least confident.  ``HaarFaceDetector`` is the
bundled OpenCV implementation.  ``detect_face`` is the best-effort wrapper
used by the session: a missing detector, a failing call, an empty result or
a malformed box all mean "no face".
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
from PIL import Image

from face_crop_tool.config import (
    DETECTOR_MAX_SIDE, DETECTOR_MIN_FACE, DETECTOR_MIN_NEIGHBORS, DETECTOR_SCALE_FACTOR,
)
from face_crop_tool.models import BoundingBox

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Detection:
    box: BoundingBox
    confidence: float


class FaceDetector(ABC):
    """Interface for face detectors."""

    @abstractmethod
    def detect(self, image: Image.Image) -> list[Detection]:
        """Return detections for *image*, most confident first.

        Boxes are in the pixel coordinates of *image*.
        """

    def close(self) -> None:
        """Release model resources."""


class HaarFaceDetector(FaceDetector):
    """Frontal-face detector backed by an OpenCV Haar cascade.

    Confidence is the cascade's level weight.  ``detectMultiScale3`` is not
    safe to call concurrently on one classifier, so calls are serialized.
    """

    def __init__(
        self,
        cascade_path: str | None = None,
        scale_factor: float = DETECTOR_SCALE_FACTOR,
        min_neighbors: int = DETECTOR_MIN_NEIGHBORS,
        min_face: int = DETECTOR_MIN_FACE,
        max_side: int = DETECTOR_MAX_SIDE,
    ):
        import cv2

        self._cv2 = cv2
        if cascade_path is None:
            cascade_path = cv2.data.haarcascades + "haarcascade_frontalface_default.xml"
        self._cascade = cv2.CascadeClassifier(cascade_path)
        if self._cascade.empty():
            raise RuntimeError(f"Could not load Haar cascade from {cascade_path}")
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_face = min_face
        self.max_side = max_side
        self._lock = threading.Lock()

    def detect(self, image: Image.Image) -> list[Detection]:
        gray, scale = self._prepare(image)
        with self._lock:
            rects, _levels, weights = self._cascade.detectMultiScale3(
                gray,
                scaleFactor=self.scale_factor,
                minNeighbors=self.min_neighbors,
                minSize=(self.min_face, self.min_face),
                outputRejectLevels=True,
            )
        detections = []
        for (x, y, w, h), weight in zip(np.asarray(rects).reshape(-1, 4), np.ravel(weights)):
            box = BoundingBox(float(x) * scale, float(y) * scale, float(w) * scale, float(h) * scale)
            detections.append(Detection(box, float(weight)))
        detections.sort(key=lambda d: d.confidence, reverse=True)
        return detections

    def _prepare(self, image: Image.Image) -> tuple[np.ndarray, float]:
        """Grayscale array, downscaled so the longest side is at most ``max_side``."""
        long_side = max(image.width, image.height)
        scale = 1.0
        if self.max_side > 0 and long_side > self.max_side:
            scale = long_side / self.max_side
            new_size = (int(round(image.width / scale)), int(round(image.height / scale)))
            image = image.resize(new_size, Image.Resampling.LANCZOS)
        gray = np.asarray(image.convert("L"))
        return self._cv2.equalizeHist(gray), scale


def create_detector(name: str = "haar", **kwargs) -> FaceDetector:
    name_l = name.lower()
    if name_l == "haar":
        return HaarFaceDetector(**kwargs)
    raise ValueError(f"Unknown detector: {name}")


def detect_face(detector: FaceDetector | None, image: Image.Image) -> BoundingBox | None:
    """Best-effort single face: the most confident usable detection, or None."""
    if detector is None:
        logger.debug("No detector available, skipping face detection")
        return None
    try:
        detections = detector.detect(image)
    except Exception as exc:
        logger.warning("Face detection failed: %s", exc)
        return None
    if not detections:
        return None
    box = detections[0].box
    if not box.is_usable(image.width, image.height):
        logger.warning("Ignoring malformed face box %s", box)
        return None
    return box
