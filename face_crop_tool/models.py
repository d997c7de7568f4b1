"""
Data models shared by the geometry core, the compositor and the session.

CropRect, BoundingBox and AspectRatio are small value types in image-pixel
coordinates.  ImageRecord tracks everything known about one loaded file
(cached raster, detection, manual override, rendered preview and export).
The exception classes at the bottom form the per-record error taxonomy.
"""

import io
import math
import threading
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from PIL import Image

from face_crop_tool.config import SUPPORTED_RATIOS


# =============================================================================
# Geometry value types
# =============================================================================
@dataclass
class CropRect:
    """Crop rectangle in image coordinates (float-valued)."""
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    def translated(self, dx: float, dy: float) -> "CropRect":
        return replace(self, x=self.x + dx, y=self.y + dy)

    def copy(self) -> "CropRect":
        return replace(self)

    def as_box(self) -> tuple[int, int, int, int]:
        """Integer ``(left, top, right, bottom)`` box for ``Image.crop``.

        The size is rounded independently of the origin so that the crop
        is always ``round(width) x round(height)`` pixels.
        """
        left = int(round(self.x))
        top = int(round(self.y))
        return left, top, left + int(round(self.width)), top + int(round(self.height))


@dataclass(frozen=True)
class BoundingBox:
    """Face region reported by a detector, in image pixels.

    The box is not guaranteed to lie inside the image.
    """
    origin_x: float
    origin_y: float
    width: float
    height: float

    @property
    def center(self) -> tuple[float, float]:
        return self.origin_x + self.width / 2, self.origin_y + self.height / 2

    def is_usable(self, img_w: int, img_h: int) -> bool:
        """True if the box is finite, non-empty and overlaps the image."""
        values = (self.origin_x, self.origin_y, self.width, self.height)
        if not all(math.isfinite(v) for v in values):
            return False
        if self.width <= 0 or self.height <= 0:
            return False
        if self.origin_x >= img_w or self.origin_y >= img_h:
            return False
        return self.origin_x + self.width > 0 and self.origin_y + self.height > 0


@dataclass(frozen=True)
class AspectRatio:
    """Target ratio ``rw:rh``."""
    rw: float
    rh: float

    def __post_init__(self):
        if not (math.isfinite(self.rw) and math.isfinite(self.rh)) or self.rw <= 0 or self.rh <= 0:
            raise ValueError(f"Aspect ratio parts must be positive: {self.rw}:{self.rh}")

    @classmethod
    def parse(cls, token: str) -> "AspectRatio":
        """Parse a ``"4:5"`` style token."""
        parts = token.strip().split(":")
        if len(parts) != 2:
            raise ValueError(f"Invalid aspect ratio token: {token!r}")
        try:
            rw, rh = float(parts[0]), float(parts[1])
        except ValueError:
            raise ValueError(f"Invalid aspect ratio token: {token!r}") from None
        return cls(rw, rh)

    @property
    def value(self) -> float:
        return self.rw / self.rh

    @property
    def token(self) -> str:
        def fmt(v: float) -> str:
            return str(int(v)) if float(v).is_integer() else str(v)
        return f"{fmt(self.rw)}:{fmt(self.rh)}"

    def __str__(self) -> str:
        return self.token


def supported_ratios() -> list[AspectRatio]:
    return [AspectRatio.parse(t) for t in SUPPORTED_RATIOS]


# =============================================================================
# Rendered output
# =============================================================================
@dataclass(frozen=True)
class EncodedImage:
    """An encoded raster (PNG or JPEG bytes) plus its pixel size."""
    data: bytes
    format: str
    width: int
    height: int

    def decode(self) -> Image.Image:
        """Decode into a new, fully loaded PIL image."""
        img = Image.open(io.BytesIO(self.data))
        img.load()
        return img


# =============================================================================
# Per-image record
# =============================================================================
class RecordStatus(Enum):
    PENDING = "pending"
    READY = "ready"
    LOAD_FAILED = "load_failed"
    PREVIEW_FAILED = "preview_failed"
    EXPORT_FAILED = "export_failed"


@dataclass(eq=False)
class ImageRecord:
    """Tracks detection, override and rendered state for one source image."""
    path: Path
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    image: Image.Image | None = field(default=None, repr=False)
    preview: EncodedImage | None = field(default=None, repr=False)
    output: EncodedImage | None = field(default=None, repr=False)
    detection: BoundingBox | None = None
    detected: bool = False   # detection has been attempted
    manual_crop: CropRect | None = None
    loading: bool = True
    status: RecordStatus = RecordStatus.PENDING
    error: str | None = None
    generation: int = 0      # bumped by every new refresh request or removal
    revision: int = 0        # bumped whenever the authoritative crop may change
    removed: bool = False
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def size(self) -> tuple[int, int] | None:
        if self.image is None:
            return None
        return self.image.width, self.image.height

    def release(self) -> None:
        """Drop every derived raster held by the record."""
        if self.image is not None:
            self.image.close()
        self.image = None
        self.preview = None
        self.output = None


# =============================================================================
# Errors
# =============================================================================
class FaceCropError(Exception):
    """Base class for errors reported per record."""


class ImageLoadError(FaceCropError):
    """The source image could not be decoded."""


class ExportError(FaceCropError):
    """Compositing or encoding the crop failed."""


class SessionClosedError(FaceCropError):
    """An edit session was used after it was saved or cancelled."""
