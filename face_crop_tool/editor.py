"""
Pointer-driven crop editor state machine (Qt-free).

An ``EditSession`` holds the rectangle being edited plus the pointer state
(idle, dragging, or resizing from one corner handle).  Pointer events are
given in display coordinates; ``display_scale`` (displayed canvas width /
image width) maps them into image pixels.  Every transition happens
synchronously inside the event call, so a sequence of synthetic events
fully determines the resulting rectangles.
"""

import logging
from enum import Enum

from face_crop_tool.config import EDITOR_MAX_DIM, HANDLE_FRACTION, HANDLE_MIN_SIZE
from face_crop_tool.geometry import HANDLES, clamp_rect, resize_from_handle
from face_crop_tool.models import CropRect, SessionClosedError

logger = logging.getLogger(__name__)


class EditState(Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    RESIZING = "resizing"


def fit_display_scale(img_w: int, img_h: int, max_dim: int = EDITOR_MAX_DIM) -> float:
    """Scale that fits the image into a *max_dim* canvas (never upscales)."""
    if img_w <= max_dim and img_h <= max_dim:
        return 1.0
    return min(max_dim / img_w, max_dim / img_h)


class EditSession:
    """Interactive edit of one record's crop rectangle."""

    def __init__(
        self,
        record_id: str,
        img_w: int,
        img_h: int,
        aspect: float,
        rect: CropRect,
        display_scale: float = 1.0,
    ):
        if display_scale <= 0:
            raise ValueError(f"display_scale must be positive, got {display_scale}")
        self.record_id = record_id
        self.img_w = img_w
        self.img_h = img_h
        self.aspect = aspect
        self.rect = rect.copy()
        self.display_scale = display_scale

        self.state = EditState.IDLE
        self.handle: str | None = None
        self._last_pos: tuple[float, float] | None = None
        self._closed = False

    # --- Properties ---

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def display_size(self) -> tuple[int, int]:
        return round(self.img_w * self.display_scale), round(self.img_h * self.display_scale)

    def display_rect(self) -> tuple[float, float, float, float]:
        """The crop as ``(x, y, w, h)`` in display coordinates."""
        s = self.display_scale
        return self.rect.x * s, self.rect.y * s, self.rect.width * s, self.rect.height * s

    def handle_size(self) -> float:
        _, _, dw, dh = self.display_rect()
        return max(HANDLE_MIN_SIZE, HANDLE_FRACTION * min(dw, dh))

    def handle_centers(self) -> dict[str, tuple[float, float]]:
        dx, dy, dw, dh = self.display_rect()
        return {
            "nw": (dx, dy),
            "ne": (dx + dw, dy),
            "sw": (dx, dy + dh),
            "se": (dx + dw, dy + dh),
        }

    # --- Hit testing ---

    def hit_test(self, px: float, py: float) -> tuple[EditState, str | None]:
        """Return the state a pointer-down at ``(px, py)`` would enter."""
        half = self.handle_size() / 2
        centers = self.handle_centers()
        for name in HANDLES:
            hx, hy = centers[name]
            if abs(px - hx) <= half and abs(py - hy) <= half:
                return EditState.RESIZING, name
        dx, dy, dw, dh = self.display_rect()
        if dx <= px <= dx + dw and dy <= py <= dy + dh:
            return EditState.DRAGGING, None
        return EditState.IDLE, None

    # --- Pointer events ---

    def pointer_down(self, px: float, py: float) -> CropRect:
        self._ensure_open()
        self.state, self.handle = self.hit_test(px, py)
        self._last_pos = (px, py)
        logger.debug("pointer down at (%.1f, %.1f): %s %s", px, py, self.state.value, self.handle or "")
        return self.rect.copy()

    def pointer_move(self, px: float, py: float) -> CropRect:
        self._ensure_open()
        if self.state is EditState.IDLE or self._last_pos is None:
            return self.rect.copy()

        last_x, last_y = self._last_pos
        dx = (px - last_x) / self.display_scale
        dy = (py - last_y) / self.display_scale

        if self.state is EditState.DRAGGING:
            self.rect = clamp_rect(self.rect.translated(dx, dy), self.img_w, self.img_h)
        else:
            self.rect = resize_from_handle(
                self.rect, self.handle, dx, self.aspect, self.img_w, self.img_h,
            )
        self._last_pos = (px, py)
        return self.rect.copy()

    def pointer_up(self) -> CropRect:
        self.state = EditState.IDLE
        self.handle = None
        self._last_pos = None
        return self.rect.copy()

    # --- Keyboard ---

    def nudge(self, dx: float, dy: float) -> CropRect:
        """Move the crop by ``(dx, dy)`` image pixels, staying in bounds."""
        self._ensure_open()
        self.rect = clamp_rect(self.rect.translated(dx, dy), self.img_w, self.img_h)
        return self.rect.copy()

    # --- Resolution ---

    def save(self) -> CropRect:
        """Close the session and return the edited rectangle."""
        self._ensure_open()
        self.pointer_up()
        self._closed = True
        logger.debug("Edit session for %s saved: %s", self.record_id, self.rect)
        return self.rect.copy()

    def cancel(self) -> None:
        self.pointer_up()
        self._closed = True

    def _ensure_open(self):
        if self._closed:
            raise SessionClosedError(f"Edit session for {self.record_id} is closed")
