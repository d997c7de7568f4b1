"""
Preview and export rendering (Qt-free).

``Compositor.render_preview`` draws the full image dimmed outside the crop
with the crop outline, corner handles and an optional face outline.
``render_export`` cuts the crop out at native resolution and encodes it as
JPEG.  Scratch canvases come from a ``BufferPool`` and are released after
every call; callers only ever receive freshly encoded bytes or a copied
image, so results never alias a pooled buffer.
"""

import io
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager

from PIL import Image, ImageDraw

from face_crop_tool.config import (
    CROP_OUTLINE_COLOR, CROP_OUTLINE_WIDTH, DIM_ALPHA, EDITOR_OUTLINE_COLOR,
    FACE_OUTLINE_COLOR, FACE_OUTLINE_WIDTH, HANDLE_COLOR, HANDLE_FRACTION,
    HANDLE_MIN_SIZE, JPEG_QUALITY, JPEG_SUBSAMPLING, PREVIEW_MAX_DIM,
)
from face_crop_tool.models import BoundingBox, CropRect, EncodedImage, ExportError

logger = logging.getLogger(__name__)


# =============================================================================
# Scratch buffer pool
# =============================================================================
class BufferPool:
    """Thread-safe pool of reusable RGBA canvases keyed by size."""

    def __init__(self, max_per_size: int = 2):
        self._max_per_size = max_per_size
        self._free: dict[tuple[int, int], list[Image.Image]] = defaultdict(list)
        self._lock = threading.Lock()

    @contextmanager
    def acquire(self, size: tuple[int, int]):
        """Yield an RGBA canvas of *size*; contents are undefined."""
        with self._lock:
            free = self._free[size]
            buf = free.pop() if free else None
        if buf is None:
            buf = Image.new("RGBA", size)
        try:
            yield buf
        finally:
            with self._lock:
                free = self._free[size]
                if len(free) < self._max_per_size:
                    free.append(buf)

    def available(self, size: tuple[int, int]) -> int:
        with self._lock:
            return len(self._free.get(size, ()))


# =============================================================================
# Helpers
# =============================================================================
def preview_scale(img_w: int, img_h: int, max_dim: int) -> float:
    longest = max(img_w, img_h)
    return 1.0 if longest <= max_dim else max_dim / longest


def handle_size(display_w: float, display_h: float) -> float:
    return max(HANDLE_MIN_SIZE, HANDLE_FRACTION * min(display_w, display_h))


def display_base(image: Image.Image, scale: float) -> Image.Image:
    """RGBA copy of *image* resampled to *scale*, the backdrop for overlays."""
    size = (max(1, round(image.width * scale)), max(1, round(image.height * scale)))
    base = image.convert("RGBA")
    if size != base.size:
        base = base.resize(size, Image.Resampling.LANCZOS)
    return base


def pixel_box(rect: CropRect, img_w: int, img_h: int) -> tuple[int, int, int, int]:
    """Integer crop box of ``round(width) x round(height)`` kept inside the image."""
    crop_w = max(1, min(int(round(rect.width)), img_w))
    crop_h = max(1, min(int(round(rect.height)), img_h))
    left = max(0, min(int(round(rect.x)), img_w - crop_w))
    top = max(0, min(int(round(rect.y)), img_h - crop_h))
    return left, top, left + crop_w, top + crop_h


# =============================================================================
# Compositor
# =============================================================================
class Compositor:
    """Renders crop previews and final exports."""

    def __init__(
        self,
        preview_max_dim: int = PREVIEW_MAX_DIM,
        jpeg_quality: int = JPEG_QUALITY,
        pool: BufferPool | None = None,
    ):
        self.preview_max_dim = preview_max_dim
        self.jpeg_quality = jpeg_quality
        self.pool = pool or BufferPool()

    def render_preview(
        self,
        image: Image.Image,
        crop: CropRect,
        face_box: BoundingBox | None = None,
    ) -> EncodedImage:
        """Display-sized PNG of the framing, capped at ``preview_max_dim``."""
        scale = preview_scale(image.width, image.height, self.preview_max_dim)
        frame = self._compose(display_base(image, scale), crop, scale, face_box, CROP_OUTLINE_COLOR)
        try:
            return _encode(frame, "PNG")
        finally:
            frame.close()

    def render_editor_frame(self, base: Image.Image, crop: CropRect, display_scale: float) -> Image.Image:
        """Editor canvas over *base*, returned as a new RGB image.

        *base* is the source already scaled by ``display_base``; it is built
        once per edit so pointer moves only redraw the overlay.
        """
        return self._compose(base, crop, display_scale, None, EDITOR_OUTLINE_COLOR)

    def render_export(self, image: Image.Image, crop: CropRect) -> EncodedImage:
        """JPEG of exactly the crop region at native resolution."""
        box = pixel_box(crop, image.width, image.height)
        logger.debug("Export box %s from %dx%d source", box, image.width, image.height)
        try:
            cropped = image.convert("RGB").crop(box)
            return _encode(
                cropped, "JPEG",
                quality=self.jpeg_quality, subsampling=JPEG_SUBSAMPLING, optimize=True,
            )
        except (OSError, ValueError) as exc:
            raise ExportError(f"Could not export crop {box}: {exc}") from exc

    # --- Drawing ---

    def _compose(
        self,
        base: Image.Image,
        crop: CropRect,
        scale: float,
        face_box: BoundingBox | None,
        outline: tuple[int, int, int, int],
    ) -> Image.Image:
        disp_w, disp_h = base.size

        sx, sy = crop.x * scale, crop.y * scale
        sw, sh = crop.width * scale, crop.height * scale

        with self.pool.acquire((disp_w, disp_h)) as canvas, self.pool.acquire((disp_w, disp_h)) as shade:
            canvas.paste(base, (0, 0))

            # Dim everything, then punch the crop region back out
            shade_draw = ImageDraw.Draw(shade)
            shade_draw.rectangle((0, 0, disp_w, disp_h), fill=(0, 0, 0, DIM_ALPHA))
            shade_draw.rectangle((sx, sy, sx + sw, sy + sh), fill=(0, 0, 0, 0))
            canvas.alpha_composite(shade)

            draw = ImageDraw.Draw(canvas)
            draw.rectangle((sx, sy, sx + sw, sy + sh), outline=outline, width=CROP_OUTLINE_WIDTH)

            hs = handle_size(sw, sh) / 2
            for hx, hy in ((sx, sy), (sx + sw, sy), (sx, sy + sh), (sx + sw, sy + sh)):
                draw.rectangle((hx - hs, hy - hs, hx + hs, hy + hs), fill=HANDLE_COLOR)

            if face_box is not None:
                fx, fy = face_box.origin_x * scale, face_box.origin_y * scale
                draw.rectangle(
                    (fx, fy, fx + face_box.width * scale, fy + face_box.height * scale),
                    outline=FACE_OUTLINE_COLOR, width=FACE_OUTLINE_WIDTH,
                )
            return canvas.convert("RGB")


def _encode(img: Image.Image, fmt: str, **save_kwargs) -> EncodedImage:
    buf = io.BytesIO()
    img.save(buf, fmt, **save_kwargs)
    return EncodedImage(data=buf.getvalue(), format=fmt, width=img.width, height=img.height)
