"""
Aspect-constrained crop geometry.

Pure functions over ``CropRect``: deriving the default (optionally
face-centered) crop, clamping a moved crop back inside the image, and
resizing from a corner handle while the opposite corner stays put.  None of
them raise for a valid image size; degenerate requests are clamped.
"""

import logging

from face_crop_tool.config import ASPECT_TOLERANCE, MIN_CROP_SIZE
from face_crop_tool.models import BoundingBox, CropRect

logger = logging.getLogger(__name__)

HANDLES = ("nw", "ne", "sw", "se")


# =============================================================================
# Default crop
# =============================================================================
def max_crop_size(img_w: int, img_h: int, aspect: float) -> tuple[float, float]:
    """Largest ``(width, height)`` with ratio *aspect* that fits in the image."""
    if img_w / img_h > aspect:
        crop_h = float(img_h)
        crop_w = crop_h * aspect
    else:
        crop_w = float(img_w)
        crop_h = crop_w / aspect
    return min(crop_w, float(img_w)), min(crop_h, float(img_h))


def focus_point(box: BoundingBox | None, img_w: int, img_h: int) -> tuple[float, float] | None:
    """Center of a detected face box, or None when the box is unusable."""
    if box is None or not box.is_usable(img_w, img_h):
        return None
    return box.center


def derive_default_rect(
    img_w: int,
    img_h: int,
    aspect: float,
    focus: tuple[float, float] | None = None,
) -> CropRect:
    """Maximum crop, centered on *focus* (clamped into bounds) or on the image."""
    crop_w, crop_h = max_crop_size(img_w, img_h, aspect)
    if focus is None:
        cx, cy = img_w / 2, img_h / 2
    else:
        cx, cy = focus
    x = max(0.0, min(img_w - crop_w, cx - crop_w / 2))
    y = max(0.0, min(img_h - crop_h, cy - crop_h / 2))
    return CropRect(x, y, crop_w, crop_h)


# =============================================================================
# Move / resize
# =============================================================================
def clamp_rect(rect: CropRect, img_w: int, img_h: int) -> CropRect:
    """Translate *rect* so it lies inside the image.  Never resizes.

    A rect wider or taller than the image is pinned at 0 on that axis.
    """
    x = max(0.0, min(rect.x, img_w - rect.width))
    y = max(0.0, min(rect.y, img_h - rect.height))
    return CropRect(x, y, rect.width, rect.height)


def resize_from_handle(
    rect: CropRect,
    handle: str,
    delta: float,
    aspect: float,
    img_w: int,
    img_h: int,
) -> CropRect:
    """Resize *rect* by dragging *handle* horizontally by *delta* image pixels.

    The corner opposite *handle* is the anchor and does not move.  Height is
    always re-derived as ``width / aspect``.  The width is first raised to
    ``MIN_CROP_SIZE``, then shrunk so the moving corner stays inside the
    image: the horizontal bound is applied first, then the vertical one is
    rechecked.
    """
    if handle not in HANDLES:
        raise ValueError(f"Unknown handle: {handle!r}")
    if delta == 0:
        return rect.copy()

    west = handle in ("nw", "sw")
    north = handle in ("nw", "ne")

    anchor_x = rect.right if west else rect.x
    anchor_y = rect.bottom if north else rect.y

    new_w = rect.width - delta if west else rect.width + delta
    new_w = max(new_w, MIN_CROP_SIZE)

    # Room between the anchor and the image edge on the moving side
    max_w = anchor_x if west else img_w - anchor_x
    max_h = anchor_y if north else img_h - anchor_y

    if new_w > max_w:
        logger.debug("Resize %s hit horizontal bound: %.1f -> %.1f", handle, new_w, max_w)
        new_w = max_w
    new_h = new_w / aspect
    if new_h > max_h:
        logger.debug("Resize %s hit vertical bound: %.1f -> %.1f", handle, new_h, max_h)
        new_h = max_h
        new_w = new_h * aspect

    if new_w == rect.width:
        return rect.copy()

    new_x = anchor_x - new_w if west else anchor_x
    new_y = anchor_y - new_h if north else anchor_y
    return clamp_rect(CropRect(new_x, new_y, new_w, new_h), img_w, img_h)


# =============================================================================
# Validation
# =============================================================================
def aspect_matches(rect: CropRect, aspect: float, tolerance: float = ASPECT_TOLERANCE) -> bool:
    if rect.width <= 0 or rect.height <= 0:
        return False
    return abs(rect.width / rect.height - aspect) <= tolerance * aspect


def rect_is_valid(rect: CropRect, aspect: float, img_w: int, img_h: int, eps: float = 1e-6) -> bool:
    """Check every crop invariant (positive size, ratio, bounds, minimum width).

    The minimum width is waived when the image cannot hold it.
    """
    if not aspect_matches(rect, aspect):
        return False
    if rect.x < -eps or rect.y < -eps:
        return False
    if rect.right > img_w + eps or rect.bottom > img_h + eps:
        return False
    min_w = min(MIN_CROP_SIZE, max_crop_size(img_w, img_h, aspect)[0])
    return rect.width >= min_w - eps
