"""
Qt-free image I/O utilities.

Decodes source images (PSD through psd-tools, everything else through
Pillow) into upright RGB rasters, filters supported files and names export
files.  Safe to import in worker threads.
"""

import logging
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError
from psd_tools import PSDImage

from face_crop_tool.config import EXPORT_EXTENSION, EXPORT_SUFFIX, IMAGE_EXTENSIONS
from face_crop_tool.models import ImageLoadError

logger = logging.getLogger(__name__)

# Allow very large images (Pillow's default limit is ~178MP)
Image.MAX_IMAGE_PIXELS = None


def is_supported(path: Path) -> bool:
    return path.suffix.lower() in IMAGE_EXTENSIONS


def open_image(path: Path) -> Image.Image:
    """Open an image file, using psd-tools for PSD and Pillow for the rest."""
    if path.suffix.lower() == ".psd":
        psd = PSDImage.open(str(path))
        return psd.composite()
    return Image.open(path)


def load_raster(path: Path) -> Image.Image:
    """Fully decode *path* into an upright RGB image.

    EXIF orientation is applied so that crop coordinates match what a
    viewer displays.  Any decoding problem is raised as ``ImageLoadError``.
    """
    try:
        img = open_image(path)
        img.load()
        img = ImageOps.exif_transpose(img)
        if img.mode != "RGB":
            img = img.convert("RGB")
    except (OSError, ValueError, UnidentifiedImageError) as exc:
        raise ImageLoadError(f"Cannot decode {path.name}: {exc}") from exc
    if img.width <= 0 or img.height <= 0:
        raise ImageLoadError(f"Empty image: {path.name}")
    logger.debug("Loaded %s (%dx%d)", path.name, img.width, img.height)
    return img


def export_filename(path: Path) -> str:
    """``photo.png`` -> ``photo_cropped.jpg``."""
    return f"{path.stem}{EXPORT_SUFFIX}{EXPORT_EXTENSION}"


def unique_path(out_path: Path) -> Path:
    """Return a unique path by appending -01, -02, etc. if file already exists."""
    if not out_path.exists():
        return out_path
    stem = out_path.stem
    suffix = out_path.suffix
    parent = out_path.parent
    counter = 1
    while True:
        candidate = parent / f"{stem}-{counter:02d}{suffix}"
        if not candidate.exists():
            return candidate
        counter += 1
