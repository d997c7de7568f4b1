"""
Application constants and configuration.

All crop-editor behaviour, preview rendering, export encoding and face
detector tuning is controlled from here.  The values are plain module
constants so that both the GUI and the Qt-free session/worker modules can
import them without side effects.
"""

import os

# =============================================================================
# APP IDENTITY
# =============================================================================
APP_NAME = "face-crop-tool"

# Environment variable read by ``app.setup_logging`` (DEBUG, INFO, WARNING…)
LOG_LEVEL_ENV = "FACE_CROP_LOG_LEVEL"
LOG_LEVEL_DEFAULT = "INFO"

# =============================================================================
# ASPECT RATIOS
# =============================================================================
SUPPORTED_RATIOS = ["1:1", "4:5", "3:4", "9:16", "16:9"]
DEFAULT_RATIO = "1:1"

# Allowed relative error between width / height and the target aspect
ASPECT_TOLERANCE = 1e-3

# =============================================================================
# CROP EDITOR
# =============================================================================
# Minimum crop width (pixels in image coordinates)
MIN_CROP_SIZE = 30

# Corner handles are squares of max(HANDLE_MIN_SIZE, HANDLE_FRACTION * shorter
# displayed side of the crop), in display pixels
HANDLE_MIN_SIZE = 8
HANDLE_FRACTION = 0.06

# Longest side of the editor canvas (display pixels)
EDITOR_MAX_DIM = 800

# Nudge amounts (pixels in image coordinates)
NUDGE_SMALL = 1
NUDGE_LARGE = 10

# =============================================================================
# PREVIEW / EXPORT
# =============================================================================
# Longest side of a rendered preview
PREVIEW_MAX_DIM = 800

# Alpha of the black layer drawn over the area outside the crop
DIM_ALPHA = 102

CROP_OUTLINE_COLOR = (255, 0, 0, 230)
EDITOR_OUTLINE_COLOR = (0, 255, 0, 255)
FACE_OUTLINE_COLOR = (0, 255, 0, 255)
HANDLE_COLOR = (255, 255, 255, 255)
CROP_OUTLINE_WIDTH = 4
FACE_OUTLINE_WIDTH = 3

# JPEG export settings (Pillow subsampling 0 == 4:4:4)
JPEG_QUALITY = 95
JPEG_SUBSAMPLING = 0

EXPORT_SUFFIX = "_cropped"
EXPORT_EXTENSION = ".jpg"

# Supported image extensions
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".bmp", ".tiff", ".tif", ".webp", ".psd"}

# =============================================================================
# FACE DETECTOR
# =============================================================================
DETECTOR_NAME = "haar"
DETECTOR_SCALE_FACTOR = 1.1
DETECTOR_MIN_NEIGHBORS = 5
DETECTOR_MIN_FACE = 24

# Images are downscaled so the longest side is at most this before detection
DETECTOR_MAX_SIDE = 1600


def default_workers() -> int:
    """Worker count for background previews and exports, leaving a core for the UI."""
    return max(1, (os.cpu_count() or 4) - 1)
