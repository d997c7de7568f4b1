"""
Application entry point, logging setup and dark-theme stylesheet.

Usage:
    python -m face_crop_tool
    face-crop-tool          (after pip install)
"""

import logging
import os
import sys

from PyQt6.QtWidgets import QApplication

from face_crop_tool.config import DETECTOR_NAME, LOG_LEVEL_DEFAULT, LOG_LEVEL_ENV
from face_crop_tool.detection import FaceDetector, create_detector
from face_crop_tool.main_window import MainWindow
from face_crop_tool.session import CropSession

logger = logging.getLogger("face_crop_tool")

DARK_STYLESHEET = """
    QMainWindow { background: #2b2b2b; }
    QWidget { background: #2b2b2b; color: #ddd; font-size: 10pt; }
    QListWidget { background: #1e1e1e; border: 1px solid #444; }
    QListWidget::item { padding: 4px; }
    QListWidget::item:selected { background: #3a6ea5; }
    QGroupBox { border: 1px solid #555; border-radius: 4px; margin-top: 8px; padding-top: 12px; font-weight: bold; }
    QGroupBox::title { subcontrol-origin: margin; left: 8px; padding: 0 4px; }
    QPushButton { background: #3a3a3a; border: 1px solid #555; border-radius: 4px; padding: 6px 12px; }
    QPushButton:hover { background: #4a4a4a; }
    QPushButton:pressed { background: #2a2a2a; }
    QPushButton:disabled { color: #666; }
    QComboBox { background: #3a3a3a; border: 1px solid #555; padding: 2px 8px; }
    QToolBar { background: #333; border-bottom: 1px solid #444; spacing: 4px; padding: 4px; }
    QStatusBar { background: #333; border-top: 1px solid #444; }
"""


def setup_logging(level: str = LOG_LEVEL_DEFAULT) -> logging.Logger:
    """Attach a console handler to the package logger (once)."""
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Prevent duplicate handlers on repeated setup calls
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    logger.addHandler(handler)
    return logger


def build_detector(name: str = DETECTOR_NAME) -> FaceDetector | None:
    """Create the face detector, or None if it cannot be initialised."""
    try:
        return create_detector(name)
    except (ImportError, RuntimeError, ValueError) as exc:
        logger.warning("Face detector unavailable (%s); using centered crops", exc)
        return None


def main():
    setup_logging(os.environ.get(LOG_LEVEL_ENV, LOG_LEVEL_DEFAULT))

    app = QApplication(sys.argv)
    app.setStyleSheet(DARK_STYLESHEET)

    session = CropSession(detector=build_detector())
    window = MainWindow(session)
    window.show()

    try:
        sys.exit(app.exec())
    except (SystemExit, KeyboardInterrupt):
        pass


if __name__ == "__main__":
    main()
