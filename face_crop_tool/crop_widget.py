"""
Interactive crop editor widget and Qt image helpers.

This module contains everything that touches both Qt **and** image display:
``pil_to_qpixmap``, ``encoded_to_qpixmap``, the ``CropEditorWidget`` that
feeds mouse and keyboard input into an ``EditSession``, and the
``CropEditorDialog`` that hosts it with Save / Cancel buttons.
"""

from PIL import Image
from PyQt6.QtCore import Qt, pyqtSignal
from PyQt6.QtGui import QColor, QImage, QKeyEvent, QMouseEvent, QPainter, QPaintEvent, QPixmap
from PyQt6.QtWidgets import QDialog, QDialogButtonBox, QLabel, QVBoxLayout, QWidget

from face_crop_tool.compositor import Compositor, display_base
from face_crop_tool.config import NUDGE_LARGE, NUDGE_SMALL
from face_crop_tool.editor import EditSession, EditState
from face_crop_tool.models import EncodedImage


# =============================================================================
# Qt ↔ PIL helpers
# =============================================================================

def pil_to_qpixmap(pil_img: Image.Image) -> QPixmap:
    """Convert a PIL Image to QPixmap."""
    img_rgba = pil_img.convert("RGBA")
    data = img_rgba.tobytes("raw", "RGBA")
    qimg = QImage(data, img_rgba.width, img_rgba.height, QImage.Format.Format_RGBA8888)
    # QImage does not own *data*; copy before it goes out of scope
    return QPixmap.fromImage(qimg.copy())


def encoded_to_qpixmap(encoded: EncodedImage) -> QPixmap:
    pixmap = QPixmap()
    pixmap.loadFromData(encoded.data, encoded.format)
    return pixmap


# =============================================================================
# Crop Editor Widget
# =============================================================================

class CropEditorWidget(QWidget):
    """Shows the editor frame at display scale and drives an ``EditSession``.

    The widget is sized to exactly the displayed canvas, so widget
    coordinates are display coordinates.
    """

    crop_changed = pyqtSignal()

    def __init__(self, compositor: Compositor | None = None, parent=None):
        super().__init__(parent)
        self.setFocusPolicy(Qt.FocusPolicy.StrongFocus)
        self.setMouseTracking(True)
        self._compositor = compositor or Compositor()
        self._session: EditSession | None = None
        self._base: Image.Image | None = None  # source scaled to the display, built once per session
        self._frame: QPixmap | None = None

    def set_session(self, session: EditSession, image: Image.Image):
        self._session = session
        self._base = display_base(image, session.display_scale)
        w, h = session.display_size
        self.setFixedSize(max(1, w), max(1, h))
        self._render()

    def session(self) -> EditSession | None:
        return self._session

    def _render(self):
        if self._session is None or self._base is None:
            self._frame = None
        else:
            frame = self._compositor.render_editor_frame(
                self._base, self._session.rect, self._session.display_scale,
            )
            self._frame = pil_to_qpixmap(frame)
        self.update()

    # --- Painting ---

    def paintEvent(self, event: QPaintEvent):
        painter = QPainter(self)
        painter.fillRect(self.rect(), QColor(30, 30, 30))
        if self._frame is None:
            painter.setPen(QColor(128, 128, 128))
            painter.drawText(self.rect(), Qt.AlignmentFlag.AlignCenter, "No image loaded")
            painter.end()
            return

        painter.drawPixmap(0, 0, self._frame)

        # Crop size label
        rect = self._session.rect
        painter.setPen(QColor(255, 255, 255))
        painter.drawText(
            self.rect().adjusted(4, 4, -4, -4),
            Qt.AlignmentFlag.AlignLeft | Qt.AlignmentFlag.AlignTop,
            f"{round(rect.width)} × {round(rect.height)}",
        )
        painter.end()

    # --- Mouse interaction ---

    def mousePressEvent(self, event: QMouseEvent):
        if event.button() != Qt.MouseButton.LeftButton or self._session is None:
            return
        pos = event.position()
        self._session.pointer_down(pos.x(), pos.y())

    def mouseMoveEvent(self, event: QMouseEvent):
        if self._session is None:
            return
        pos = event.position()

        if self._session.state is EditState.IDLE:
            state, handle = self._session.hit_test(pos.x(), pos.y())
            if state is EditState.RESIZING:
                if handle in ("nw", "se"):
                    self.setCursor(Qt.CursorShape.SizeFDiagCursor)
                else:
                    self.setCursor(Qt.CursorShape.SizeBDiagCursor)
            elif state is EditState.DRAGGING:
                self.setCursor(Qt.CursorShape.SizeAllCursor)
            else:
                self.setCursor(Qt.CursorShape.ArrowCursor)
            return

        self._session.pointer_move(pos.x(), pos.y())
        self.crop_changed.emit()
        self._render()

    def mouseReleaseEvent(self, event: QMouseEvent):
        if event.button() == Qt.MouseButton.LeftButton and self._session is not None:
            self._session.pointer_up()

    # --- Keyboard nudge ---

    def keyPressEvent(self, event: QKeyEvent):
        if self._session is None:
            super().keyPressEvent(event)
            return
        amount = NUDGE_LARGE if event.modifiers() & Qt.KeyboardModifier.ShiftModifier else NUDGE_SMALL
        key = event.key()
        if key == Qt.Key.Key_Left:
            self._session.nudge(-amount, 0)
        elif key == Qt.Key.Key_Right:
            self._session.nudge(amount, 0)
        elif key == Qt.Key.Key_Up:
            self._session.nudge(0, -amount)
        elif key == Qt.Key.Key_Down:
            self._session.nudge(0, amount)
        else:
            super().keyPressEvent(event)
            return
        self.crop_changed.emit()
        self._render()


# =============================================================================
# Editor dialog
# =============================================================================

class CropEditorDialog(QDialog):
    """Modal editor for one record.  ``exec()`` returns Accepted on Save."""

    def __init__(
        self,
        session: EditSession,
        image: Image.Image,
        title: str,
        compositor: Compositor | None = None,
        parent=None,
    ):
        super().__init__(parent)
        self.setWindowTitle(title)
        self._session = session

        layout = QVBoxLayout(self)
        self._info = QLabel("Drag to move, drag a corner to resize, arrows to nudge (Shift = ×10)")
        self._info.setStyleSheet("color: #aaa;")
        layout.addWidget(self._info)

        self.editor = CropEditorWidget(compositor, self)
        self.editor.set_session(session, image)
        layout.addWidget(self.editor, alignment=Qt.AlignmentFlag.AlignCenter)

        buttons = QDialogButtonBox(
            QDialogButtonBox.StandardButton.Save | QDialogButtonBox.StandardButton.Cancel
        )
        buttons.accepted.connect(self.accept)
        buttons.rejected.connect(self.reject)
        layout.addWidget(buttons)

    def reject(self):
        self._session.cancel()
        super().reject()
