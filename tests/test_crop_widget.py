from __future__ import annotations

import os

import pytest

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
pytest.importorskip("PyQt6.QtWidgets")

from PIL import Image  # noqa: E402
from PyQt6.QtCore import QEvent, QPointF, Qt  # noqa: E402
from PyQt6.QtGui import QKeyEvent, QMouseEvent  # noqa: E402
from PyQt6.QtWidgets import QApplication  # noqa: E402

from face_crop_tool.crop_widget import (  # noqa: E402
    CropEditorDialog, CropEditorWidget, encoded_to_qpixmap, pil_to_qpixmap,
)
from face_crop_tool.compositor import Compositor  # noqa: E402
from face_crop_tool.editor import EditSession  # noqa: E402
from face_crop_tool.models import CropRect  # noqa: E402


@pytest.fixture(scope="module")
def qapp():
    app = QApplication.instance() or QApplication([])
    yield app


@pytest.fixture
def edit():
    return EditSession("rec", 800, 600, 1.0, CropRect(100, 100, 200, 200), display_scale=0.5)


@pytest.fixture
def image():
    return Image.new("RGB", (800, 600), (120, 120, 120))


def _mouse(kind, x, y, buttons=Qt.MouseButton.LeftButton):
    pos = QPointF(x, y)
    return QMouseEvent(
        kind, pos, pos, Qt.MouseButton.LeftButton, buttons, Qt.KeyboardModifier.NoModifier,
    )


def test_pil_to_qpixmap_keeps_size(qapp):
    pixmap = pil_to_qpixmap(Image.new("RGBA", (37, 21), (1, 2, 3, 255)))
    assert (pixmap.width(), pixmap.height()) == (37, 21)


def test_encoded_to_qpixmap(qapp, image):
    encoded = Compositor().render_preview(image, CropRect(100, 0, 600, 600))
    pixmap = encoded_to_qpixmap(encoded)
    assert (pixmap.width(), pixmap.height()) == (encoded.width, encoded.height)


def test_widget_is_sized_to_display(qapp, edit, image):
    widget = CropEditorWidget()
    widget.set_session(edit, image)
    assert (widget.width(), widget.height()) == (400, 300)
    assert widget.session() is edit


def test_mouse_drag_moves_crop(qapp, edit, image):
    widget = CropEditorWidget()
    widget.set_session(edit, image)
    changes = []
    widget.crop_changed.connect(lambda: changes.append(edit.rect))

    widget.mousePressEvent(_mouse(QEvent.Type.MouseButtonPress, 100, 100))
    widget.mouseMoveEvent(_mouse(QEvent.Type.MouseMove, 110, 105))
    widget.mouseReleaseEvent(_mouse(QEvent.Type.MouseButtonRelease, 110, 105, Qt.MouseButton.NoButton))

    assert edit.rect == CropRect(120, 110, 200, 200)
    assert len(changes) == 1


def test_hover_does_not_move_crop(qapp, edit, image):
    widget = CropEditorWidget()
    widget.set_session(edit, image)
    widget.mouseMoveEvent(_mouse(QEvent.Type.MouseMove, 120, 120, Qt.MouseButton.NoButton))
    assert edit.rect == CropRect(100, 100, 200, 200)


def test_arrow_keys_nudge(qapp, edit, image):
    widget = CropEditorWidget()
    widget.set_session(edit, image)

    widget.keyPressEvent(QKeyEvent(QEvent.Type.KeyPress, Qt.Key.Key_Right, Qt.KeyboardModifier.NoModifier))
    widget.keyPressEvent(QKeyEvent(QEvent.Type.KeyPress, Qt.Key.Key_Down, Qt.KeyboardModifier.ShiftModifier))
    assert edit.rect == CropRect(101, 110, 200, 200)

    widget.keyPressEvent(QKeyEvent(QEvent.Type.KeyPress, Qt.Key.Key_Left, Qt.KeyboardModifier.ShiftModifier))
    widget.keyPressEvent(QKeyEvent(QEvent.Type.KeyPress, Qt.Key.Key_Up, Qt.KeyboardModifier.NoModifier))
    assert edit.rect == CropRect(91, 109, 200, 200)


def test_dialog_cancel_closes_session(qapp, edit, image):
    dialog = CropEditorDialog(edit, image, "photo.png")
    dialog.reject()
    assert edit.closed


def test_pointer_moves_reuse_scaled_base(qapp, monkeypatch):
    photo = Image.new("RGB", (3000, 2000), (80, 90, 100))
    session = EditSession("big", 3000, 2000, 1.0, CropRect(0, 0, 2000, 2000), display_scale=0.25)
    widget = CropEditorWidget()
    widget.set_session(session, photo)

    resized = []
    original = Image.Image.resize

    def counting_resize(self, *args, **kwargs):
        resized.append(self.size)
        return original(self, *args, **kwargs)

    monkeypatch.setattr(Image.Image, "resize", counting_resize)

    # se handle of the crop sits at display (500, 500)
    widget.mousePressEvent(_mouse(QEvent.Type.MouseButtonPress, 500, 500))
    for step in range(1, 6):
        widget.mouseMoveEvent(_mouse(QEvent.Type.MouseMove, 500 - step * 10, 500))
    widget.mouseReleaseEvent(_mouse(QEvent.Type.MouseButtonRelease, 450, 500, Qt.MouseButton.NoButton))

    assert session.rect.width == pytest.approx(1800)
    assert resized == []
