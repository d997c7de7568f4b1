"""
Main application window.

Lists the loaded images, shows the framed preview of the selected one, and
exposes ratio selection, manual crop editing, reset, removal and export.
All crop state lives in the ``CropSession``; background updates arrive
through ``record_changed`` so they are handled on the GUI thread.
"""

import logging
from pathlib import Path

from PyQt6.QtCore import Qt, pyqtSignal
from PyQt6.QtGui import QAction, QDragEnterEvent, QDropEvent, QKeySequence, QShortcut
from PyQt6.QtWidgets import (
    QApplication, QComboBox, QFileDialog, QGroupBox, QHBoxLayout, QLabel,
    QListWidget, QListWidgetItem, QMainWindow, QMessageBox, QPushButton,
    QSplitter, QStatusBar, QToolBar, QVBoxLayout, QWidget,
)

from face_crop_tool.config import IMAGE_EXTENSIONS, SUPPORTED_RATIOS
from face_crop_tool.crop_widget import CropEditorDialog, encoded_to_qpixmap
from face_crop_tool.image_io import export_filename
from face_crop_tool.models import FaceCropError, ImageRecord, RecordStatus
from face_crop_tool.session import CropSession
from face_crop_tool.worker import export_all, write_export

logger = logging.getLogger(__name__)


class MainWindow(QMainWindow):
    record_changed = pyqtSignal(str)

    def __init__(self, session: CropSession):
        super().__init__()
        self.setWindowTitle("Face Crop Tool")
        self.setMinimumSize(900, 500)
        self.resize(1280, 800)
        self.setAcceptDrops(True)

        self._session = session
        self._rows: list[str] = []  # record ids in list order
        self._output_root: Path | None = None

        self.record_changed.connect(self._on_record_changed)
        self._session.subscribe(lambda record: self.record_changed.emit(record.id))

        self._build_ui()
        self._update_button_states()

    # =========================================================================
    # UI construction
    # =========================================================================

    def _build_ui(self):
        self._build_toolbar()

        central = QWidget()
        self.setCentralWidget(central)
        main_layout = QHBoxLayout(central)
        main_layout.setContentsMargins(4, 4, 4, 4)

        splitter = QSplitter(Qt.Orientation.Horizontal)
        main_layout.addWidget(splitter)

        # Left panel — image list
        left_panel = QWidget()
        left_layout = QVBoxLayout(left_panel)
        left_layout.setContentsMargins(0, 0, 0, 0)
        left_layout.addWidget(QLabel("Images (drop files here):"))
        self._image_list = QListWidget()
        self._image_list.currentRowChanged.connect(self._on_image_selected)
        left_layout.addWidget(self._image_list)
        splitter.addWidget(left_panel)

        # Center — preview
        self._preview = QLabel("No image selected")
        self._preview.setAlignment(Qt.AlignmentFlag.AlignCenter)
        self._preview.setMinimumSize(400, 300)
        self._preview.setStyleSheet("background: #1e1e1e; color: #888;")
        splitter.addWidget(self._preview)

        splitter.addWidget(self._build_right_panel())
        splitter.setSizes([220, 820, 240])

        self._status = QStatusBar()
        self.setStatusBar(self._status)
        detector_state = "face detection on" if self._session.detector else "face detection unavailable"
        self._status.showMessage(f"Add or drop images to begin.  |  {detector_state}")

        QShortcut(QKeySequence(Qt.Key.Key_E), self, self._edit_current)
        QShortcut(QKeySequence(Qt.Key.Key_R), self, self._reset_current)
        QShortcut(QKeySequence(Qt.Key.Key_Delete), self, self._remove_current)

    def _build_toolbar(self):
        toolbar = QToolBar("Main")
        toolbar.setMovable(False)
        self.addToolBar(toolbar)

        act_add = QAction("📂 Add Images", self)
        act_add.triggered.connect(self._select_files)
        toolbar.addAction(act_add)

        toolbar.addSeparator()
        toolbar.addWidget(QLabel(" Ratio: "))
        self._ratio_combo = QComboBox()
        self._ratio_combo.addItems(SUPPORTED_RATIOS)
        self._ratio_combo.setCurrentText(self._session.ratio.token)
        self._ratio_combo.currentTextChanged.connect(self._on_ratio_selected)
        toolbar.addWidget(self._ratio_combo)
        toolbar.addSeparator()

        act_refresh = QAction("🔄 Refresh Previews", self)
        act_refresh.setToolTip("Re-run face detection and redraw every preview")
        act_refresh.triggered.connect(lambda: self._session.refresh_all(redetect=True))
        toolbar.addAction(act_refresh)

        act_crop_all = QAction("✂ Crop All", self)
        act_crop_all.setToolTip("Render the final crop of every image")
        act_crop_all.triggered.connect(self._crop_all)
        toolbar.addAction(act_crop_all)

        act_export_all = QAction("▶▶ Export All", self)
        act_export_all.triggered.connect(self._export_all)
        toolbar.addAction(act_export_all)
        self._act_export_all = act_export_all

    def _build_right_panel(self) -> QWidget:
        panel = QWidget()
        layout = QVBoxLayout(panel)
        layout.setContentsMargins(0, 0, 0, 0)

        actions = QGroupBox("Crop")
        actions_layout = QVBoxLayout(actions)
        self._btn_edit = QPushButton("✏ Edit Crop (E)")
        self._btn_edit.clicked.connect(self._edit_current)
        actions_layout.addWidget(self._btn_edit)
        self._btn_reset = QPushButton("🎯 Reset to Auto (R)")
        self._btn_reset.clicked.connect(self._reset_current)
        actions_layout.addWidget(self._btn_reset)
        self._btn_export = QPushButton("💾 Export Image…")
        self._btn_export.clicked.connect(self._export_current)
        actions_layout.addWidget(self._btn_export)
        self._btn_remove = QPushButton("🗑 Remove (Del)")
        self._btn_remove.clicked.connect(self._remove_current)
        actions_layout.addWidget(self._btn_remove)
        layout.addWidget(actions)

        self._info_label = QLabel("Crop: —")
        self._info_label.setWordWrap(True)
        layout.addWidget(self._info_label)
        layout.addStretch()
        return panel

    # =========================================================================
    # Adding images
    # =========================================================================

    def _select_files(self):
        patterns = " ".join(f"*{ext}" for ext in sorted(IMAGE_EXTENSIONS))
        files, _ = QFileDialog.getOpenFileNames(self, "Add Images", "", f"Images ({patterns})")
        if files:
            self._add_paths([Path(f) for f in files])

    def dragEnterEvent(self, event: QDragEnterEvent):
        if event.mimeData().hasUrls():
            event.acceptProposedAction()

    def dropEvent(self, event: QDropEvent):
        paths = [Path(u.toLocalFile()) for u in event.mimeData().urls() if u.isLocalFile()]
        self._add_paths(paths)
        event.acceptProposedAction()

    def _add_paths(self, paths: list[Path]):
        added = self._session.add_files(paths)
        for record in added:
            self._rows.append(record.id)
            self._image_list.addItem(QListWidgetItem(self._item_text(record)))
        if added and self._image_list.currentRow() < 0:
            self._image_list.setCurrentRow(0)
        skipped = len(paths) - len(added)
        msg = f"Added {len(added)} image(s)"
        if skipped:
            msg += f", skipped {skipped} unsupported file(s)"
        self._status.showMessage(msg)
        self._update_button_states()

    # =========================================================================
    # Record updates
    # =========================================================================

    def _current_record(self) -> ImageRecord | None:
        row = self._image_list.currentRow()
        if row < 0 or row >= len(self._rows):
            return None
        return self._session.get(self._rows[row])

    def _on_record_changed(self, record_id: str):
        if record_id not in self._rows:
            return
        record = self._session.get(record_id)
        if record is None:
            return
        row = self._rows.index(record_id)
        item = self._image_list.item(row)
        if item is not None:
            item.setText(self._item_text(record))
        if row == self._image_list.currentRow():
            self._show_record(record)
        self._update_button_states()

    def _on_image_selected(self, row: int):
        record = self._current_record()
        if record is None:
            self._preview.clear()
            self._preview.setText("No image selected")
            self._info_label.setText("Crop: —")
        else:
            self._show_record(record)
        self._update_button_states()

    def _show_record(self, record: ImageRecord):
        if record.preview is not None:
            pixmap = encoded_to_qpixmap(record.preview)
            self._preview.setPixmap(pixmap.scaled(
                self._preview.size(),
                Qt.AspectRatioMode.KeepAspectRatio,
                Qt.TransformationMode.SmoothTransformation,
            ))
        elif record.loading:
            self._preview.setText("Loading…")
        else:
            self._preview.setText(record.error or "No preview")
        self._info_label.setText(self._info_text(record))

    def _item_text(self, record: ImageRecord) -> str:
        if record.loading:
            icon = "⏳"
        elif record.status is RecordStatus.READY:
            icon = "✏" if record.manual_crop else ("🙂" if record.detection else "⬜")
        else:
            icon = "⚠"
        return f"  {icon}  {record.name}"

    def _info_text(self, record: ImageRecord) -> str:
        rect = self._session.authoritative_rect(record)
        if rect is None:
            return "Crop: —"
        size = record.size
        if record.manual_crop is not None and rect == record.manual_crop:
            source = "manual"
        elif record.detection is not None:
            source = "face-centered"
        else:
            source = "centered"
        return (
            f"Image: {size[0]} × {size[1]}\n"
            f"Crop ({source}): {round(rect.width)} × {round(rect.height)} "
            f"at ({round(rect.x)}, {round(rect.y)})"
        )

    def _update_button_states(self):
        record = self._current_record()
        ready = record is not None and record.status is RecordStatus.READY and not record.loading
        self._btn_edit.setEnabled(ready)
        self._btn_reset.setEnabled(ready and record.manual_crop is not None)
        self._btn_export.setEnabled(ready)
        self._btn_remove.setEnabled(record is not None)
        self._act_export_all.setEnabled(bool(self._rows))

    # =========================================================================
    # Actions
    # =========================================================================

    def _on_ratio_selected(self, token: str):
        self._session.set_ratio(token)
        self._status.showMessage(f"Ratio {token}")

    def _edit_current(self):
        record = self._current_record()
        if record is None or record.status is not RecordStatus.READY:
            return
        try:
            edit = self._session.open_editor(record)
            image = self._session.ensure_loaded(record)
        except FaceCropError as exc:
            QMessageBox.warning(self, "Cannot edit", str(exc))
            return
        dlg = CropEditorDialog(
            edit, image, f"Edit crop — {record.name} ({self._session.ratio})",
            compositor=self._session.compositor, parent=self,
        )
        if dlg.exec() == CropEditorDialog.DialogCode.Accepted:
            try:
                self._session.apply_edit(record, edit)
            except ValueError as exc:
                QMessageBox.warning(self, "Crop not saved", str(exc))
                return
            self._status.showMessage(f"Saved manual crop for {record.name}")

    def _reset_current(self):
        record = self._current_record()
        if record is None:
            return
        self._session.reset(record)
        self._status.showMessage(f"Crop reset for {record.name}")

    def _remove_current(self):
        row = self._image_list.currentRow()
        if row < 0 or row >= len(self._rows):
            return
        record_id = self._rows.pop(row)
        self._image_list.takeItem(row)
        self._session.remove(record_id)
        self._update_button_states()

    def _export_current(self):
        record = self._current_record()
        if record is None:
            return
        start = str((self._output_root or record.path.parent) / export_filename(record.path))
        target, _ = QFileDialog.getSaveFileName(self, "Export Image", start, "JPEG (*.jpg)")
        if not target:
            return
        try:
            output = self._session.export_crop(record)
        except FaceCropError as exc:
            QMessageBox.critical(self, "Error", f"Failed to export {record.name}:\n{exc}")
            return
        result = write_export(record, output, Path(target))
        if result["success"]:
            self._status.showMessage(f"Exported: {result['path']}")
        else:
            logger.error("Writing %s failed: %s", target, result["error"])
            QMessageBox.critical(self, "Error", f"Failed to write {record.name}:\n{result['error']}")

    def _crop_all(self):
        QApplication.setOverrideCursor(Qt.CursorShape.WaitCursor)
        try:
            results = self._session.crop_all()
        finally:
            QApplication.restoreOverrideCursor()
        done = sum(1 for out in results.values() if out is not None)
        self._status.showMessage(f"Cropped {done}/{len(results)} image(s)")

    def _export_all(self):
        folder = QFileDialog.getExistingDirectory(self, "Select Output Folder")
        if not folder:
            return
        self._output_root = Path(folder)
        logger.info("Exporting %d image(s) to %s", len(self._rows), folder)

        QApplication.setOverrideCursor(Qt.CursorShape.WaitCursor)
        try:
            results = export_all(self._session, self._output_root)
        finally:
            QApplication.restoreOverrideCursor()

        errors = [r for r in results if not r["success"]]
        if errors:
            err_names = "\n".join(f"• {e['name']}: {e['error']}" for e in errors[:10])
            suffix = f"\n…and {len(errors) - 10} more" if len(errors) > 10 else ""
            QMessageBox.warning(self, "Some exports failed", f"{len(errors)} failed:\n\n{err_names}{suffix}")
        self._status.showMessage(
            f"Export complete ({len(results) - len(errors)}/{len(results)}). Output: {self._output_root}"
        )

    def closeEvent(self, event):
        self._session.close()
        super().closeEvent(event)
