"""
Crop session: the per-image records and everything that updates them.

``CropSession`` owns the list of ``ImageRecord`` objects, the active aspect
ratio, an optional face detector and a thread pool for background work.
For each record the authoritative crop is, in order of precedence:

    manual override  >  face-centered default  >  plain centered default

A manual override drawn for a different ratio is kept on the record but
skipped, so switching back to its ratio restores it.

Background refreshes are fanned out one task per record.  Each request bumps
the record's ``generation``; a task only writes its result back if the
generation is unchanged when it finishes, so a superseded or removed record
never receives a stale preview.  Detection runs once per record and is
cached; a ratio change only re-derives geometry.  ``refresh_all(redetect=True)``
forces a new detection.

This module is Qt-free.  The GUI learns about changes through ``subscribe``
callbacks, which may be called from worker threads.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Iterable

from PIL import Image

from face_crop_tool.compositor import Compositor
from face_crop_tool.config import DEFAULT_RATIO, EDITOR_MAX_DIM, default_workers
from face_crop_tool.detection import FaceDetector, detect_face
from face_crop_tool.editor import EditSession, fit_display_scale
from face_crop_tool.geometry import derive_default_rect, focus_point, rect_is_valid
from face_crop_tool.image_io import is_supported, load_raster
from face_crop_tool.models import (
    AspectRatio, BoundingBox, CropRect, EncodedImage, ExportError, FaceCropError,
    ImageLoadError, ImageRecord, RecordStatus,
)

logger = logging.getLogger(__name__)

Listener = Callable[[ImageRecord], None]


def resolve_rect(
    img_w: int,
    img_h: int,
    aspect: AspectRatio,
    detection: BoundingBox | None = None,
    manual_crop: CropRect | None = None,
) -> CropRect:
    """Apply the crop precedence for an image of ``img_w`` x ``img_h``."""
    if manual_crop is not None:
        if rect_is_valid(manual_crop, aspect.value, img_w, img_h):
            return manual_crop.copy()
        logger.debug("Manual crop %s does not fit ratio %s, falling back", manual_crop, aspect)
    return derive_default_rect(img_w, img_h, aspect.value, focus_point(detection, img_w, img_h))


class CropSession:
    """Batch of images being cropped to one aspect ratio."""

    def __init__(
        self,
        detector: FaceDetector | None = None,
        ratio: AspectRatio | str = DEFAULT_RATIO,
        compositor: Compositor | None = None,
        max_workers: int | None = None,
        loader: Callable[[Path], Image.Image] = load_raster,
    ):
        self.detector = detector
        self.compositor = compositor or Compositor()
        self._ratio = AspectRatio.parse(ratio) if isinstance(ratio, str) else ratio
        self._loader = loader
        self._records: dict[str, ImageRecord] = {}
        self._records_lock = threading.Lock()
        self._listeners: list[Listener] = []
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or default_workers(),
            thread_name_prefix="face-crop",
        )

    # =========================================================================
    # Records
    # =========================================================================

    @property
    def ratio(self) -> AspectRatio:
        return self._ratio

    @property
    def records(self) -> list[ImageRecord]:
        with self._records_lock:
            return list(self._records.values())

    def get(self, record_id: str) -> ImageRecord | None:
        with self._records_lock:
            return self._records.get(record_id)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def add_files(self, paths: Iterable[Path]) -> list[ImageRecord]:
        """Create a record per supported file and start its preview in the background."""
        added = []
        for path in paths:
            path = Path(path)
            if not is_supported(path):
                logger.debug("Skipping unsupported file %s", path.name)
                continue
            record = ImageRecord(path=path)
            with self._records_lock:
                self._records[record.id] = record
            added.append(record)
            self.submit_refresh(record)
        logger.info("Added %d image(s), %d total", len(added), len(self._records))
        return added

    def remove(self, record_id: str) -> ImageRecord | None:
        """Forget a record, release its rasters and orphan any in-flight task."""
        with self._records_lock:
            record = self._records.pop(record_id, None)
        if record is None:
            return None
        with record.lock:
            record.removed = True
            record.generation += 1
            record.release()
        self._notify(record)
        logger.debug("Removed %s", record.name)
        return record

    # =========================================================================
    # Crop resolution
    # =========================================================================

    def authoritative_rect(self, record: ImageRecord, aspect: AspectRatio | None = None) -> CropRect | None:
        """The crop that would be exported now, or None if the image is not loaded."""
        with record.lock:
            size = record.size
            if size is None:
                return None
            return resolve_rect(
                size[0], size[1], aspect or self._ratio, record.detection, record.manual_crop,
            )

    def ensure_loaded(self, record: ImageRecord) -> Image.Image:
        """Decode the record's source once; raises ``ImageLoadError``."""
        with record.lock:
            if record.removed:
                raise ImageLoadError(f"{record.name} was removed")
            if record.image is None:
                record.image = self._loader(record.path)
            return record.image

    # =========================================================================
    # Preview refresh
    # =========================================================================

    def refresh_preview(
        self,
        record: ImageRecord,
        detector: FaceDetector | None,
        aspect: AspectRatio,
        *,
        redetect: bool = False,
        generation: int | None = None,
    ) -> tuple[EncodedImage | None, BoundingBox | None]:
        """Detect (if needed), resolve the crop and render the preview.

        Never raises for load, detection or render failures; those end up in
        ``record.status``.  The result is written to the record only if no
        newer request superseded *generation*.
        """
        if generation is None:
            generation = self._begin(record)

        try:
            image = self.ensure_loaded(record)
        except ImageLoadError as exc:
            logger.warning("%s", exc)
            self._fail(record, generation, RecordStatus.LOAD_FAILED, str(exc))
            return None, None

        with record.lock:
            cached = record.detected and not redetect
            detection = record.detection
            manual_crop = record.manual_crop
        if not cached:
            detection = detect_face(detector, image)
            logger.debug("Detection for %s: %s", record.name, detection)

        rect = resolve_rect(image.width, image.height, aspect, detection, manual_crop)
        try:
            preview = self.compositor.render_preview(image, rect, detection)
        except Exception as exc:
            logger.exception("Preview failed for %s", record.name)
            self._fail(record, generation, RecordStatus.PREVIEW_FAILED, str(exc))
            return None, detection

        with record.lock:
            if not self._is_current(record, generation):
                logger.debug("Discarding stale preview for %s", record.name)
                return preview, detection
            if record.detected and detection != record.detection:
                record.output = None
                record.revision += 1
            record.detection = detection
            record.detected = True
            record.preview = preview
            record.loading = False
            record.status = RecordStatus.READY
            record.error = None
        self._notify(record)
        return preview, detection

    def submit_refresh(self, record: ImageRecord, redetect: bool = False) -> Future:
        """Queue a background refresh; ``loading`` is set before this returns."""
        generation = self._begin(record)
        return self._submit(
            self.refresh_preview, record, self.detector, self._ratio,
            redetect=redetect, generation=generation,
        )

    def refresh_all(self, redetect: bool = False) -> list[Future]:
        return [self.submit_refresh(r, redetect=redetect) for r in self.records]

    def set_ratio(self, ratio: AspectRatio | str) -> list[Future]:
        """Switch the active ratio, drop every cached export and re-render previews.

        Cached detections are reused.
        """
        if isinstance(ratio, str):
            ratio = AspectRatio.parse(ratio)
        if ratio == self._ratio:
            return []
        logger.info("Ratio changed %s -> %s", self._ratio, ratio)
        self._ratio = ratio
        futures = []
        for record in self.records:
            self.invalidate(record)
            if record.status is not RecordStatus.LOAD_FAILED:
                futures.append(self.submit_refresh(record))
        return futures

    # =========================================================================
    # Overrides
    # =========================================================================

    def invalidate(self, record: ImageRecord) -> None:
        """Drop the cached export; the next ``export_crop`` recomputes it."""
        with record.lock:
            record.output = None
            record.revision += 1

    def save_manual_crop(self, record: ImageRecord, rect: CropRect) -> Future | None:
        """Store *rect* as the record's override and refresh its preview.

        Raises ``ValueError`` if *rect* breaks the crop invariants for the
        active ratio on a loaded image; the previous override is kept.
        """
        with record.lock:
            size = record.size
            if size is not None and not rect_is_valid(rect, self._ratio.value, size[0], size[1]):
                logger.warning("Rejected manual crop %s for %s at ratio %s", rect, record.name, self._ratio)
                raise ValueError(f"Crop {rect} is not a valid {self._ratio} crop for {record.name}")
            record.manual_crop = rect.copy()
        self.invalidate(record)
        logger.debug("Manual crop for %s: %s", record.name, rect)
        if record.removed:
            return None
        return self.submit_refresh(record)

    def reset(self, record: ImageRecord, refresh: bool = True) -> Future | None:
        """Clear the manual override so the crop is derived again."""
        with record.lock:
            record.manual_crop = None
        self.invalidate(record)
        if refresh and not record.removed:
            return self.submit_refresh(record)
        return None

    def open_editor(self, record: ImageRecord, display_max: int = EDITOR_MAX_DIM) -> EditSession:
        """Start an interactive edit of the record's current crop."""
        image = self.ensure_loaded(record)
        rect = self.authoritative_rect(record)
        scale = fit_display_scale(image.width, image.height, display_max)
        return EditSession(record.id, image.width, image.height, self._ratio.value, rect, scale)

    def apply_edit(self, record: ImageRecord, edit: EditSession) -> CropRect:
        """Save an edit session into the record's manual override."""
        rect = edit.save()
        self.save_manual_crop(record, rect)
        return rect

    # =========================================================================
    # Export
    # =========================================================================

    def export_crop(self, record: ImageRecord, aspect: AspectRatio | None = None) -> EncodedImage:
        """Encode the record's authoritative crop, cached until invalidated.

        Raises ``ImageLoadError`` or ``ExportError``; the failure is also
        recorded on the record.
        """
        aspect = aspect or self._ratio
        cacheable = aspect == self._ratio
        with record.lock:
            if cacheable and record.output is not None:
                return record.output
            revision = record.revision

        try:
            image = self.ensure_loaded(record)
            rect = self.authoritative_rect(record, aspect)
            output = self.compositor.render_export(image, rect)
        except FaceCropError as exc:
            status = RecordStatus.LOAD_FAILED if isinstance(exc, ImageLoadError) else RecordStatus.EXPORT_FAILED
            logger.error("Export failed for %s: %s", record.name, exc)
            with record.lock:
                record.status = status
                record.error = str(exc)
                record.loading = False
            self._notify(record)
            raise

        with record.lock:
            if cacheable and record.revision == revision and not record.removed:
                record.output = output
                if record.status is RecordStatus.EXPORT_FAILED:
                    record.status = RecordStatus.READY
                    record.error = None
        self._notify(record)
        return output

    def submit_export(self, record: ImageRecord) -> Future:
        return self._submit(self.export_crop, record, self._ratio)

    def crop_all(self) -> dict[str, EncodedImage | None]:
        """Export every ready record; failures yield None and do not stop the batch.

        Each record shows ``loading`` while its export is queued or running.
        """
        futures = {}
        for record in self.records:
            if record.status not in (RecordStatus.READY, RecordStatus.EXPORT_FAILED):
                continue
            with record.lock:
                record.loading = True
            self._notify(record)
            futures[self._submit(self._crop_one, record)] = record
        results: dict[str, EncodedImage | None] = {}
        for future, record in futures.items():
            try:
                results[record.id] = future.result()
            except (ExportError, ImageLoadError):
                results[record.id] = None
        return results

    def _crop_one(self, record: ImageRecord) -> EncodedImage:
        try:
            return self.export_crop(record)
        finally:
            with record.lock:
                record.loading = False
            self._notify(record)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def wait(self, timeout: float | None = None) -> None:
        """Block until every queued task (including ones queued meanwhile) is done."""
        while True:
            with self._pending_lock:
                pending = set(self._pending)
            if not pending:
                return
            done, not_done = wait(pending, timeout=timeout)
            with self._pending_lock:
                self._pending -= done
            if not_done:
                return

    def close(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # --- Internals ---

    def _begin(self, record: ImageRecord) -> int:
        with record.lock:
            record.generation += 1
            record.loading = True
            generation = record.generation
        self._notify(record)
        return generation

    def _is_current(self, record: ImageRecord, generation: int) -> bool:
        return not record.removed and record.generation == generation

    def _fail(self, record: ImageRecord, generation: int, status: RecordStatus, error: str) -> None:
        with record.lock:
            if not self._is_current(record, generation):
                return
            record.status = status
            record.error = error
            record.loading = False
            record.preview = None
            record.output = None
        self._notify(record)

    def _submit(self, fn, *args, **kwargs) -> Future:
        future = self._executor.submit(fn, *args, **kwargs)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._task_done)
        return future

    def _task_done(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _notify(self, record: ImageRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:
                logger.exception("Listener failed for %s", record.name)
