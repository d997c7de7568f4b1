from __future__ import annotations

import threading

import pytest
from PIL import Image

from conftest import FailingDetector, StubDetector
from face_crop_tool.compositor import Compositor
from face_crop_tool.models import (
    AspectRatio, BoundingBox, CropRect, ExportError, ImageLoadError, RecordStatus,
)
from face_crop_tool.session import CropSession, resolve_rect

FACE_LOW = BoundingBox(450, 1750, 100, 100)   # centered on (500, 1800)


class BrokenCompositor(Compositor):
    def render_export(self, image, crop):
        raise ExportError("encoder exploded")


class PreviewlessCompositor(Compositor):
    def render_preview(self, image, crop, face_box=None):
        raise RuntimeError("draw failed")


@pytest.fixture
def session_factory():
    sessions = []

    def _make(**kwargs) -> CropSession:
        kwargs.setdefault("max_workers", 2)
        s = CropSession(**kwargs)
        sessions.append(s)
        return s

    yield _make
    for s in sessions:
        s.close()


@pytest.fixture
def tall(make_image):
    return make_image("tall.png", (1000, 2000))


def _load_one(session, path):
    (record,) = session.add_files([path])
    session.wait()
    return record


# =============================================================================
# Crop precedence
# =============================================================================
def test_resolve_rect_precedence():
    ratio = AspectRatio(1, 1)
    manual = CropRect(10, 10, 200, 200)
    assert resolve_rect(1000, 2000, ratio) == CropRect(0, 500, 1000, 1000)
    assert resolve_rect(1000, 2000, ratio, FACE_LOW) == CropRect(0, 1000, 1000, 1000)
    assert resolve_rect(1000, 2000, ratio, FACE_LOW, manual) == manual
    # a manual crop with the wrong ratio is skipped
    wrong = CropRect(10, 10, 200, 100)
    assert resolve_rect(1000, 2000, ratio, FACE_LOW, wrong) == CropRect(0, 1000, 1000, 1000)


def test_face_centered_preview(session_factory, tall):
    detector = StubDetector(FACE_LOW)
    session = session_factory(detector=detector, ratio="1:1")
    record = _load_one(session, tall)

    assert record.status is RecordStatus.READY
    assert record.loading is False
    assert record.detection == FACE_LOW
    assert (record.preview.width, record.preview.height) == (400, 800)
    assert session.authoritative_rect(record) == CropRect(0, 1000, 1000, 1000)
    assert detector.calls == 1


def test_square_image_uses_full_frame(session_factory, make_image):
    session = session_factory(detector=StubDetector(BoundingBox(10, 10, 20, 20)))
    record = _load_one(session, make_image("square.png", (600, 600)))
    assert session.authoritative_rect(record) == CropRect(0, 0, 600, 600)


def test_manual_override_and_reset(session_factory, tall):
    session = session_factory(detector=StubDetector(FACE_LOW))
    record = _load_one(session, tall)

    manual = CropRect(100, 100, 500, 500)
    session.save_manual_crop(record, manual).result()
    assert session.authoritative_rect(record) == manual
    assert record.manual_crop is not manual

    session.reset(record).result()
    assert record.manual_crop is None
    assert session.authoritative_rect(record) == CropRect(0, 1000, 1000, 1000)


def test_ratio_change_reuses_detection(session_factory, tall):
    detector = StubDetector(FACE_LOW)
    session = session_factory(detector=detector)
    record = _load_one(session, tall)
    session.export_crop(record)
    assert record.output is not None

    futures = session.set_ratio("9:16")
    assert len(futures) == 1
    session.wait()

    assert record.output is None
    assert detector.calls == 1
    rect = session.authoritative_rect(record)
    assert rect.width == 1000
    assert rect.height == pytest.approx(1000 / (9 / 16))
    assert rect.y == pytest.approx(2000 - 1000 / (9 / 16))


def test_same_ratio_is_a_noop(session_factory, tall):
    session = session_factory(ratio="4:5")
    _load_one(session, tall)
    assert session.set_ratio(AspectRatio(4, 5)) == []


def test_manual_crop_survives_other_ratio(session_factory, tall):
    session = session_factory(detector=StubDetector(FACE_LOW))
    record = _load_one(session, tall)
    manual = CropRect(100, 100, 500, 500)
    session.save_manual_crop(record, manual).result()

    session.set_ratio("16:9")
    session.wait()
    rect = session.authoritative_rect(record)
    assert rect.width / rect.height == pytest.approx(16 / 9)
    assert record.manual_crop == manual

    session.set_ratio("1:1")
    session.wait()
    assert session.authoritative_rect(record) == manual


def test_redetect_runs_detector_again(session_factory, tall):
    detector = StubDetector(FACE_LOW)
    session = session_factory(detector=detector)
    record = _load_one(session, tall)

    session.refresh_all()
    session.wait()
    assert detector.calls == 1

    session.refresh_all(redetect=True)
    session.wait()
    assert detector.calls == 2
    assert record.status is RecordStatus.READY


def test_failing_detector_falls_back_to_center(session_factory, tall):
    detector = FailingDetector()
    session = session_factory(detector=detector)
    record = _load_one(session, tall)
    assert record.status is RecordStatus.READY
    assert record.detection is None
    assert session.authoritative_rect(record) == CropRect(0, 500, 1000, 1000)

    session.refresh_all()
    session.wait()
    assert detector.calls == 1


def test_no_detector_falls_back_to_center(session_factory, tall):
    session = session_factory(detector=None)
    record = _load_one(session, tall)
    assert record.detected is True
    assert session.authoritative_rect(record) == CropRect(0, 500, 1000, 1000)


# =============================================================================
# Failures and concurrency
# =============================================================================
def test_load_failure_is_isolated(session_factory, tall, broken_file):
    session = session_factory(detector=StubDetector(FACE_LOW))
    bad, good = session.add_files([broken_file, tall])
    session.wait()

    assert bad.status is RecordStatus.LOAD_FAILED
    assert bad.error
    assert bad.loading is False
    assert bad.preview is None
    assert session.authoritative_rect(bad) is None
    with pytest.raises(ImageLoadError):
        session.export_crop(bad)

    assert good.status is RecordStatus.READY
    assert good.preview is not None


def test_load_failed_records_skip_ratio_refresh(session_factory, broken_file):
    session = session_factory()
    record = _load_one(session, broken_file)
    assert session.set_ratio("4:5") == []
    assert record.status is RecordStatus.LOAD_FAILED


def test_many_files_refresh_in_parallel(session_factory, make_image):
    session = session_factory(detector=StubDetector(), max_workers=4)
    paths = [make_image(f"img{i}.png", (320 + i * 10, 240)) for i in range(8)]
    records = session.add_files(paths)
    session.wait()
    assert all(r.status is RecordStatus.READY for r in records)
    assert all(r.preview is not None for r in records)


def test_stale_result_is_not_applied(session_factory, tall):
    session = session_factory(detector=StubDetector(FACE_LOW))
    record = _load_one(session, tall)
    old_preview = record.preview
    stale = record.generation
    with record.lock:
        record.generation += 1

    other = BoundingBox(10, 10, 50, 50)
    preview, detection = session.refresh_preview(
        record, StubDetector(other), session.ratio, redetect=True, generation=stale,
    )
    assert detection == other
    assert preview is not None
    assert record.preview is old_preview
    assert record.detection == FACE_LOW


def test_remove_releases_record(session_factory, tall):
    session = session_factory()
    record = _load_one(session, tall)
    assert session.remove(record.id) is record
    assert record.removed
    assert record.image is None
    assert record.preview is None
    assert session.get(record.id) is None
    assert session.records == []
    assert session.remove(record.id) is None
    with pytest.raises(ImageLoadError):
        session.ensure_loaded(record)


def test_add_files_skips_unsupported(session_factory, tall, tmp_path):
    notes = tmp_path / "notes.txt"
    notes.write_text("hello")
    session = session_factory()
    added = session.add_files([notes, tall])
    session.wait()
    assert [r.path for r in added] == [tall]
    assert len(session.records) == 1


def test_listener_sees_loading_transitions(session_factory, tall):
    session = session_factory()
    seen = []
    lock = threading.Lock()

    def listener(record):
        with lock:
            seen.append(record.loading)

    session.subscribe(listener)
    _load_one(session, tall)
    assert seen[0] is True
    assert seen[-1] is False


def test_listener_errors_do_not_break_refresh(session_factory, tall):
    session = session_factory()

    def boom(record):
        raise RuntimeError("listener bug")

    session.subscribe(boom)
    record = _load_one(session, tall)
    assert record.status is RecordStatus.READY


# =============================================================================
# Editing and export
# =============================================================================
def test_editor_round_trip(session_factory, tall):
    session = session_factory(detector=StubDetector(FACE_LOW))
    record = _load_one(session, tall)

    edit = session.open_editor(record, display_max=500)
    assert edit.display_scale == 0.25
    edit.nudge(0, -100)
    rect = session.apply_edit(record, edit)
    session.wait()

    assert rect == CropRect(0, 900, 1000, 1000)
    assert record.manual_crop == rect
    assert session.authoritative_rect(record) == rect
    assert edit.closed


def test_export_crop_is_cached_until_invalidated(session_factory, tall):
    session = session_factory(detector=StubDetector(FACE_LOW))
    record = _load_one(session, tall)

    first = session.export_crop(record)
    assert first.format == "JPEG"
    assert (first.width, first.height) == (1000, 1000)
    assert session.export_crop(record) is first

    session.invalidate(record)
    second = session.export_crop(record)
    assert second is not first
    assert record.output is second


def test_export_for_other_ratio_is_not_cached(session_factory, tall):
    session = session_factory()
    record = _load_one(session, tall)
    out = session.export_crop(record, AspectRatio(16, 9))
    assert (out.width, out.height) == (1000, 562)
    assert record.output is None


def test_export_failure_marks_record(session_factory, tall):
    session = session_factory(compositor=BrokenCompositor())
    record = _load_one(session, tall)
    assert record.status is RecordStatus.READY

    with pytest.raises(ExportError):
        session.export_crop(record)
    assert record.status is RecordStatus.EXPORT_FAILED
    assert "encoder exploded" in record.error


def test_crop_all_isolates_failures(session_factory, tall, broken_file, make_image):
    session = session_factory()
    good = session.add_files([tall, broken_file])[0]
    session.wait()

    results = session.crop_all()
    assert list(results) == [good.id]
    assert results[good.id].width == 1000

    small = _load_one(session, make_image("small.png", (64, 48)))
    with small.lock:
        small.image = Image.new("RGB", (64, 48))
        small.image.close()
    results = session.crop_all()
    assert results[small.id] is None
    assert results[good.id] is good.output
    assert small.status is RecordStatus.EXPORT_FAILED


def test_preview_failure_keeps_record_out_of_exports(session_factory, tall):
    session = session_factory(compositor=PreviewlessCompositor())
    record = _load_one(session, tall)

    assert record.status is RecordStatus.PREVIEW_FAILED
    assert record.loading is False
    assert record.preview is None
    assert "draw failed" in record.error
    assert session.crop_all() == {}
    assert record.status is RecordStatus.PREVIEW_FAILED


def test_crop_all_marks_records_busy(session_factory, tall):
    session = session_factory()
    record = _load_one(session, tall)
    seen = []
    lock = threading.Lock()

    def listener(r):
        with lock:
            seen.append(r.loading)

    session.subscribe(listener)
    results = session.crop_all()

    assert results[record.id] is not None
    assert seen[0] is True
    assert seen[-1] is False
    assert record.loading is False


def test_crop_all_clears_busy_on_failure(session_factory, tall):
    session = session_factory(compositor=BrokenCompositor())
    record = _load_one(session, tall)
    assert session.crop_all() == {record.id: None}
    assert record.loading is False
    assert record.status is RecordStatus.EXPORT_FAILED


@pytest.mark.parametrize(
    "rect",
    [
        CropRect(0, 0, 400, 300),        # wrong ratio
        CropRect(800, 0, 400, 400),      # past the right edge
        CropRect(0, -5, 400, 400),       # above the top edge
        CropRect(0, 0, 10, 10),          # below the minimum width
    ],
)
def test_invalid_manual_crop_is_rejected(session_factory, tall, rect):
    session = session_factory()
    record = _load_one(session, tall)
    good = CropRect(100, 100, 500, 500)
    session.save_manual_crop(record, good).result()

    with pytest.raises(ValueError):
        session.save_manual_crop(record, rect)
    assert record.manual_crop == good
    assert session.authoritative_rect(record) == good
