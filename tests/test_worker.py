from __future__ import annotations

from pathlib import Path

import pytest
from PIL import Image

from conftest import StubDetector
from face_crop_tool.image_io import export_filename, unique_path
from face_crop_tool.models import EncodedImage, ImageRecord
from face_crop_tool.session import CropSession
from face_crop_tool.worker import export_all, plan_output_paths, write_export


@pytest.fixture
def session():
    s = CropSession(detector=StubDetector(), max_workers=2)
    yield s
    s.close()


def test_export_filename():
    assert export_filename(Path("/x/holiday.PNG")) == "holiday_cropped.jpg"
    assert export_filename(Path("layered.psd")) == "layered_cropped.jpg"


def test_unique_path_skips_existing(tmp_path):
    target = tmp_path / "a_cropped.jpg"
    assert unique_path(target) == target
    target.write_bytes(b"")
    (tmp_path / "a_cropped-01.jpg").write_bytes(b"")
    assert unique_path(target) == tmp_path / "a_cropped-02.jpg"


def test_plan_output_paths_deduplicates_stems(tmp_path):
    out = tmp_path / "out"
    records = [
        ImageRecord(path=tmp_path / "a" / "photo.png"),
        ImageRecord(path=tmp_path / "b" / "photo.jpg"),
        ImageRecord(path=tmp_path / "other.png"),
    ]
    paths = plan_output_paths(records, out)
    assert paths[records[0].id] == out / "photo_cropped.jpg"
    assert paths[records[1].id] == out / "photo_cropped-01.jpg"
    assert paths[records[2].id] == out / "other_cropped.jpg"


def test_plan_output_paths_respects_existing_files(tmp_path):
    (tmp_path / "photo_cropped.jpg").write_bytes(b"old")
    record = ImageRecord(path=Path("photo.png"))
    assert plan_output_paths([record], tmp_path)[record.id] == tmp_path / "photo_cropped-01.jpg"


def test_write_export_reports_os_errors(tmp_path):
    record = ImageRecord(path=Path("photo.png"))
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    result = write_export(record, EncodedImage(b"x", "JPEG", 1, 1), blocker / "photo_cropped.jpg")
    assert result["success"] is False
    assert result["name"] == "photo.png"
    assert "error" in result


def test_export_all_writes_jpegs(session, make_image, tmp_path):
    paths = [make_image("one.png", (400, 300)), make_image("two.jpg", (300, 400))]
    session.add_files(paths)
    session.wait()

    out = tmp_path / "exports"
    results = export_all(session, out)
    assert len(results) == 2
    assert all(r["success"] for r in results)
    with Image.open(out / "one_cropped.jpg") as img:
        assert img.format == "JPEG"
        assert img.size == (300, 300)
    with Image.open(out / "two_cropped.jpg") as img:
        assert img.size == (300, 300)


def test_export_all_isolates_failures(session, make_image, broken_file, tmp_path):
    good, failing, _bad = session.add_files(
        [make_image("good.png", (200, 100)), make_image("fail.png", (200, 100)), broken_file]
    )
    session.wait()
    with failing.lock:
        failing.image.close()

    results = {r["id"]: r for r in export_all(session, tmp_path / "out")}
    assert set(results) == {good.id, failing.id}
    assert results[good.id]["success"] is True
    assert Path(results[good.id]["path"]).exists()
    assert results[failing.id]["success"] is False
    assert not (tmp_path / "out" / "fail_cropped.jpg").exists()


def test_export_all_with_nothing_ready(session, tmp_path):
    assert export_all(session, tmp_path) == []
