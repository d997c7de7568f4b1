"""
Batch export to disk (Qt-free).

Each record's authoritative crop is encoded through the session (so the
cached ``output`` is reused) and written as ``<stem>_cropped.jpg`` into the
output folder.  Work runs on a thread pool; every task returns a result
dict, and one record failing never stops the others.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from face_crop_tool.config import default_workers
from face_crop_tool.image_io import export_filename, unique_path
from face_crop_tool.models import EncodedImage, FaceCropError, ImageRecord, RecordStatus

logger = logging.getLogger(__name__)


def plan_output_paths(records: list[ImageRecord], out_dir: Path) -> dict[str, Path]:
    """Assign every record a distinct, not yet existing output path."""
    taken: set[Path] = set()
    paths = {}
    for record in records:
        candidate = unique_path(out_dir / export_filename(record.path))
        counter = 1
        while candidate in taken:
            base = out_dir / export_filename(record.path)
            candidate = unique_path(base.with_name(f"{base.stem}-{counter:02d}{base.suffix}"))
            counter += 1
        taken.add(candidate)
        paths[record.id] = candidate
    return paths


def write_export(record: ImageRecord, output: EncodedImage, out_path: Path) -> dict:
    """Write encoded bytes for *record* and describe the outcome."""
    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(output.data)
    except OSError as e:
        return {"id": record.id, "success": False, "name": record.name, "error": str(e)}
    return {"id": record.id, "success": True, "name": record.name, "path": str(out_path)}


def export_worker(session, record: ImageRecord, out_path: Path) -> dict:
    """Encode (or reuse) the record's crop and save it.  Runs in a worker thread."""
    try:
        output = session.export_crop(record)
    except FaceCropError as e:
        return {"id": record.id, "success": False, "name": record.name, "error": str(e)}
    return write_export(record, output, out_path)


def export_all(session, out_dir: Path, max_workers: int | None = None) -> list[dict]:
    """Export every ready record of *session* into *out_dir*."""
    records = [
        r for r in session.records
        if r.status in (RecordStatus.READY, RecordStatus.EXPORT_FAILED)
    ]
    if not records:
        return []

    out_paths = plan_output_paths(records, out_dir)
    workers = max_workers or default_workers()
    results = []
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {
            executor.submit(export_worker, session, r, out_paths[r.id]): r.id
            for r in records
        }
        for future in as_completed(futures):
            result = future.result()
            results.append(result)
            if not result["success"]:
                logger.error("Export of %s failed: %s", result["name"], result["error"])

    ok = sum(1 for r in results if r["success"])
    logger.info("Exported %d/%d image(s) to %s", ok, len(records), out_dir)
    return results
