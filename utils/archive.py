"""
Artifact archiver — packs a task's working directory into a zip attachment.
"""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path

import config

log = logging.getLogger(__name__)


def _skipped(rel: Path) -> bool:
    # Any hidden or dependency directory on the way down excludes the file
    return any(part.startswith(".") or part in config.ARCHIVE_SKIP_DIRS for part in rel.parts[:-1])


def collect_files(src_dir: Path | str) -> list[Path]:
    """Files under ``src_dir`` worth sending back, as paths relative to it."""
    src_dir = Path(src_dir)
    if not src_dir.is_dir():
        return []
    files = []
    for path in sorted(src_dir.rglob("*")):
        if not path.is_file():
            continue
        rel = path.relative_to(src_dir)
        if _skipped(rel):
            continue
        files.append(rel)
    return files


def archive_artifacts(src_dir: Path | str, dest_zip: Path | str) -> Path | None:
    """
    Zip the task's generated files into ``dest_zip``.

    Returns the archive path, or None when there was nothing to pack or
    packing failed. Never raises.
    """
    src_dir = Path(src_dir)
    dest_zip = Path(dest_zip)
    try:
        files = [f for f in collect_files(src_dir) if (src_dir / f).resolve() != dest_zip.resolve()]
        if not files:
            log.info("No artifacts to archive in %s", src_dir)
            return None

        dest_zip.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(dest_zip, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
            for rel in files:
                zf.write(src_dir / rel, arcname=rel.as_posix())
        log.info("Archived %d artifact(s) into %s (%d bytes)", len(files), dest_zip.name, dest_zip.stat().st_size)
        return dest_zip
    except Exception as e:
        log.error("Error creating artifacts archive: %s", e)
        return None
