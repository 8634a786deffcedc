"""Baseline record persistence."""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path

import structlog

from .errors import BaselineError
from .models import BaselineRecord

logger = structlog.get_logger(__name__)


def atomic_write(path: Path | str, data: bytes) -> Path:
    """Write ``data`` to ``path`` via a fsynced temp file and rename.

    Readers see either the previous document or the new one, never a torn
    write.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_path = tempfile.mkstemp(prefix=target.name + ".", dir=str(target.parent))
    try:
        with os.fdopen(tmp_fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, target)
        return target
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def load_baseline(path: Path | str, platform_names: Iterable[str]) -> BaselineRecord:
    """Read the manual baseline document.

    Raises:
        BaselineError: if the file is missing, unreadable or not a valid baseline
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise BaselineError(f"baseline not found: {path}", path=str(path)) from None
    except OSError as e:
        raise BaselineError(f"cannot read baseline {path}: {e}", path=str(path)) from e
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise BaselineError(f"baseline {path} is not valid JSON: {e}", path=str(path)) from e
    try:
        record = BaselineRecord.from_document(doc, platform_names)
    except BaselineError as e:
        e.path = str(path)
        raise
    logger.info("baseline.loaded", path=str(path), platforms=list(record.platforms))
    return record


def save_baseline(record: BaselineRecord, path: Path | str) -> Path:
    payload = json.dumps(record.to_document(), indent=2, ensure_ascii=False).encode("utf-8")
    target = atomic_write(path, payload)
    logger.info("baseline.saved", path=str(target))
    return target
