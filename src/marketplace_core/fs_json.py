"""Atomic single-document JSON primitive.

Every write goes to a temporary file in the destination directory and is
renamed over the target, so readers see either the previous document or the
new one, never a partial file. No atomicity is provided across files.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .canonical import to_document_json
from .errors import CorruptDocument, TransientIOFailure

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"


@contextmanager
def locked_file(path: Path, *, enabled: bool = True) -> Iterator[None]:
    """Hold an exclusive advisory lock on *path* for the duration of the context.

    Uses a separate ``.lock`` sidecar so the data file itself can be replaced
    via ``os.replace`` without disturbing the lock handle. With *enabled* set
    to ``False`` the context is a no-op.
    """
    if not enabled:
        yield
        return
    lock_path = path.with_name(path.name + _LOCK_SUFFIX)
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = lock_path.open("a+", encoding="utf-8")
    except OSError as exc:
        raise TransientIOFailure(f"cannot open lock file {lock_path}: {exc}") from exc
    with handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically, creating parent directories.

    Raises:
        TransientIOFailure: If any filesystem step fails. The previous
            version of *path*, if any, is left intact.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
    except OSError as exc:
        raise TransientIOFailure(f"cannot prepare write of {path}: {exc}") from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException as exc:
        # Clean up the temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        if isinstance(exc, OSError):
            raise TransientIOFailure(f"failed to write {path}: {exc}") from exc
        raise


def write_json(path: Path, value: Any) -> None:
    """Serialize *value* as a sorted, indented JSON document and write it atomically."""
    atomic_write_text(path, to_document_json(value))


def read_json(path: Path, default: Any = None) -> Any:
    """Read and parse the JSON document at *path*.

    Args:
        path: Filesystem path to read.
        default: Value returned when the file does not exist.

    Returns:
        The parsed JSON value, or *default* if *path* is missing.

    Raises:
        CorruptDocument: If the file exists but is empty, not UTF-8, or not JSON.
        TransientIOFailure: If the file exists but cannot be read.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except UnicodeDecodeError as exc:
        raise CorruptDocument(path, "invalid UTF-8 data") from exc
    except IsADirectoryError as exc:
        raise CorruptDocument(path, "path is a directory") from exc
    except OSError as exc:
        raise TransientIOFailure(f"failed to read {path}: {exc}") from exc
    if not text.strip():
        raise CorruptDocument(path, "file is empty")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise CorruptDocument(path, f"invalid JSON: {exc.msg} (line {exc.lineno})") from exc
