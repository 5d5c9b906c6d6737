"""Directory-walk access to partitioned documents.

Walking the partition tree is the only aggregate query primitive. It sits
behind :class:`DocumentScanner` so a secondary index or an embedded database
can replace it without touching call sites.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Any, Iterator, Protocol

from .errors import TransientIOFailure
from .fs_json import read_json
from .paths import SCHEMES, Family, family_root, is_partition_path

logger = logging.getLogger(__name__)


class DocumentScanner(Protocol):
    def iter_paths(self, family: Family) -> Iterator[PurePosixPath]:
        ...

    def read(self, relative: PurePosixPath) -> Any:
        ...


class DirectoryWalkScanner:
    """Enumerates documents by walking ``<family>/<YYYY>/<Month>/<DD>/<leaf>/``."""

    def __init__(self, data_root: Path) -> None:
        self.data_root = data_root

    def iter_paths(self, family: Family) -> Iterator[PurePosixPath]:
        """Yield the data-root-relative path of every document in *family*, sorted."""
        root = family_root(self.data_root, family)
        if not root.is_dir():
            return
        scheme = SCHEMES[family]
        pattern = "*/*/*/*/" + scheme.document.replace("{id}", "*")
        try:
            candidates = sorted(root.glob(pattern))
        except OSError as exc:
            raise TransientIOFailure(f"failed to walk {root}: {exc}") from exc
        for candidate in candidates:
            if not candidate.is_file():
                continue
            relative = PurePosixPath(candidate.relative_to(self.data_root).as_posix())
            if is_partition_path(family, relative):
                yield relative
            else:
                logger.debug("Ignoring non-canonical file %s", relative)

    def iter_directory(self, directory: PurePosixPath, suffix: str = ".json") -> Iterator[PurePosixPath]:
        """Yield documents directly under one data-root-relative directory."""
        absolute = self.data_root / directory
        if not absolute.is_dir():
            return
        try:
            names = sorted(p.name for p in absolute.iterdir() if p.is_file() and p.name.endswith(suffix))
        except OSError as exc:
            raise TransientIOFailure(f"failed to list {absolute}: {exc}") from exc
        for name in names:
            yield directory / name

    def read(self, relative: PurePosixPath) -> Any:
        return read_json(self.data_root / relative)
