"""
Local filesystem blob store.

Each upload is written to ``<uploads>/<name>`` where the name is the file
record's id, never the client-supplied filename. The handle returned to the
registry is the absolute path.
"""

import shutil
from pathlib import Path
from typing import BinaryIO


class LocalBlobStore:
    """Blob store backed by a single directory."""

    def __init__(self, root: Path):
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, handle: str) -> Path:
        path = Path(handle).resolve()
        if path.parent != self._root.resolve():
            raise ValueError(f"Handle outside blob store: {handle}")
        return path

    def put(self, stream: BinaryIO, name: str) -> tuple[str, int]:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise ValueError(f"Invalid blob name: {name!r}")
        path = self._root / name
        with open(path, "wb") as f:
            shutil.copyfileobj(stream, f)
        return str(path.resolve()), path.stat().st_size

    def open(self, handle: str) -> BinaryIO:
        return open(self._resolve(handle), "rb")

    def delete(self, handle: str) -> None:
        self._resolve(handle).unlink()
