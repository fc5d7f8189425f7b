"""Bounded-length line reading over plain, gzip and zip log files."""

from __future__ import annotations

import contextlib
import gzip
import zipfile
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from ..config import settings
from ..utils.logging_utils import get_logger

LOGGER = get_logger("ingest.line_source")

GZIP_MAGIC = b"\x1f\x8b"
ZIP_MAGIC = b"PK\x03\x04"
PREVIEW_CHARS = 64


# ---------------------------------------------------------------------------
# Compression detection


def detect_compression(path: Path) -> str:
    """Return ``"gzip"``, ``"zip"`` or ``"plain"`` for *path*.

    Magic bytes win; the suffix is only consulted for files too short to sniff.
    """

    with path.open("rb") as handle:
        head = handle.read(4)
    if head.startswith(GZIP_MAGIC):
        return "gzip"
    if head.startswith(ZIP_MAGIC):
        return "zip"
    if len(head) < 2:
        suffix = path.suffix.lower()
        if suffix in {".gz", ".gzip"}:
            return "gzip"
        if suffix == ".zip":
            return "zip"
    return "plain"


def open_log_stream(path: Path, stack: contextlib.ExitStack) -> BinaryIO:
    """Open *path* as a decompressed binary stream registered on *stack*."""

    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(path)

    kind = detect_compression(path)
    LOGGER.debug("Opening %s as %s", path, kind)
    if kind == "gzip":
        return stack.enter_context(gzip.open(path, "rb"))
    if kind == "zip":
        archive = stack.enter_context(zipfile.ZipFile(path))
        members = [info for info in archive.infolist() if not info.is_dir()]
        if not members:
            raise ValueError(f"Zip archive {path} contains no files")
        if len(members) > 1:
            LOGGER.warning(
                "Zip archive %s holds %d members; reading only %s",
                path,
                len(members),
                members[0].filename,
            )
        return stack.enter_context(archive.open(members[0]))
    return stack.enter_context(path.open("rb"))


# ---------------------------------------------------------------------------
# Line iteration


class LineSource:
    """Lazy, single-use iterator of decoded lines with a hard length cap.

    Lines longer than ``max_line_bytes`` are logged with a short preview and
    dropped without interrupting the stream.
    """

    def __init__(
        self,
        stream: BinaryIO,
        *,
        name: str = "<stream>",
        max_line_bytes: Optional[int] = None,
    ) -> None:
        self.stream = stream
        self.name = name
        self.max_line_bytes = max_line_bytes or settings.max_line_bytes
        self.lines_read = 0
        self.skipped_lines = 0
        self._consumed = False

    @classmethod
    @contextlib.contextmanager
    def open(
        cls, path: Path, *, max_line_bytes: Optional[int] = None
    ) -> Iterator["LineSource"]:
        """Open *path* (decompressing if needed) and close it on exit."""

        with contextlib.ExitStack() as stack:
            stream = open_log_stream(Path(path), stack)
            yield cls(stream, name=str(path), max_line_bytes=max_line_bytes)

    def __iter__(self) -> Iterator[str]:
        if self._consumed:
            raise RuntimeError(f"LineSource for {self.name} has already been consumed")
        self._consumed = True
        return self._lines()

    def _lines(self) -> Iterator[str]:
        limit = self.max_line_bytes
        # two extra bytes leave room for a "\r\n" terminator on a maximal line
        read_size = limit + 2
        readline = self.stream.readline
        while True:
            chunk = readline(read_size)
            if not chunk:
                return
            complete = chunk.endswith(b"\n")
            content = chunk
            if complete:
                content = content[:-1]
                if content.endswith(b"\r"):
                    content = content[:-1]
            elif content.endswith(b"\r"):
                content = content[:-1]

            if len(content) > limit:
                self.skipped_lines += 1
                preview = content[:PREVIEW_CHARS].decode("utf-8", errors="replace")
                LOGGER.warning(
                    "Skipping over-length line in %s (> %d bytes): %s...",
                    self.name,
                    limit,
                    preview,
                )
                if not complete:
                    self._discard_rest_of_line(read_size)
                continue

            self.lines_read += 1
            yield content.decode("utf-8", errors="replace")

    def _discard_rest_of_line(self, read_size: int) -> None:
        while True:
            remainder = self.stream.readline(read_size)
            if not remainder or remainder.endswith(b"\n"):
                return
