from __future__ import annotations

"""Byte sinks that hold a composed message between compose and send.

A sink is written once (append-only) by the composer, then rewound and read
by the transport. The backing is picked once, from the size estimate, before
composition starts:

- MemorySink: in-memory buffer for ordinary messages.
- SpoolFileSink: randomly named temp file in the spool directory for large
  ones; the file is removed when the sink is closed.
"""

import io
import tempfile
from pathlib import Path
from typing import BinaryIO, Iterator

from mailrun.errors import ComposeError

MEMORY_MAX_SIZE = 10 << 20  # 10 MiB


class Sink:
    kind = "abstract"

    def __init__(self, fh: BinaryIO) -> None:
        self._fh = fh
        self.written = 0

    def write(self, data: bytes) -> int:
        n = self._fh.write(data)
        self.written += len(data)
        return n

    def flush(self) -> None:
        self._fh.flush()

    def rewind(self) -> None:
        self._fh.flush()
        self._fh.seek(0)

    def seekable(self) -> bool:
        return True

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        self._fh.flush()
        return self._fh.seek(offset, whence)

    def read(self, size: int = -1) -> bytes:
        return self._fh.read(size)

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._fh)

    @property
    def closed(self) -> bool:
        return self._fh.closed

    def close(self) -> None:
        self._fh.close()

    def __enter__(self) -> "Sink":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class MemorySink(Sink):
    kind = "memory"

    def __init__(self) -> None:
        super().__init__(io.BytesIO())

    def getvalue(self) -> bytes:
        return self._fh.getvalue()  # type: ignore[attr-defined]


class SpoolFileSink(Sink):
    kind = "file"

    def __init__(self, spool_dir: Path) -> None:
        spool_dir.mkdir(parents=True, exist_ok=True)
        # Random name so concurrent runs in the same directory never collide.
        fh = tempfile.NamedTemporaryFile(
            mode="w+b",
            dir=spool_dir,
            prefix=".mailrun-",
            suffix=".tmp",
            delete=True,
        )
        super().__init__(fh)  # type: ignore[arg-type]
        self.path = Path(fh.name)


def open_sink(estimated_size: int, *, spool_dir: Path, threshold: int = MEMORY_MAX_SIZE) -> Sink:
    """Pick the sink backing for a message of roughly ``estimated_size`` bytes.

    The boundary is inclusive: an estimate equal to ``threshold`` spools to disk.
    Raises ComposeError when the spool file cannot be created.
    """
    if estimated_size >= threshold:
        try:
            return SpoolFileSink(spool_dir)
        except OSError as exc:
            raise ComposeError(
                f"cannot create spool file in {spool_dir}: {exc}",
                stage="spool",
                target=str(spool_dir),
            ) from exc
    return MemorySink()
