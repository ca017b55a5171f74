"""Turning a downloaded payload into a local file.

A download goes through two transient resources: the staging file the body
is streamed into, and the reserved destination name. ``DownloadTrigger.fire``
moves the staged bytes into place exactly once. Both resources must be
released whatever happens; releasing is idempotent.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path
from typing import BinaryIO, Protocol

_MAX_NAME_ATTEMPTS = 100


class StagedPayload:
    """Byte sink backed by a hidden temporary file in the download directory."""

    def __init__(self, path: Path, fh: BinaryIO) -> None:
        self.path = path
        self._fh = fh
        self.size = 0

    @property
    def closed(self) -> bool:
        return self._fh.closed

    def write(self, chunk: bytes) -> None:
        self._fh.write(chunk)
        self.size += len(chunk)

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()


class DownloadTrigger:
    """Binds a staged payload to its final destination."""

    def __init__(self, staged: StagedPayload, destination: Path) -> None:
        self.staged = staged
        self.destination = destination
        self.fired = False

    def fire(self) -> Path:
        if self.fired:
            raise RuntimeError(f"Download already triggered: {self.destination}")
        self.staged.close()
        os.replace(self.staged.path, self.destination)
        self.fired = True
        return self.destination


class Materializer(Protocol):
    def stage(self) -> StagedPayload: ...

    def bind(self, staged: StagedPayload, filename: str) -> DownloadTrigger: ...

    def release(self, staged: StagedPayload) -> None: ...

    def unbind(self, trigger: DownloadTrigger) -> None: ...


class FileMaterializer:
    """Writes downloads into ``directory``, never overwriting existing files."""

    def __init__(self, directory: str | Path = ".") -> None:
        self.directory = Path(directory)

    def stage(self) -> StagedPayload:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(dir=self.directory, prefix=".ipfsbridge-", suffix=".part")
        return StagedPayload(Path(name), os.fdopen(fd, "wb"))

    def bind(self, staged: StagedPayload, filename: str) -> DownloadTrigger:
        """Reserve a free destination name, adding `` (n)`` like a browser would."""
        # Never let a remote-supplied name escape the download directory.
        name = Path(filename).name or "download"
        stem, suffix = Path(name).stem, Path(name).suffix
        for n in range(_MAX_NAME_ATTEMPTS):
            candidate = self.directory / (name if n == 0 else f"{stem} ({n}){suffix}")
            try:
                # Exclusive create is the reservation; fire() replaces it.
                with open(candidate, "xb"):
                    pass
            except FileExistsError:
                continue
            return DownloadTrigger(staged, candidate)
        raise FileExistsError(f"No free file name for {name} in {self.directory}")

    def release(self, staged: StagedPayload) -> None:
        staged.close()
        staged.path.unlink(missing_ok=True)

    def unbind(self, trigger: DownloadTrigger) -> None:
        if not trigger.fired:
            with contextlib.suppress(FileNotFoundError):
                trigger.destination.unlink()
