"""
Local filesystem backend — one `<name>.crl` file per source.

Writes go to a temporary file in the target directory and are moved into place
with os.replace, so a reader never observes a half-written list.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import structlog

from crl_trawler.domain.failures import ErrorCode
from crl_trawler.domain.result import Result

log = structlog.get_logger()

DEFAULT_FILE_MODE = 0o660


class LocalFileStorage:
    """Implements the StorageBackend port on a local directory."""

    name = "local"

    def __init__(self, directory: Path | str, file_mode: int = DEFAULT_FILE_MODE) -> None:
        self._directory = Path(directory)
        self._file_mode = file_mode

    @property
    def directory(self) -> Path:
        return self._directory

    def key_for(self, source_name: str) -> str:
        return str(self._directory / f"{source_name}.crl")

    def read(self, key: str) -> Result[bytes]:
        """
        Read the stored artifact.

        A missing file is NOT_FOUND. Anything else (permissions, a directory
        in the way) is BACKEND_UNAVAILABLE_ERROR.
        """
        path = Path(key)
        if not path.exists():
            return Result.failure(ErrorCode.NOT_FOUND, f"No stored CRL at {path}")
        return Result.from_computation(
            path.read_bytes,
            ErrorCode.BACKEND_UNAVAILABLE_ERROR,
            f"Stored CRL at {path} could not be read",
        )

    def exists(self, key: str) -> Result[bool]:
        return Result.from_computation(
            lambda: Path(key).is_file(),
            ErrorCode.BACKEND_UNAVAILABLE_ERROR,
            f"Could not stat {key}",
        )

    def write(self, key: str, data: bytes) -> Result[str]:
        return Result.from_computation(
            lambda: self._do_write(Path(key), data),
            ErrorCode.WRITE_ERROR,
            f"Could not write CRL to {key}",
        )

    def _do_write(self, path: Path, data: bytes) -> str:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, self._file_mode)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        log.info("storage.local.written", path=str(path), size_bytes=len(data))
        return str(path)
