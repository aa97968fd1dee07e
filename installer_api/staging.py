"""Temporary on-disk staging area for uploaded update packages.

Each attempt receives its own directory ``<staging_root>/<attempt_id>/`` that
holds the uploaded ZIP and its extracted contents. :meth:`StagingStore.staged`
wraps stage + cleanup so the directory is removed on every exit path.

:class:`UpdateLock` serializes apply attempts across threads and processes
with an OS-level file lock; a second attempt fails fast instead of waiting.
"""

from __future__ import annotations

import errno
import logging
import shutil
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

import filelock

from installer_api.errors import InstallerError, InvalidPackageFormat, StagingError, UpdateInProgress
from installer_api.settings import MAX_UPLOAD_BYTES_DEFAULT

ACCEPTED_EXTENSION = ".zip"
PACKAGE_FILENAME = "update-package.zip"
CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class StagingHandle:
    """Location of one staged upload."""

    attempt_id: str
    root: Path
    original_filename: str
    package_path: Path
    bytes_written: int

    @property
    def extract_dir(self) -> Path:
        return self.root / "package"


def normalize_upload_name(filename: str) -> str:
    """Validate upload filename and enforce the ZIP extension."""
    normalized = Path(str(filename or "").replace("\\", "/")).name.strip()
    if not normalized:
        raise InvalidPackageFormat(
            message="You did not select a file to upload.",
            hint="Upload a .zip update package.",
        )
    if not normalized.lower().endswith(ACCEPTED_EXTENSION):
        raise InvalidPackageFormat(
            message="Please upload a valid Zip file.",
            hint="Only .zip files are allowed.",
        )
    return normalized


class StagingStore:
    """Create and remove per-attempt staging directories."""

    def __init__(
        self,
        staging_root: Path,
        *,
        max_upload_bytes: int = MAX_UPLOAD_BYTES_DEFAULT,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.staging_root = Path(staging_root)
        self.max_upload_bytes = int(max_upload_bytes)
        self.log = logger or logging.getLogger("installer_api.staging")

    def stage(self, filename: str, source: BinaryIO) -> StagingHandle:
        """Copy an uploaded stream into a fresh staging directory."""
        normalized_name = normalize_upload_name(filename)
        attempt_id = uuid.uuid4().hex
        root = self.staging_root / attempt_id
        package_path = root / PACKAGE_FILENAME
        try:
            root.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise self._storage_error(exc) from exc

        try:
            bytes_written = self._write_upload(source=source, target_path=package_path)
        except InstallerError:
            shutil.rmtree(root, ignore_errors=True)
            raise

        self.log.info("Staged %s (%d bytes) as attempt %s", normalized_name, bytes_written, attempt_id)
        return StagingHandle(
            attempt_id=attempt_id,
            root=root,
            original_filename=normalized_name,
            package_path=package_path,
            bytes_written=bytes_written,
        )

    def cleanup(self, handle: StagingHandle) -> None:
        """Remove the entire staging directory of one attempt."""
        shutil.rmtree(handle.root, ignore_errors=True)
        self.log.debug("Removed staging directory %s", handle.root)

    @contextmanager
    def staged(self, filename: str, source: BinaryIO) -> Iterator[StagingHandle]:
        """Stage an upload and guarantee its cleanup when the block exits."""
        handle = self.stage(filename, source)
        try:
            yield handle
        finally:
            self.cleanup(handle)

    def _write_upload(self, *, source: BinaryIO, target_path: Path) -> int:
        """Copy uploaded file stream to disk with size enforcement."""
        bytes_written = 0
        try:
            with target_path.open("wb") as handle:
                while True:
                    chunk = source.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    bytes_written += len(chunk)
                    if bytes_written > self.max_upload_bytes:
                        raise StagingError(
                            code="updates.upload_too_large",
                            message="Update package exceeds size limit",
                            hint=f"Maximum package size is {self.max_upload_bytes} bytes.",
                            status_code=413,
                        )
                    handle.write(chunk)
        except InstallerError:
            raise
        except OSError as exc:
            raise self._storage_error(exc) from exc
        if bytes_written <= 0:
            raise InvalidPackageFormat(
                message="Uploaded package is empty",
                hint="Upload a non-empty update ZIP file.",
            )
        return bytes_written

    @staticmethod
    def _storage_error(exc: OSError) -> StagingError:
        if exc.errno == errno.ENOSPC:
            return StagingError(
                code="updates.storage_full",
                message="Not enough disk space to stage the update package",
                hint=str(exc),
                status_code=507,
            )
        return StagingError(
            code="updates.write_failed",
            message="Failed to store uploaded package",
            hint=str(exc) or "Check filesystem permissions.",
        )


class UpdateLock:
    """Non-blocking exclusive lock marking an apply attempt in progress."""

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = Path(lock_path)
        self._lock: Optional[filelock.BaseFileLock] = None

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock = filelock.FileLock(str(self.lock_path), timeout=0)
        try:
            lock.acquire()
        except filelock.Timeout as exc:
            raise UpdateInProgress(hint=f"Lock held at {self.lock_path}.") from exc
        self._lock = lock

    def release(self) -> None:
        if self._lock is not None:
            self._lock.release()
            self._lock = None

    def __enter__(self) -> "UpdateLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


__all__ = [
    "ACCEPTED_EXTENSION",
    "StagingHandle",
    "StagingStore",
    "UpdateLock",
    "normalize_upload_name",
]
