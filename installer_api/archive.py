"""Safe ZIP extraction for update packages and nested archives."""

from __future__ import annotations

import logging
import shutil
import zipfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Optional

from installer_api.errors import ExtractionFailed

_SYMLINK_MODE = 0o120000
_FILE_TYPE_MASK = 0o170000


class ArchiveExtractor:
    """Extract ZIP archives into arbitrary destinations.

    Destinations may live outside the staging area (nested archives are
    extracted straight into the live tree), so every member is checked for
    absolute paths, ``..`` segments and symlinks before anything is written.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.log = logger or logging.getLogger("installer_api.archive")

    def extract(self, archive_path: Path, destination: Path) -> int:
        """Extract ``archive_path`` into ``destination`` and return the member count."""
        archive_path = Path(archive_path)
        destination = Path(destination)
        try:
            destination.mkdir(parents=True, exist_ok=True)
            destination_root = destination.resolve()
            with zipfile.ZipFile(archive_path, "r") as archive:
                entries = archive.infolist()
                for entry in entries:
                    self._check_entry(entry)
                for entry in entries:
                    self._extract_entry(archive, entry, destination_root)
        except ExtractionFailed:
            raise
        except zipfile.BadZipFile as exc:
            raise ExtractionFailed(
                message="Extraction failed.",
                hint=f"Could not open ZIP archive {archive_path.name}: {exc}",
            ) from exc
        except (NotImplementedError, RuntimeError, EOFError, zlib.error) as exc:
            # Unsupported compression, encrypted members and truncated streams.
            raise ExtractionFailed(
                message="Extraction failed.",
                hint=f"Could not read ZIP archive {archive_path.name}: {exc}",
            ) from exc
        except OSError as exc:
            raise ExtractionFailed(
                message="Extraction failed.",
                hint=f"{archive_path.name}: {exc}",
            ) from exc
        self.log.debug("Extracted %d entries from %s into %s", len(entries), archive_path, destination)
        return len(entries)

    @staticmethod
    def _check_entry(entry: zipfile.ZipInfo) -> None:
        name = entry.filename.replace("\\", "/")
        pure = PurePosixPath(name)
        if pure.is_absolute() or ".." in pure.parts:
            raise ExtractionFailed(message="Archive contains unsafe path", hint=name)
        if (entry.external_attr >> 16) & _FILE_TYPE_MASK == _SYMLINK_MODE:
            raise ExtractionFailed(message="Archive contains symlink entry", hint=name)

    @staticmethod
    def _extract_entry(archive: zipfile.ZipFile, entry: zipfile.ZipInfo, destination_root: Path) -> None:
        name = entry.filename.replace("\\", "/")
        if not name.strip("/"):
            return
        target = (destination_root / PurePosixPath(name).as_posix()).resolve()
        if destination_root not in (target, *target.parents):
            raise ExtractionFailed(message="Archive entry escaped extraction directory", hint=name)
        if entry.is_dir():
            target.mkdir(parents=True, exist_ok=True)
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        with archive.open(entry, "r") as source, target.open("wb") as handle:
            shutil.copyfileobj(source, handle)


__all__ = ["ArchiveExtractor"]
