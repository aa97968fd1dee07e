"""Apply directory, file and nested-archive directives to the live tree.

Each directive is attempted independently. A failing directive is recorded as
a ``failed`` outcome and the remaining directives still run; nothing is rolled
back.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Iterable, List, Mapping, Optional

from installer_api.archive import ArchiveExtractor
from installer_api.errors import ExtractionFailed
from installer_api.manifest import contained_path
from installer_api.outcomes import DirectiveOutcome


class FilesystemApplier:
    """Mutate the live installation tree rooted at ``base_path``."""

    def __init__(self, base_path: Path, logger: Optional[logging.Logger] = None) -> None:
        self.base_path = Path(base_path).resolve()
        self.log = logger or logging.getLogger("installer_api.filesystem")

    def live_path(self, destination: str) -> Optional[Path]:
        """Resolve a map destination inside the live tree, or ``None`` if it escapes."""
        text = str(destination or "").strip().replace("\\", "/")
        if not text:
            return None
        candidate = Path(text)
        if candidate.is_absolute():
            resolved = candidate.resolve()
            if self.base_path in (resolved, *resolved.parents):
                return resolved
            # Leading separators are base-relative.
            text = text.lstrip("/")
        return contained_path(self.base_path, text, root=self.base_path)

    def apply_folders(self, mapping: Mapping[str, str]) -> List[DirectiveOutcome]:
        """Create every destination directory that does not exist yet."""
        outcomes: List[DirectiveOutcome] = []
        for key, destination in mapping.items():
            target = self.live_path(destination)
            if target is None:
                outcomes.append(self._failed("folder", key, destination, "destination escapes the installation"))
                continue
            if target.is_dir():
                outcomes.append(DirectiveOutcome.skipped("folder", key, str(target), "already present"))
                continue
            if target.exists():
                outcomes.append(self._failed("folder", key, str(target), "destination exists and is not a directory"))
                continue
            try:
                target.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                outcomes.append(self._failed("folder", key, str(target), str(exc)))
                continue
            outcomes.append(DirectiveOutcome.applied("folder", key, str(target)))
        return outcomes

    def apply_files(
        self,
        mapping: Mapping[str, str],
        *,
        source_root: Path,
        package_root: Optional[Path] = None,
    ) -> List[DirectiveOutcome]:
        """Copy staged files over their live destinations."""
        package_root = Path(package_root or source_root)
        outcomes: List[DirectiveOutcome] = []
        for key, destination in mapping.items():
            source = contained_path(Path(source_root), key, root=package_root)
            if source is None:
                outcomes.append(self._failed("file", key, destination, "source path escapes the package"))
                continue
            target = self.live_path(destination)
            if target is None:
                outcomes.append(self._failed("file", key, destination, "destination escapes the installation"))
                continue
            if not source.is_file():
                outcomes.append(DirectiveOutcome.skipped("file", key, str(target), "source file missing from package"))
                continue
            existed = target.exists()
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
            except OSError as exc:
                outcomes.append(self._failed("file", key, str(target), str(exc)))
                continue
            outcomes.append(DirectiveOutcome.applied("file", key, str(target), "overwritten" if existed else "created"))
        return outcomes

    def apply_archives(
        self,
        mapping: Mapping[str, str],
        extractor: ArchiveExtractor,
        *,
        source_root: Path,
        package_root: Optional[Path] = None,
    ) -> List[DirectiveOutcome]:
        """Extract nested archives directly into their live destinations."""
        package_root = Path(package_root or source_root)
        outcomes: List[DirectiveOutcome] = []
        for key, destination in mapping.items():
            source = contained_path(Path(source_root), key, root=package_root)
            if source is None:
                outcomes.append(self._failed("archive", key, destination, "source path escapes the package"))
                continue
            target = self.live_path(destination)
            if target is None:
                outcomes.append(self._failed("archive", key, destination, "destination escapes the installation"))
                continue
            if not source.is_file():
                outcomes.append(DirectiveOutcome.skipped("archive", key, str(target), "archive missing from package"))
                continue
            try:
                count = extractor.extract(source, target)
            except ExtractionFailed as exc:
                detail = f"{exc.message} {exc.hint}".strip()
                outcomes.append(self._failed("archive", key, str(target), detail))
                continue
            outcomes.append(DirectiveOutcome.applied("archive", key, str(target), f"{count} entries extracted"))
        return outcomes

    def _failed(self, kind: str, key: str, target: str, error: str) -> DirectiveOutcome:
        self.log.warning("%s directive %r -> %s failed: %s", kind, key, target, error)
        return DirectiveOutcome.failed(kind, key, str(target), error)


def clear_cache_dirs(cache_dirs: Iterable[Path], logger: Optional[logging.Logger] = None) -> int:
    """Empty each cache directory, keeping the directory itself. Returns removed entries."""
    log = logger or logging.getLogger("installer_api.filesystem")
    removed = 0
    for directory in cache_dirs:
        directory = Path(directory)
        if not directory.is_dir():
            continue
        for entry in directory.iterdir():
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as exc:
                log.warning("Could not remove cache entry %s: %s", entry, exc)
                continue
            removed += 1
    log.info("Cleared %d cache entries", removed)
    return removed


__all__ = ["FilesystemApplier", "clear_cache_dirs"]
