"""Locate and parse ``package.json`` manifests and their satellite maps.

A package carries one manifest, either at the archive root or one level deep
in a ``plugin/`` directory. The manifest points at up to three satellite JSON
documents (directory map, file map, archive map) by paths relative to its own
directory.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Mapping, Optional

from installer_api.errors import MalformedManifest, ManifestNotFound

MANIFEST_NAME = "package.json"
# Probed in order; the first existing candidate wins.
MANIFEST_CANDIDATES: tuple[str, ...] = ("plugin/" + MANIFEST_NAME, MANIFEST_NAME)
SATELLITE_KEYS: tuple[str, ...] = ("folders", "files", "archives")
MIGRATIONS_DIR = "update-files/database/migrations"


@dataclass(frozen=True)
class Manifest:
    """Validated manifest metadata."""

    path: Path
    package_root: Path
    version: str
    folders: Optional[str] = None
    files: Optional[str] = None
    archives: Optional[str] = None
    manual_queries: bool = False
    query_path: Optional[str] = None

    @property
    def root(self) -> Path:
        """Directory containing the manifest; satellite paths are relative to it."""
        return self.path.parent

    @property
    def migrations_dir(self) -> Path:
        return self.root / MIGRATIONS_DIR

    @property
    def is_noop(self) -> bool:
        return (
            not any((self.folders, self.files, self.archives))
            and not self.manual_queries
            and not self.migrations_dir.is_dir()
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "folders": self.folders,
            "files": self.files,
            "archives": self.archives,
            "manual_queries": self.manual_queries,
            "query_path": self.query_path,
            "location": self.path.relative_to(self.package_root).as_posix(),
        }


def contained_path(base: Path, relative: str, *, root: Path) -> Optional[Path]:
    """Resolve ``relative`` against ``base`` and return it only if it stays under ``root``."""
    text = str(relative or "").strip().replace("\\", "/")
    if not text or PurePosixPath(text).is_absolute():
        return None
    candidate = (base / text).resolve()
    root_resolved = root.resolve()
    if root_resolved not in (candidate, *candidate.parents):
        return None
    return candidate


class ManifestReader:
    """Find the manifest in a staged package and read its directives."""

    def __init__(
        self,
        *,
        candidates: tuple[str, ...] = MANIFEST_CANDIDATES,
        strict_satellites: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.candidates = candidates
        self.strict_satellites = bool(strict_satellites)
        self.log = logger or logging.getLogger("installer_api.manifest")

    def locate(self, staging_root: Path) -> Path:
        """Return the first existing manifest candidate under ``staging_root``."""
        root = Path(staging_root)
        for candidate in self.candidates:
            path = root / candidate
            if path.is_file():
                return path
        raise ManifestNotFound(hint="Expected one of: " + ", ".join(self.candidates))

    def parse(self, manifest_path: Path, *, package_root: Optional[Path] = None) -> Manifest:
        """Decode and validate one manifest file."""
        manifest_path = Path(manifest_path)
        try:
            payload = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            raise MalformedManifest(
                message="Invalid update file! The package manifest is not valid JSON.",
                hint=str(exc),
            ) from exc

        if not isinstance(payload, Mapping) or not payload:
            raise MalformedManifest(
                message="Invalid update file! No package data found.",
                hint=f"{MANIFEST_NAME} must be a non-empty JSON object.",
            )

        version = payload.get("version")
        if not isinstance(version, (str, int, float)) or not str(version).strip():
            raise MalformedManifest(
                message="Invalid update file! The package version is missing.",
                hint=f"Provide a non-empty 'version' in {MANIFEST_NAME}.",
            )

        references: Dict[str, Optional[str]] = {}
        for key in (*SATELLITE_KEYS, "query_path"):
            value = payload.get(key)
            if value in (None, ""):
                references[key] = None
                continue
            if not isinstance(value, str):
                raise MalformedManifest(
                    message=f"Invalid update file! '{key}' must be a path string.",
                    hint=f"Got {type(value).__name__}.",
                )
            references[key] = value.strip() or None

        manual_queries = payload.get("manual_queries", False)
        if not isinstance(manual_queries, (bool, int)):
            raise MalformedManifest(
                message="Invalid update file! 'manual_queries' must be a boolean.",
                hint=f"Got {manual_queries!r}.",
            )

        return Manifest(
            path=manifest_path,
            package_root=Path(package_root) if package_root else manifest_path.parent,
            version=str(version).strip(),
            folders=references["folders"],
            files=references["files"],
            archives=references["archives"],
            manual_queries=bool(manual_queries),
            query_path=references["query_path"],
        )

    def resolve_satellite(self, manifest: Manifest, key: str) -> Dict[str, str]:
        """Load one satellite map; absent or unreadable satellites yield an empty map."""
        if key not in SATELLITE_KEYS:
            raise ValueError(f"Unknown satellite key '{key}'")
        reference = getattr(manifest, key)
        if not reference:
            return {}

        path = contained_path(manifest.root, reference, root=manifest.package_root)
        if path is None:
            return self._lenient(key, f"satellite path '{reference}' escapes the package")
        if not path.is_file():
            self.log.info("Satellite %s (%s) not present in package", key, reference)
            return {}

        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return self._lenient(key, f"could not read {reference}: {exc}")
        if not text.strip():
            return {}
        try:
            payload = json.loads(text)
        except ValueError as exc:
            return self._lenient(key, f"{reference} is not valid JSON: {exc}")
        if not isinstance(payload, Mapping):
            return self._lenient(key, f"{reference} must be a JSON object")

        entries: Dict[str, str] = {}
        for raw_key, raw_value in payload.items():
            if not isinstance(raw_value, str) or not raw_value.strip():
                self.log.warning("Ignoring %s entry %r: destination must be a non-empty string", key, raw_key)
                continue
            entries[str(raw_key)] = raw_value.strip()
        return entries

    def _lenient(self, key: str, reason: str) -> Dict[str, str]:
        if self.strict_satellites:
            raise MalformedManifest(message=f"Invalid {key} map in update package", hint=reason)
        self.log.warning("Treating %s map as empty: %s", key, reason)
        return {}


__all__ = [
    "MANIFEST_CANDIDATES",
    "MIGRATIONS_DIR",
    "Manifest",
    "ManifestReader",
    "SATELLITE_KEYS",
    "contained_path",
]
