"""Shared fixtures: on-disk installation layout, SQLite database, package builders."""

from __future__ import annotations

import dataclasses
import io
import json
import zipfile
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

import pytest
import sqlalchemy as sa

from installer_api.database import dispose_engines, ensure_engine_tables
from installer_api.settings import Settings

Content = Union[str, bytes]


def make_settings(tmp_path: Path, **overrides) -> Settings:
    """Build settings for an installation rooted at ``tmp_path / 'live'``."""
    base_path = tmp_path / "live"
    base_path.mkdir(parents=True, exist_ok=True)
    settings = Settings(
        base_path=base_path.resolve(),
        updates_root=tmp_path / "updates",
        config_dir=tmp_path / "config",
        seed_script_path=tmp_path / "install.sql",
        installer_ui_path=base_path / "resources" / "install",
        cache_dirs=(base_path / "storage" / "cache",),
        database_url_override=f"sqlite:///{tmp_path / 'app.db'}",
    )
    return dataclasses.replace(settings, **overrides)


def zip_bytes(entries: Mapping[str, Content]) -> bytes:
    """Return an in-memory ZIP containing ``entries``."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def zip_with_unknown_method(entries: Mapping[str, Content]) -> bytes:
    """Return a ZIP whose central directory declares an unsupported compression method."""
    data = bytearray(zip_bytes(entries))
    offset = data.find(b"PK\x01\x02")
    while offset != -1:
        data[offset + 10:offset + 12] = (99).to_bytes(2, "little")
        offset = data.find(b"PK\x01\x02", offset + 4)
    return bytes(data)


def build_package(
    path: Path,
    *,
    version: str = "1.2.0",
    folders: Optional[Dict[str, str]] = None,
    files: Optional[Dict[str, str]] = None,
    archives: Optional[Dict[str, str]] = None,
    payload: Optional[Mapping[str, Content]] = None,
    manifest_extra: Optional[Dict[str, object]] = None,
    prefix: str = "",
    include_manifest: bool = True,
) -> Path:
    """Write an update package ZIP.

    ``payload`` entries and satellite maps are placed relative to the manifest
    directory, which is the archive root or ``prefix`` (e.g. ``"plugin/"``).
    """
    entries: Dict[str, Content] = {}
    manifest: Dict[str, object] = {"version": version}
    for key, mapping in (("folders", folders), ("files", files), ("archives", archives)):
        if mapping is None:
            continue
        manifest[key] = f"{key}.json"
        entries[f"{prefix}{key}.json"] = json.dumps(mapping)
    manifest.update(manifest_extra or {})
    if include_manifest:
        entries[f"{prefix}package.json"] = json.dumps(manifest)
    for name, content in (payload or {}).items():
        entries[f"{prefix}{name}"] = content

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(zip_bytes(entries))
    return path


@pytest.fixture(autouse=True)
def _dispose_cached_engines():
    yield
    dispose_engines()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def engine(settings: Settings):
    engine = sa.create_engine(settings.database_url())
    ensure_engine_tables(engine)
    yield engine
    engine.dispose()
