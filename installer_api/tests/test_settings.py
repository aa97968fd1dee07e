from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path

import pytest

from installer_api.logging_config import configure_root, env_truthy
from installer_api.settings import DatabaseConfig, Settings, load_database_config, save_database_config


def test_from_env_reads_paths_and_flags(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INSTALLER_BASE_PATH", str(tmp_path))
    monkeypatch.setenv("INSTALLER_CACHE_DIRS", os.pathsep.join([str(tmp_path / "c1"), str(tmp_path / "c2")]))
    monkeypatch.setenv("INSTALLER_MAX_UPLOAD_BYTES", "1024")
    monkeypatch.setenv("INSTALLER_STRICT_SATELLITES", "yes")
    monkeypatch.setenv("INSTALLER_BASE_VERSION", "1.0.0")
    for name in ("INSTALLER_UPDATES_ROOT", "INSTALLER_CONFIG_DIR", "INSTALLER_DATABASE_URL", "INSTALLER_CODE_VERSION"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.base_path == tmp_path.resolve()
    assert settings.updates_root == tmp_path.resolve() / "storage" / "updates"
    assert settings.staging_root == settings.updates_root / "staging"
    assert settings.lock_path == settings.updates_root / "update.lock"
    assert settings.cache_dirs == (tmp_path / "c1", tmp_path / "c2")
    assert settings.max_upload_bytes == 1024
    assert settings.strict_satellites is True
    assert settings.base_version == "1.0.0"
    assert settings.database_url() is None


def test_code_version_prefers_override_then_version_file(tmp_path: Path) -> None:
    settings = Settings(
        base_path=tmp_path,
        updates_root=tmp_path / "updates",
        config_dir=tmp_path / "config",
        seed_script_path=tmp_path / "install.sql",
        installer_ui_path=tmp_path / "install",
    )
    assert settings.code_version() is None

    (tmp_path / "VERSION").write_text("1.3.0\n")
    assert settings.code_version() == "1.3.0"

    overridden = dataclasses.replace(settings, code_version_override="9.9.9")
    assert overridden.code_version() == "9.9.9"


def test_database_config_round_trip(tmp_path: Path) -> None:
    config = DatabaseConfig(database="crm", host="db.internal", port=3306, username="crm", password="pw")

    save_database_config(tmp_path, config)

    assert load_database_config(tmp_path) == config
    url = config.url()
    assert url.drivername == "mysql+pymysql"
    assert url.host == "db.internal"
    assert url.database == "crm"


def test_unreadable_database_config_is_ignored(tmp_path: Path) -> None:
    (tmp_path / "database.json").write_text("{not json")

    assert load_database_config(tmp_path) is None


def test_database_config_requires_database_name() -> None:
    with pytest.raises(ValueError):
        DatabaseConfig.from_mapping({"host": "db"})


def test_configure_root_honours_level_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INSTALLER_LOG_LEVEL", "warning")
    root = logging.getLogger()
    previous = root.level
    try:
        assert configure_root() == logging.WARNING
        assert root.level == logging.WARNING
    finally:
        root.setLevel(previous)


def test_configure_root_debug_flag_and_invalid_level(monkeypatch: pytest.MonkeyPatch) -> None:
    root = logging.getLogger()
    previous = root.level
    try:
        monkeypatch.delenv("INSTALLER_LOG_LEVEL", raising=False)
        monkeypatch.setenv("INSTALLER_DEBUG", "on")
        assert configure_root() == logging.DEBUG

        monkeypatch.setenv("INSTALLER_LOG_LEVEL", "chatty")
        monkeypatch.delenv("INSTALLER_DEBUG")
        assert configure_root("warning") == logging.WARNING
    finally:
        root.setLevel(previous)


@pytest.mark.parametrize("value, expected", [("1", True), (" Yes ", True), ("off", False), ("", False), (None, False)])
def test_env_truthy(value, expected: bool) -> None:
    assert env_truthy(value) is expected
