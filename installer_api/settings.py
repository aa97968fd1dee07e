"""Environment-driven configuration for the installer API.

All paths are resolved once in :meth:`Settings.from_env`. Database connection
parameters chosen during first-run installation are persisted next to the
other configuration in ``database.json`` and picked up by the running
application through :meth:`Settings.database_url`.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

from sqlalchemy.engine import URL

from installer_api.logging_config import env_truthy

MAX_UPLOAD_BYTES_DEFAULT = 500 * 1024 * 1024
DATABASE_CONFIG_NAME = "database.json"
DEFAULT_DRIVER = "mysql+pymysql"

log = logging.getLogger("installer_api.settings")


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection parameters collected by the first-run installer."""

    database: str
    driver: str = DEFAULT_DRIVER
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None

    def url(self) -> URL:
        """Return the SQLAlchemy URL for these parameters."""
        return URL.create(
            drivername=self.driver,
            username=self.username or None,
            password=self.password or None,
            host=self.host or None,
            port=self.port,
            database=self.database,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "DatabaseConfig":
        database = str(payload.get("database") or "").strip()
        if not database:
            raise ValueError("database config requires a non-empty 'database'")
        port_raw = payload.get("port")
        return cls(
            database=database,
            driver=str(payload.get("driver") or DEFAULT_DRIVER).strip(),
            host=str(payload["host"]).strip() if payload.get("host") else None,
            port=int(port_raw) if port_raw not in (None, "") else None,
            username=str(payload["username"]) if payload.get("username") else None,
            password=str(payload["password"]) if payload.get("password") else None,
        )


def load_database_config(config_dir: Path) -> Optional[DatabaseConfig]:
    """Read persisted connection parameters, if any."""
    path = Path(config_dir) / DATABASE_CONFIG_NAME
    if not path.is_file():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        return DatabaseConfig.from_mapping(payload)
    except (OSError, ValueError) as exc:
        log.warning("Ignoring unreadable database config %s: %s", path, exc)
        return None


def save_database_config(config_dir: Path, config: DatabaseConfig) -> Path:
    """Persist connection parameters with owner-only permissions."""
    directory = Path(config_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / DATABASE_CONFIG_NAME
    tmp_path = path.with_suffix(".json.tmp")
    tmp_path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
    os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, path)
    return path


def _path_from_env(name: str, default: Path) -> Path:
    raw = os.getenv(name, "").strip()
    return Path(raw).expanduser() if raw else default


@dataclass(frozen=True)
class Settings:
    """Resolved filesystem and database settings."""

    base_path: Path
    updates_root: Path
    config_dir: Path
    seed_script_path: Path
    installer_ui_path: Path
    cache_dirs: Tuple[Path, ...] = field(default_factory=tuple)
    database_url_override: Optional[str] = None
    code_version_override: Optional[str] = None
    base_version: Optional[str] = None
    max_upload_bytes: int = MAX_UPLOAD_BYTES_DEFAULT
    api_key: str = ""
    strict_satellites: bool = False

    @property
    def staging_root(self) -> Path:
        return self.updates_root / "staging"

    @property
    def audit_root(self) -> Path:
        return self.updates_root / "audit"

    @property
    def lock_path(self) -> Path:
        return self.updates_root / "update.lock"

    def database_url(self) -> Optional[URL | str]:
        """Return the configured database URL or ``None`` before installation."""
        if self.database_url_override:
            return self.database_url_override
        config = load_database_config(self.config_dir)
        return config.url() if config else None

    def code_version(self) -> Optional[str]:
        """Return the version of the codebase physically present on disk."""
        if self.code_version_override:
            return self.code_version_override
        version_file = self.base_path / "VERSION"
        if version_file.is_file():
            text = version_file.read_text(encoding="utf-8").strip()
            return text or None
        return None

    @classmethod
    def from_env(cls) -> "Settings":
        base_path = _path_from_env("INSTALLER_BASE_PATH", Path.cwd()).resolve()
        cache_raw = os.getenv("INSTALLER_CACHE_DIRS", "").strip()
        if cache_raw:
            cache_dirs = tuple(Path(item).expanduser() for item in cache_raw.split(os.pathsep) if item.strip())
        else:
            cache_dirs = (base_path / "storage" / "cache",)
        return cls(
            base_path=base_path,
            updates_root=_path_from_env("INSTALLER_UPDATES_ROOT", base_path / "storage" / "updates"),
            config_dir=_path_from_env("INSTALLER_CONFIG_DIR", base_path / "config"),
            seed_script_path=_path_from_env("INSTALLER_SEED_SCRIPT", base_path / "database" / "install.sql"),
            installer_ui_path=_path_from_env("INSTALLER_UI_PATH", base_path / "resources" / "install"),
            cache_dirs=cache_dirs,
            database_url_override=os.getenv("INSTALLER_DATABASE_URL", "").strip() or None,
            code_version_override=os.getenv("INSTALLER_CODE_VERSION", "").strip() or None,
            base_version=os.getenv("INSTALLER_BASE_VERSION", "").strip() or None,
            max_upload_bytes=int(os.getenv("INSTALLER_MAX_UPLOAD_BYTES", "") or MAX_UPLOAD_BYTES_DEFAULT),
            api_key=os.getenv("INSTALLER_API_KEY", ""),
            strict_satellites=env_truthy(os.getenv("INSTALLER_STRICT_SATELLITES")),
        )


__all__ = [
    "DatabaseConfig",
    "Settings",
    "load_database_config",
    "save_database_config",
]
