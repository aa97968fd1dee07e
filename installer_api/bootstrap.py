"""First-run installer: database connectivity, seed schema, admin account.

The flow is a small state machine::

    AWAITING_DB_CONFIG -> DB_CONFIGURED -> SCHEMA_LOADED -> ADMIN_PROVISIONED -> COMPLETE

The seed script is executed all-or-nothing inside a single transaction, unlike
the per-statement manual SQL of incremental updates. Any failure returns the
flow to ``AWAITING_DB_CONFIG``; the installer UI stays on disk until the flow
completes, so installation can be retried.
"""

from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import bcrypt
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from installer_api.database import (
    check_connection,
    engine_for,
    ensure_application_tables,
    ensure_engine_tables,
    split_sql_statements,
    users,
    workspace_user,
    workspaces,
)
from installer_api.errors import BootstrapError, DatabaseConnectionError, InstallerError
from installer_api.filesystem import clear_cache_dirs
from installer_api.settings import DatabaseConfig, Settings, save_database_config

DEFAULT_WORKSPACE_TITLE = "Default Workspace"
ADMIN_ROLE = "admin"
MIN_PASSWORD_LENGTH = 6


class BootstrapState(str, Enum):
    AWAITING_DB_CONFIG = "awaiting_db_config"
    DB_CONFIGURED = "db_configured"
    SCHEMA_LOADED = "schema_loaded"
    ADMIN_PROVISIONED = "admin_provisioned"
    COMPLETE = "complete"


@dataclass(frozen=True)
class AdminAccount:
    """The first administrative user created by the installer."""

    first_name: str
    last_name: str
    email: str
    password: str

    def __post_init__(self) -> None:
        if not self.email or "@" not in self.email:
            raise ValueError("admin email must be a valid address")
        if len(self.password or "") < MIN_PASSWORD_LENGTH:
            raise ValueError(f"admin password must be at least {MIN_PASSWORD_LENGTH} characters")

    def password_hash(self) -> str:
        return bcrypt.hashpw(self.password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


class BootstrapFlow:
    """Drive one installation from database configuration to completion."""

    def __init__(self, settings: Settings, *, logger: Optional[logging.Logger] = None) -> None:
        self.settings = settings
        self.log = logger or logging.getLogger("installer_api.bootstrap")
        self._lock = threading.RLock()
        if self.is_installed():
            self._state = BootstrapState.COMPLETE
        elif settings.database_url() is not None:
            self._state = BootstrapState.DB_CONFIGURED
        else:
            self._state = BootstrapState.AWAITING_DB_CONFIG

    @property
    def state(self) -> BootstrapState:
        return self._state

    def is_installed(self) -> bool:
        """Installation is complete once the installer UI has been removed."""
        return not self.settings.installer_ui_path.exists()

    def status(self) -> Dict[str, Any]:
        return {"state": self._state.value, "installed": self._state is BootstrapState.COMPLETE}

    def configure_database(self, config: DatabaseConfig) -> Path:
        """Test the connection parameters and persist them on success."""
        with self._lock:
            self._require(BootstrapState.AWAITING_DB_CONFIG, BootstrapState.DB_CONFIGURED)
            try:
                check_connection(config.url())
            except DatabaseConnectionError as exc:
                self._state = BootstrapState.AWAITING_DB_CONFIG
                self.log.warning("Database connection test failed: %s", exc.reason)
                raise
            path = save_database_config(self.settings.config_dir, config)
            self._state = BootstrapState.DB_CONFIGURED
            self.log.info("Database connection verified and saved to %s", path)
            return path

    def load_schema(self) -> int:
        """Execute the seed script in one transaction; returns the statement count."""
        with self._lock:
            self._require(BootstrapState.DB_CONFIGURED)
            try:
                engine = self._engine()
                seed_path = self.settings.seed_script_path
                try:
                    script = seed_path.read_text(encoding="utf-8")
                except OSError as exc:
                    raise BootstrapError(
                        code="install.seed_missing",
                        message="The installation SQL script could not be read.",
                        hint=f"{seed_path}: {exc}",
                    ) from exc
                statements = split_sql_statements(script)
                try:
                    with engine.begin() as connection:
                        for statement in statements:
                            connection.exec_driver_sql(statement)
                    ensure_application_tables(engine)
                    ensure_engine_tables(engine)
                except SQLAlchemyError as exc:
                    raise BootstrapError(
                        code="install.schema_failed",
                        message="Loading the initial database schema failed.",
                        hint=str(getattr(exc, "orig", None) or exc),
                    ) from exc
            except InstallerError:
                self._reset()
                raise
            self._state = BootstrapState.SCHEMA_LOADED
            self.log.info("Loaded %d seed statements from %s", len(statements), seed_path)
            return len(statements)

    def provision_admin(self, account: AdminAccount) -> int:
        """Create the admin user and the default workspace; returns the user id."""
        with self._lock:
            self._require(BootstrapState.SCHEMA_LOADED)
            try:
                engine = self._engine()
                with engine.begin() as connection:
                    user_id = connection.execute(
                        users.insert().values(
                            first_name=account.first_name,
                            last_name=account.last_name,
                            email=account.email,
                            password=account.password_hash(),
                            status=1,
                            role=ADMIN_ROLE,
                        )
                    ).inserted_primary_key[0]
                    workspace_id = connection.execute(
                        workspaces.insert().values(user_id=user_id, title=DEFAULT_WORKSPACE_TITLE)
                    ).inserted_primary_key[0]
                    connection.execute(workspace_user.insert().values(workspace_id=workspace_id, user_id=user_id))
            except IntegrityError as exc:
                self._reset()
                raise BootstrapError(
                    code="install.admin_exists",
                    message="An account with this email already exists.",
                    hint=str(getattr(exc, "orig", None) or exc),
                    status_code=409,
                ) from exc
            except SQLAlchemyError as exc:
                self._reset()
                raise BootstrapError(
                    code="install.admin_failed",
                    message="Creating the administrator account failed.",
                    hint=str(getattr(exc, "orig", None) or exc),
                ) from exc
            except InstallerError:
                self._reset()
                raise
            self._state = BootstrapState.ADMIN_PROVISIONED
            self.log.info("Provisioned administrator %s (id=%s)", account.email, user_id)
            return int(user_id)

    def finalize(self) -> None:
        """Delete installer-only artifacts and clear caches."""
        with self._lock:
            self._require(BootstrapState.ADMIN_PROVISIONED)
            try:
                self.settings.seed_script_path.unlink(missing_ok=True)
                ui_path = self.settings.installer_ui_path
                if ui_path.is_dir() and not ui_path.is_symlink():
                    shutil.rmtree(ui_path)
                elif ui_path.exists() or ui_path.is_symlink():
                    ui_path.unlink()
            except OSError as exc:
                self._reset()
                raise BootstrapError(
                    code="install.finalize_failed",
                    message="Removing installer files failed.",
                    hint=str(exc),
                ) from exc
            clear_cache_dirs(self.settings.cache_dirs, logger=self.log)
            self._state = BootstrapState.COMPLETE
            self.log.info("Installation complete")

    def install(self, account: AdminAccount) -> Dict[str, Any]:
        """Run schema load, admin provisioning and finalization in order."""
        with self._lock:
            statements = self.load_schema()
            user_id = self.provision_admin(account)
            self.finalize()
        return {"state": self._state.value, "statements": statements, "user_id": user_id}

    def _engine(self) -> Engine:
        url = self.settings.database_url()
        if url is None:
            raise BootstrapError(
                code="install.not_configured",
                message="Database connection has not been configured.",
                status_code=409,
            )
        return engine_for(url)

    def _require(self, *allowed: BootstrapState) -> None:
        if self._state is BootstrapState.COMPLETE or self.is_installed():
            raise BootstrapError(
                code="install.already_installed",
                message="The application is already installed.",
                status_code=409,
            )
        if self._state not in allowed:
            expected = ", ".join(state.value for state in allowed)
            raise BootstrapError(
                code="install.invalid_state",
                message=f"Installer is in state '{self._state.value}'.",
                hint=f"Expected one of: {expected}.",
                status_code=409,
            )

    def _reset(self) -> None:
        self.log.warning("Installation step failed in state %s; awaiting database configuration", self._state.value)
        self._state = BootstrapState.AWAITING_DB_CONFIG


__all__ = [
    "AdminAccount",
    "BootstrapFlow",
    "BootstrapState",
]
