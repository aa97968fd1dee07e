"""Database tables and connection helpers shared by the engine components."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List

import sqlalchemy as sa
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError

from installer_api.errors import DatabaseConnectionError

log = logging.getLogger("installer_api.database")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


metadata = sa.MetaData()

updates = sa.Table(
    "updates",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("version", sa.String(50), nullable=False),
    sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
)

migrations = sa.Table(
    "migrations",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("migration", sa.String(255), nullable=False, unique=True),
    sa.Column("batch", sa.Integer, nullable=False),
    sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
)

users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("first_name", sa.String(255), nullable=False),
    sa.Column("last_name", sa.String(255), nullable=False),
    sa.Column("email", sa.String(255), nullable=False, unique=True),
    sa.Column("password", sa.String(255), nullable=False),
    sa.Column("status", sa.Integer, nullable=False, server_default="1"),
    sa.Column("role", sa.String(32), nullable=False, server_default="member"),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
)

workspaces = sa.Table(
    "workspaces",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
)

workspace_user = sa.Table(
    "workspace_user",
    metadata,
    sa.Column("workspace_id", sa.Integer, sa.ForeignKey("workspaces.id"), primary_key=True),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), primary_key=True),
)

# Tables the update engine itself owns; business tables come from the seed dump.
ENGINE_TABLES = (updates, migrations)


_ENGINES: Dict[str, Engine] = {}
_ENGINES_LOCK = threading.Lock()


def engine_for(url: URL | str) -> Engine:
    """Return a shared engine for one database URL."""
    key = url.render_as_string(hide_password=False) if isinstance(url, URL) else str(url)
    with _ENGINES_LOCK:
        engine = _ENGINES.get(key)
        if engine is None:
            engine = sa.create_engine(url, pool_pre_ping=True)
            _ENGINES[key] = engine
        return engine


def dispose_engines() -> None:
    """Dispose and forget every cached engine."""
    with _ENGINES_LOCK:
        engines = list(_ENGINES.values())
        _ENGINES.clear()
    for engine in engines:
        engine.dispose()


def check_connection(url: URL | str) -> None:
    """Open, authenticate and immediately close one connection."""
    engine = None
    try:
        engine = sa.create_engine(url)
        with engine.connect() as connection:
            connection.execute(sa.text("SELECT 1"))
    except SQLAlchemyError as exc:
        reason = str(getattr(exc, "orig", None) or exc)
        raise DatabaseConnectionError(reason=reason) from exc
    except ImportError as exc:
        raise DatabaseConnectionError(reason=f"database driver is not installed ({exc})") from exc
    finally:
        if engine is not None:
            engine.dispose()


def ensure_engine_tables(engine: Engine) -> None:
    """Create the ledger and migration bookkeeping tables when missing."""
    metadata.create_all(engine, tables=list(ENGINE_TABLES), checkfirst=True)


def ensure_application_tables(engine: Engine) -> None:
    """Create every known table that the seed dump did not provide."""
    metadata.create_all(engine, checkfirst=True)


def split_sql_statements(script: str) -> List[str]:
    """Split a SQL script on ``;`` into non-empty statements."""
    statements: List[str] = []
    for fragment in script.split(";"):
        statement = fragment.strip()
        if not statement:
            continue
        lines = [line.strip() for line in statement.splitlines() if line.strip()]
        if all(line.startswith("--") for line in lines):
            continue
        statements.append(statement)
    return statements


__all__ = [
    "ENGINE_TABLES",
    "check_connection",
    "dispose_engines",
    "engine_for",
    "ensure_application_tables",
    "ensure_engine_tables",
    "metadata",
    "migrations",
    "split_sql_statements",
    "updates",
    "users",
    "utcnow",
    "workspace_user",
    "workspaces",
]
