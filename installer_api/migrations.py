"""Discover and execute schema migrations shipped inside update packages.

Migrations live in ``update-files/database/migrations`` relative to the
manifest directory. Two forms are accepted:

* ``*.sql`` scripts, split on ``;`` and executed statement by statement;
* ``*.py`` modules exposing ``upgrade(connection)``.

A migration is identified by its file stem. Applied names are tracked in the
``migrations`` table together with the batch number of the run that applied
them, so re-running the same package never re-applies a script.
"""

from __future__ import annotations

import importlib.util
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Set

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from installer_api.database import ensure_engine_tables, migrations, split_sql_statements
from installer_api.errors import MigrationFailure
from installer_api.manifest import MIGRATIONS_DIR
from installer_api.outcomes import DirectiveOutcome

MIGRATION_SUFFIXES: tuple[str, ...] = (".sql", ".py")


@dataclass(frozen=True)
class MigrationScript:
    """One migration file found in a package."""

    name: str
    path: Path

    @property
    def kind(self) -> str:
        return "python" if self.path.suffix == ".py" else "sql"


class MigrationRunner:
    """Apply migration scripts once each and remember what ran."""

    def __init__(self, engine: Engine, logger: Optional[logging.Logger] = None) -> None:
        self.engine = engine
        self.log = logger or logging.getLogger("installer_api.migrations")

    def applied_names(self) -> Set[str]:
        with self.engine.connect() as connection:
            return set(connection.execute(sa.select(migrations.c.migration)).scalars())

    def next_batch(self) -> int:
        with self.engine.connect() as connection:
            latest = connection.execute(sa.select(sa.func.max(migrations.c.batch))).scalar()
        return int(latest or 0) + 1

    def run(self, scripts: Iterable[MigrationScript]) -> List[DirectiveOutcome]:
        """Apply every pending script in order; stop at the first failure."""
        ensure_engine_tables(self.engine)
        applied = self.applied_names()
        batch = self.next_batch()
        outcomes: List[DirectiveOutcome] = []
        for script in scripts:
            if script.name in applied:
                outcomes.append(DirectiveOutcome.skipped("migration", script.name, str(script.path), "already applied"))
                continue
            try:
                with self.engine.begin() as connection:
                    self._execute(script, connection)
                    connection.execute(migrations.insert().values(migration=script.name, batch=batch))
            except MigrationFailure as exc:
                exc.completed = list(outcomes)
                raise
            except Exception as exc:  # migration modules are arbitrary code
                self.log.error("Migration %s failed: %s", script.name, exc)
                raise MigrationFailure(migration=script.name, hint=str(exc), completed=outcomes) from exc
            applied.add(script.name)
            self.log.info("Applied migration %s (batch %d)", script.name, batch)
            outcomes.append(DirectiveOutcome.applied("migration", script.name, str(script.path), f"batch {batch}"))
        return outcomes

    def _execute(self, script: MigrationScript, connection: Connection) -> None:
        if script.kind == "sql":
            for statement in split_sql_statements(script.path.read_text(encoding="utf-8")):
                connection.exec_driver_sql(statement)
            return
        module_spec = importlib.util.spec_from_file_location(f"installer_migration_{script.name}", script.path)
        if module_spec is None or module_spec.loader is None:
            raise MigrationFailure(migration=script.name, hint="module could not be loaded")
        module = importlib.util.module_from_spec(module_spec)
        module_spec.loader.exec_module(module)
        upgrade = getattr(module, "upgrade", None)
        if not callable(upgrade):
            raise MigrationFailure(migration=script.name, hint="module does not define upgrade(connection)")
        upgrade(connection)


class SchemaMigrator:
    """Run package migrations and optional manual SQL scripts."""

    def __init__(
        self,
        engine: Engine,
        *,
        runner: Optional[MigrationRunner] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.engine = engine
        self.log = logger or logging.getLogger("installer_api.migrations")
        self.runner = runner or MigrationRunner(engine, logger=self.log)

    def find_migrations(self, package_dir: Path) -> Iterator[MigrationScript]:
        """Yield migration scripts below ``package_dir`` sorted by filename."""
        directory = Path(package_dir) / MIGRATIONS_DIR
        if not directory.is_dir():
            return
        for path in sorted(directory.iterdir(), key=lambda item: item.name):
            if not path.is_file() or path.suffix not in MIGRATION_SUFFIXES:
                continue
            if path.name.startswith(("_", ".")):
                continue
            yield MigrationScript(name=path.stem, path=path)

    def apply(self, scripts: Iterable[MigrationScript]) -> List[DirectiveOutcome]:
        """Apply pending scripts; raises :class:`MigrationFailure` on the first error."""
        return self.runner.run(scripts)

    def run_manual_sql(self, script_path: Path) -> List[DirectiveOutcome]:
        """Execute a SQL script statement by statement, continuing past failures."""
        script_path = Path(script_path)
        try:
            script = script_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            self.log.warning("Manual SQL script %s unreadable: %s", script_path, exc)
            return [DirectiveOutcome.failed("sql", script_path.name, str(script_path), str(exc))]

        outcomes: List[DirectiveOutcome] = []
        for index, statement in enumerate(split_sql_statements(script), start=1):
            key = f"{script_path.name}#{index}"
            try:
                with self.engine.begin() as connection:
                    connection.exec_driver_sql(statement)
            except SQLAlchemyError as exc:
                reason = str(getattr(exc, "orig", None) or exc)
                self.log.warning("Manual SQL statement %s failed: %s", key, reason)
                outcomes.append(DirectiveOutcome.failed("sql", key, str(script_path), reason))
                continue
            outcomes.append(DirectiveOutcome.applied("sql", key, str(script_path)))
        self.log.info("Ran %d manual SQL statements from %s", len(outcomes), script_path.name)
        return outcomes


__all__ = [
    "MigrationRunner",
    "MigrationScript",
    "SchemaMigrator",
]
