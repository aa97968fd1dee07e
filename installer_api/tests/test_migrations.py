"""Tests for migration discovery, the migration runner and manual SQL."""

from __future__ import annotations

from pathlib import Path

import pytest
import sqlalchemy as sa

from installer_api.database import migrations, split_sql_statements
from installer_api.errors import MigrationFailure
from installer_api.manifest import MIGRATIONS_DIR
from installer_api.migrations import SchemaMigrator


def _migration_dir(root: Path) -> Path:
    directory = root / MIGRATIONS_DIR
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _tables(engine) -> set:
    return set(sa.inspect(engine).get_table_names())


def test_split_sql_statements_drops_blank_and_comment_fragments() -> None:
    script = "CREATE TABLE a (id INTEGER);\n\n-- comment only\n;INSERT INTO a VALUES (1);  ;"

    assert split_sql_statements(script) == ["CREATE TABLE a (id INTEGER)", "INSERT INTO a VALUES (1)"]


def test_find_migrations_orders_by_filename(tmp_path: Path, engine) -> None:
    directory = _migration_dir(tmp_path)
    (directory / "2024_02_01_000000_second.sql").write_text("SELECT 1;")
    (directory / "2024_01_01_000000_first.py").write_text("def upgrade(connection):\n    pass\n")
    (directory / "__init__.py").write_text("")
    (directory / "notes.md").write_text("ignored")

    scripts = list(SchemaMigrator(engine).find_migrations(tmp_path))

    assert [script.name for script in scripts] == ["2024_01_01_000000_first", "2024_02_01_000000_second"]
    assert [script.kind for script in scripts] == ["python", "sql"]


def test_find_migrations_without_directory_yields_nothing(tmp_path: Path, engine) -> None:
    assert list(SchemaMigrator(engine).find_migrations(tmp_path)) == []


def test_apply_runs_sql_and_python_migrations_once(tmp_path: Path, engine) -> None:
    directory = _migration_dir(tmp_path)
    (directory / "001_create_projects.sql").write_text(
        "CREATE TABLE projects (id INTEGER PRIMARY KEY, name VARCHAR(50));"
    )
    (directory / "002_seed_projects.py").write_text(
        "def upgrade(connection):\n"
        "    connection.exec_driver_sql(\"INSERT INTO projects (id, name) VALUES (1, 'Website')\")\n"
    )
    migrator = SchemaMigrator(engine)

    first = migrator.apply(migrator.find_migrations(tmp_path))
    second = migrator.apply(migrator.find_migrations(tmp_path))

    assert [item.status for item in first] == ["applied", "applied"]
    assert [item.status for item in second] == ["skipped", "skipped"]
    with engine.connect() as connection:
        assert connection.execute(sa.text("SELECT name FROM projects")).scalars().all() == ["Website"]
        rows = connection.execute(sa.select(migrations.c.migration, migrations.c.batch)).all()
    assert sorted(tuple(row) for row in rows) == [("001_create_projects", 1), ("002_seed_projects", 1)]


def test_apply_uses_new_batch_for_each_run(tmp_path: Path, engine) -> None:
    directory = _migration_dir(tmp_path)
    (directory / "001_a.sql").write_text("CREATE TABLE a (id INTEGER);")
    migrator = SchemaMigrator(engine)
    migrator.apply(migrator.find_migrations(tmp_path))
    (directory / "002_b.sql").write_text("CREATE TABLE b (id INTEGER);")
    migrator.apply(migrator.find_migrations(tmp_path))

    with engine.connect() as connection:
        batches = dict(connection.execute(sa.select(migrations.c.migration, migrations.c.batch)).all())
    assert batches == {"001_a": 1, "002_b": 2}


def test_apply_stops_at_first_failure(tmp_path: Path, engine) -> None:
    directory = _migration_dir(tmp_path)
    (directory / "001_ok.sql").write_text("CREATE TABLE ok_table (id INTEGER);")
    (directory / "002_broken.sql").write_text("CREATE TABLE broken (;")
    (directory / "003_never.sql").write_text("CREATE TABLE never_table (id INTEGER);")
    migrator = SchemaMigrator(engine)

    with pytest.raises(MigrationFailure) as exc_info:
        migrator.apply(migrator.find_migrations(tmp_path))

    assert exc_info.value.migration == "002_broken"
    assert [item.key for item in exc_info.value.completed] == ["001_ok"]
    assert "ok_table" in _tables(engine)
    assert "never_table" not in _tables(engine)
    assert migrator.runner.applied_names() == {"001_ok"}


def test_python_migration_without_upgrade_fails(tmp_path: Path, engine) -> None:
    directory = _migration_dir(tmp_path)
    (directory / "001_empty.py").write_text("VALUE = 1\n")
    migrator = SchemaMigrator(engine)

    with pytest.raises(MigrationFailure) as exc_info:
        migrator.apply(migrator.find_migrations(tmp_path))

    assert "upgrade" in exc_info.value.hint


def test_run_manual_sql_continues_past_failing_statement(tmp_path: Path, engine) -> None:
    with engine.begin() as connection:
        connection.exec_driver_sql("CREATE TABLE settings (id INTEGER PRIMARY KEY, value VARCHAR(20))")
    script = tmp_path / "fix.sql"
    script.write_text(
        "INSERT INTO settings (id, value) VALUES (1, 'first');\n"
        "INSERT INTO no_such_table VALUES (2);\n"
        "INSERT INTO settings (id, value) VALUES (3, 'third');\n"
    )

    outcomes = SchemaMigrator(engine).run_manual_sql(script)

    assert [item.status for item in outcomes] == ["applied", "failed", "applied"]
    assert "no_such_table" in outcomes[1].message
    with engine.connect() as connection:
        ids = connection.execute(sa.text("SELECT id FROM settings ORDER BY id")).scalars().all()
    assert ids == [1, 3]


def test_run_manual_sql_missing_script_is_reported(tmp_path: Path, engine) -> None:
    outcomes = SchemaMigrator(engine).run_manual_sql(tmp_path / "absent.sql")

    assert len(outcomes) == 1
    assert outcomes[0].status == "failed"
