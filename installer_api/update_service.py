"""Apply uploaded update packages to the live installation.

One call to :meth:`UpdateService.apply_upload` runs the whole pipeline
synchronously: lock, stage, extract, read the manifest, check compatibility,
apply folders/files/archives, run migrations and manual SQL, record the
version and clear caches. Per-directive failures are collected in an
:class:`ApplyReport` and do not stop the pipeline. Fatal errors abort before
any mutation of the live tree. The staging directory is removed on every exit
path and the method never raises.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, List, Mapping, Optional

from sqlalchemy.engine import Engine

from installer_api.archive import ArchiveExtractor
from installer_api.compatibility import SystemUpdateInfo
from installer_api.database import engine_for, ensure_engine_tables
from installer_api.errors import ExtractionFailed, InstallerError, InvalidPackageFormat, MigrationFailure
from installer_api.filesystem import FilesystemApplier, clear_cache_dirs
from installer_api.ledger import VersionLedger
from installer_api.manifest import Manifest, ManifestReader, contained_path
from installer_api.migrations import SchemaMigrator
from installer_api.outcomes import (
    STEP_APPLY_ARCHIVES,
    STEP_APPLY_FILES,
    STEP_APPLY_FOLDERS,
    STEP_CHECK_COMPATIBILITY,
    STEP_RECORD_VERSION,
    STEP_RUN_MANUAL_SQL,
    STEP_RUN_MIGRATIONS,
    STEP_VALIDATE_PACKAGE,
    ApplyReport,
    DirectiveOutcome,
)
from installer_api.settings import Settings
from installer_api.staging import StagingHandle, StagingStore, UpdateLock, normalize_upload_name


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class UpdateResult:
    """Uniform ``{error, message}`` outcome of one apply attempt."""

    error: bool
    message: str
    code: str = ""
    hint: str = ""
    attempt_id: str = ""
    version: Optional[str] = None
    report: Optional[ApplyReport] = None
    status_code: int = 200

    @property
    def partial(self) -> bool:
        return bool(self.report and self.report.partial)

    @classmethod
    def failure(cls, exc: InstallerError, **fields: Any) -> "UpdateResult":
        return cls(
            error=True,
            message=exc.message,
            code=exc.code,
            hint=exc.hint,
            status_code=exc.status_code,
            **fields,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error, "message": self.message}
        if self.code:
            payload["code"] = self.code
        if self.hint:
            payload["hint"] = self.hint
        if self.attempt_id:
            payload["attempt_id"] = self.attempt_id
        if self.version:
            payload["version"] = self.version
        payload["partial"] = self.partial
        if self.report is not None:
            payload["report"] = self.report.to_dict()
        return payload


class UpdateService:
    """Run the upload-to-ledger pipeline for update packages."""

    def __init__(
        self,
        settings: Settings,
        *,
        engine: Optional[Engine] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings
        self.log = logger or logging.getLogger("installer_api.updates")
        self._engine = engine
        self.staging = StagingStore(
            settings.staging_root,
            max_upload_bytes=settings.max_upload_bytes,
            logger=self.log.getChild("staging"),
        )
        self.extractor = ArchiveExtractor(logger=self.log.getChild("archive"))
        self.reader = ManifestReader(
            strict_satellites=settings.strict_satellites,
            logger=self.log.getChild("manifest"),
        )
        self.applier = FilesystemApplier(settings.base_path, logger=self.log.getChild("filesystem"))

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------
    def engine(self) -> Engine:
        """Return the database engine, failing when the installer has not run yet."""
        if self._engine is not None:
            return self._engine
        url = self.settings.database_url()
        if url is None:
            raise InstallerError(
                code="updates.not_installed",
                message="The application is not installed yet.",
                hint="Complete the installer before uploading updates.",
                status_code=409,
            )
        return engine_for(url)

    def ledger(self) -> VersionLedger:
        engine = self.engine()
        ensure_engine_tables(engine)
        return VersionLedger(engine, logger=self.log.getChild("ledger"))

    def update_info(self, ledger: Optional[VersionLedger] = None) -> SystemUpdateInfo:
        return SystemUpdateInfo(
            ledger or self.ledger(),
            code_version=self.settings.code_version,
            base_version=self.settings.base_version,
            logger=self.log.getChild("compatibility"),
        )

    def version_info(self) -> Dict[str, Optional[str]]:
        """Return the current ledger version and the on-disk code version."""
        ledger = self.ledger()
        return {
            "current_version": self.update_info(ledger).current_version(),
            "code_version": self.settings.code_version(),
        }

    def history(self, limit: int = 50) -> List[Dict[str, str]]:
        return [entry.to_dict() for entry in self.ledger().history(limit)]

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def apply_upload(self, filename: str, stream: BinaryIO) -> UpdateResult:
        """Apply one uploaded package and convert every failure into a result."""
        report = ApplyReport()
        attempt_id = ""
        try:
            normalize_upload_name(filename)
            engine = self.engine()
            with UpdateLock(self.settings.lock_path):
                with self.staging.staged(filename, stream) as handle:
                    attempt_id = handle.attempt_id
                    return self._apply_staged(handle, engine, report)
        except InstallerError as exc:
            self.log.warning("Update attempt %s failed: %s (%s)", attempt_id or "-", exc.message, exc.code)
            self._fail_running_step(report, exc.message)
            if attempt_id:
                self._append_audit(attempt_id, event="failed", message=exc.message, extra={"code": exc.code, "hint": exc.hint})
            return UpdateResult.failure(exc, attempt_id=attempt_id, report=report)
        except Exception as exc:
            self.log.exception("Unexpected update failure attempt_id=%s", attempt_id or "-")
            wrapped = InstallerError(
                code="updates.unexpected_error",
                message="The update failed unexpectedly.",
                hint=str(exc),
                status_code=500,
            )
            self._fail_running_step(report, wrapped.message)
            if attempt_id:
                self._append_audit(attempt_id, event="failed", message=wrapped.message, extra={"code": wrapped.code})
            return UpdateResult.failure(wrapped, attempt_id=attempt_id, report=report)

    def _apply_staged(self, handle: StagingHandle, engine: Engine, report: ApplyReport) -> UpdateResult:
        attempt_id = handle.attempt_id
        self._append_audit(
            attempt_id,
            event="staged",
            message="Package upload received.",
            extra={"filename": handle.original_filename, "bytes_written": handle.bytes_written},
        )

        report.set_step(STEP_VALIDATE_PACKAGE, "running")
        try:
            self.extractor.extract(handle.package_path, handle.extract_dir)
        except ExtractionFailed as exc:
            raise InvalidPackageFormat(
                code="updates.invalid_zip",
                message="Extraction failed.",
                hint=exc.hint or "Upload a readable ZIP archive.",
            ) from exc
        manifest = self.reader.parse(self.reader.locate(handle.extract_dir), package_root=handle.extract_dir)
        satellites = {key: self.reader.resolve_satellite(manifest, key) for key in ("folders", "files", "archives")}
        report.set_step(STEP_VALIDATE_PACKAGE, "done", f"version {manifest.version}")
        self._append_audit(attempt_id, event="validated", message="Package manifest read.", extra=manifest.to_dict())

        report.set_step(STEP_CHECK_COMPATIBILITY, "running")
        ledger = VersionLedger(engine, logger=self.log.getChild("ledger"))
        ensure_engine_tables(engine)
        compatibility = self.update_info(ledger).check(manifest.version)
        compatibility.raise_for_status()
        report.set_step(STEP_CHECK_COMPATIBILITY, "done", compatibility.message)

        if manifest.is_noop:
            self.log.info("Package %s carries no directives", manifest.version)

        source_root = manifest.root
        package_root = handle.extract_dir
        self._run_directives(
            report,
            STEP_APPLY_FOLDERS,
            satellites["folders"],
            lambda mapping: self.applier.apply_folders(mapping),
        )
        self._run_directives(
            report,
            STEP_APPLY_FILES,
            satellites["files"],
            lambda mapping: self.applier.apply_files(mapping, source_root=source_root, package_root=package_root),
        )
        self._run_directives(
            report,
            STEP_APPLY_ARCHIVES,
            satellites["archives"],
            lambda mapping: self.applier.apply_archives(
                mapping, self.extractor, source_root=source_root, package_root=package_root
            ),
        )

        migrator = SchemaMigrator(engine, logger=self.log.getChild("migrations"))
        self._run_migrations(report, migrator, manifest)
        self._run_manual_sql(report, migrator, manifest, handle)
        self._append_audit(attempt_id, event="applied", message="Directives applied.", extra=report.counts())

        report.set_step(STEP_RECORD_VERSION, "running")
        ledger.record(manifest.version)
        report.set_step(STEP_RECORD_VERSION, "done", manifest.version)
        clear_cache_dirs(self.settings.cache_dirs, logger=self.log)

        failures = len(report.failures)
        message = f"Congratulations! Version {manifest.version} is successfully installed."
        if failures:
            message += f" {failures} directive(s) failed; see the report for details."
        self._append_audit(
            attempt_id,
            event="completed",
            message=message,
            extra={"version": manifest.version, "partial": report.partial},
        )
        self.log.info("Applied update %s attempt=%s partial=%s", manifest.version, attempt_id, report.partial)
        return UpdateResult(
            error=False,
            message=message,
            attempt_id=attempt_id,
            version=manifest.version,
            report=report,
        )

    def _run_directives(
        self,
        report: ApplyReport,
        step: str,
        mapping: Mapping[str, str],
        apply: Callable[[Mapping[str, str]], List[DirectiveOutcome]],
    ) -> None:
        if not mapping:
            report.set_step(step, "skipped", "no directives")
            return
        report.set_step(step, "running")
        outcomes = apply(mapping)
        report.extend(outcomes)
        self._finish_step(report, step, outcomes)

    def _run_migrations(self, report: ApplyReport, migrator: SchemaMigrator, manifest: Manifest) -> None:
        scripts = list(migrator.find_migrations(manifest.root))
        if not scripts:
            report.set_step(STEP_RUN_MIGRATIONS, "skipped", "no migrations")
            return
        report.set_step(STEP_RUN_MIGRATIONS, "running")
        try:
            outcomes = migrator.apply(scripts)
        except MigrationFailure as exc:
            self.log.warning("Migration batch stopped at %s: %s", exc.migration, exc.hint)
            report.extend(exc.completed)
            report.extend([DirectiveOutcome.failed("migration", exc.migration, "", exc.hint)])
            report.set_step(STEP_RUN_MIGRATIONS, "failed", exc.message)
            return
        report.extend(outcomes)
        self._finish_step(report, STEP_RUN_MIGRATIONS, outcomes)

    def _run_manual_sql(
        self,
        report: ApplyReport,
        migrator: SchemaMigrator,
        manifest: Manifest,
        handle: StagingHandle,
    ) -> None:
        if not manifest.manual_queries:
            report.set_step(STEP_RUN_MANUAL_SQL, "skipped", "manual_queries disabled")
            return
        report.set_step(STEP_RUN_MANUAL_SQL, "running")
        script = self._manual_sql_path(manifest, handle)
        if script is None:
            outcome = DirectiveOutcome.failed("sql", manifest.query_path or "", "", "manual SQL script not found in package")
            self.log.warning("Manual SQL enabled but %r is not in the package", manifest.query_path)
            report.extend([outcome])
            report.set_step(STEP_RUN_MANUAL_SQL, "failed", outcome.message)
            return
        outcomes = migrator.run_manual_sql(script)
        report.extend(outcomes)
        self._finish_step(report, STEP_RUN_MANUAL_SQL, outcomes)

    @staticmethod
    def _manual_sql_path(manifest: Manifest, handle: StagingHandle) -> Optional[Path]:
        if not manifest.query_path:
            return None
        for base in (manifest.root, handle.extract_dir):
            candidate = contained_path(base, manifest.query_path, root=handle.extract_dir)
            if candidate is not None and candidate.is_file():
                return candidate
        return None

    @staticmethod
    def _finish_step(report: ApplyReport, step: str, outcomes: List[DirectiveOutcome]) -> None:
        failed = sum(1 for item in outcomes if item.status == "failed")
        summary = f"{len(outcomes)} processed, {failed} failed"
        report.set_step(step, "failed" if failed else "done", summary)

    @staticmethod
    def _fail_running_step(report: ApplyReport, message: str) -> None:
        step = report.running_step()
        if step:
            report.set_step(step, "failed", message)

    def _append_audit(
        self,
        attempt_id: str,
        *,
        event: str,
        message: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append one JSONL audit event."""
        audit_path = self.settings.audit_root / f"{attempt_id}.jsonl"
        payload: Dict[str, Any] = {
            "ts": _utc_now_iso(),
            "attempt_id": attempt_id,
            "event": event,
            "message": message,
        }
        if extra:
            payload["extra"] = extra
        try:
            audit_path.parent.mkdir(parents=True, exist_ok=True)
            with audit_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, separators=(",", ":"), ensure_ascii=True, default=str))
                handle.write("\n")
        except OSError:
            self.log.exception("Failed writing update audit entry attempt_id=%s", attempt_id)


__all__ = ["UpdateResult", "UpdateService"]
