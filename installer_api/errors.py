"""Typed errors raised by the installation and update engine.

Every error carries a stable dotted ``code``, a human readable ``message`` and
an operator ``hint``. The HTTP layer and :class:`UpdateService` convert them
into the uniform ``{error: true, message}`` response shape.
"""

from __future__ import annotations

from typing import Any, Iterable


class InstallerError(RuntimeError):
    """Base exception containing a typed error payload for API responses."""

    def __init__(
        self,
        *,
        code: str,
        message: str,
        hint: str = "",
        status_code: int = 400,
    ) -> None:
        super().__init__(message)
        self.code = str(code)
        self.message = str(message)
        self.hint = str(hint or "")
        self.status_code = int(status_code)

    def to_dict(self) -> dict:
        """Return the wire-format error payload."""
        return {"error": True, "code": self.code, "message": self.message, "hint": self.hint}


class InvalidPackageFormat(InstallerError):
    """Raised for uploads that are not a readable ZIP package."""

    def __init__(self, *, code: str = "updates.invalid_upload", message: str, hint: str = "") -> None:
        super().__init__(code=code, message=message, hint=hint, status_code=400)


class StagingError(InstallerError):
    """Raised when the upload cannot be written to the staging area."""

    def __init__(self, *, code: str = "updates.write_failed", message: str, hint: str = "", status_code: int = 500) -> None:
        super().__init__(code=code, message=message, hint=hint, status_code=status_code)


class UpdateInProgress(InstallerError):
    """Raised when another apply attempt currently holds the update lock."""

    def __init__(self, *, hint: str = "") -> None:
        super().__init__(
            code="updates.locked",
            message="Another update is already being applied.",
            hint=hint or "Wait for the running update to finish and retry.",
            status_code=409,
        )


class ExtractionFailed(InstallerError):
    """Raised when an archive cannot be opened or extracted."""

    def __init__(self, *, message: str = "Extraction failed.", hint: str = "") -> None:
        super().__init__(code="updates.extract_failed", message=message, hint=hint, status_code=422)


class ManifestNotFound(InstallerError):
    """Raised when no ``package.json`` exists at any candidate location."""

    def __init__(self, *, hint: str = "") -> None:
        super().__init__(
            code="updates.manifest_missing",
            message="Invalid update file! No package manifest was found in the uploaded archive.",
            hint=hint,
            status_code=422,
        )


class MalformedManifest(InstallerError):
    """Raised when the manifest (or a strict satellite) cannot be parsed."""

    def __init__(self, *, message: str, hint: str = "") -> None:
        super().__init__(code="updates.manifest_invalid", message=message, hint=hint, status_code=422)


class IncompatibleVersion(InstallerError):
    """Raised when a package does not fit the installed version sequence."""

    def __init__(self, *, code: str, message: str, hint: str = "") -> None:
        super().__init__(code=code, message=message, hint=hint, status_code=409)


class MigrationFailure(InstallerError):
    """Raised by the migration runner when one migration script fails."""

    def __init__(self, *, migration: str, hint: str = "", completed: Iterable[Any] = ()) -> None:
        super().__init__(
            code="updates.migration_failed",
            message=f"Migration '{migration}' failed",
            hint=hint,
            status_code=500,
        )
        self.migration = migration
        self.completed = list(completed)


class LedgerWriteFailure(InstallerError):
    """Raised when the applied version cannot be recorded."""

    def __init__(self, *, version: str, hint: str = "") -> None:
        super().__init__(
            code="updates.ledger_write_failed",
            message=f"Version {version} was applied but could not be recorded",
            hint=hint or "Check database connectivity and the updates table.",
            status_code=500,
        )


class DatabaseConnectionError(InstallerError):
    """Raised when the database rejects a test connection."""

    def __init__(self, *, reason: str) -> None:
        super().__init__(
            code="install.connection_failed",
            message=f"Connection failed: {reason}",
            hint="Check host, database name and credentials.",
            status_code=400,
        )
        self.reason = reason


class BootstrapError(InstallerError):
    """Raised when a first-run installation step fails."""

    def __init__(self, *, code: str, message: str, hint: str = "", status_code: int = 500) -> None:
        super().__init__(code=code, message=message, hint=hint, status_code=status_code)


__all__ = [
    "BootstrapError",
    "DatabaseConnectionError",
    "ExtractionFailed",
    "IncompatibleVersion",
    "InstallerError",
    "InvalidPackageFormat",
    "LedgerWriteFailure",
    "MalformedManifest",
    "ManifestNotFound",
    "MigrationFailure",
    "StagingError",
    "UpdateInProgress",
]
