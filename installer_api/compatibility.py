"""Decide whether a package version may be applied to this installation.

A package is compatible when its version is the immediate successor of the
current ledger version (one component bumped by one, lower components reset to
zero) and the codebase on disk agrees with the ledger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Literal, Optional, Tuple

from installer_api.errors import IncompatibleVersion
from installer_api.ledger import VersionLedger

CompatibilityStatus = Literal["compatible", "version_mismatch", "sequence_error"]
MIN_VERSION_PARTS = 3


def parse_version(value: str) -> Tuple[int, ...]:
    """Parse dotted numeric versions such as ``1.2.0`` or ``v2.1``."""
    text = str(value or "").strip()
    if text[:1] in {"v", "V"}:
        text = text[1:]
    if not text:
        raise ValueError("version is empty")
    parts = text.split(".")
    if any(not part.isdigit() for part in parts):
        raise ValueError(f"version '{value}' is not dotted numeric")
    return tuple(int(part) for part in parts)


def _pad(parts: Tuple[int, ...], size: int) -> Tuple[int, ...]:
    return parts + (0,) * (size - len(parts))


def _is_newer(candidate: str, current: str) -> bool:
    size = max(MIN_VERSION_PARTS, len(parse_version(candidate)), len(parse_version(current)))
    return _pad(parse_version(candidate), size) > _pad(parse_version(current), size)


def is_immediate_successor(current: str, candidate: str) -> bool:
    """Return True when ``candidate`` is the next major, minor or patch release."""
    size = max(MIN_VERSION_PARTS, len(parse_version(current)), len(parse_version(candidate)))
    old = _pad(parse_version(current), size)
    new = _pad(parse_version(candidate), size)
    for index, (old_part, new_part) in enumerate(zip(old, new)):
        if old_part == new_part:
            continue
        return new_part == old_part + 1 and all(part == 0 for part in new[index + 1:])
    return False


@dataclass(frozen=True)
class CompatibilityResult:
    status: CompatibilityStatus
    message: str
    package_version: str
    current_version: Optional[str] = None
    code_version: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "compatible"

    def raise_for_status(self) -> None:
        if self.ok:
            return
        code = "updates.sequence_error" if self.status == "sequence_error" else "updates.version_mismatch"
        hint = f"current={self.current_version or 'none'} code={self.code_version or 'unknown'} package={self.package_version}"
        raise IncompatibleVersion(code=code, message=self.message, hint=hint)


class SystemUpdateInfo:
    """Compare a package version with the ledger and the codebase on disk."""

    def __init__(
        self,
        ledger: VersionLedger,
        *,
        code_version: Callable[[], Optional[str]] = lambda: None,
        base_version: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.ledger = ledger
        self._code_version = code_version
        self.base_version = base_version
        self.log = logger or logging.getLogger("installer_api.compatibility")

    def current_version(self) -> Optional[str]:
        return self.ledger.current_version() or self.base_version

    def check(self, package_version: str) -> CompatibilityResult:
        outcome = self._evaluate(package_version)
        if not outcome.ok:
            self.log.warning("Package %s rejected: %s", package_version, outcome.status)
        return outcome

    def _evaluate(self, package_version: str) -> CompatibilityResult:
        current = self.current_version()
        code = self._code_version()

        def result(status: CompatibilityStatus, message: str) -> CompatibilityResult:
            return CompatibilityResult(
                status=status,
                message=message,
                package_version=package_version,
                current_version=current,
                code_version=code,
            )

        try:
            parse_version(package_version)
            if current:
                parse_version(current)
        except ValueError as exc:
            return result("version_mismatch", f"Cannot compare versions: {exc}.")

        if current and not _is_newer(package_version, current):
            return result(
                "sequence_error",
                f"Version {package_version} is already installed or older than the current version {current}.",
            )
        if code and current and code != current:
            return result(
                "version_mismatch",
                f"Installed files are at version {code} but the database is at version {current}. "
                "Resolve the mismatch before applying further updates.",
            )
        if current is None:
            return result("compatible", f"Version {package_version} can be installed.")
        if is_immediate_successor(current, package_version):
            return result("compatible", f"Version {package_version} can be installed over {current}.")
        return result(
            "sequence_error",
            f"Version {package_version} does not follow the current version {current}. "
            "Install the intermediate updates first.",
        )


__all__ = [
    "CompatibilityResult",
    "SystemUpdateInfo",
    "is_immediate_successor",
    "parse_version",
]
