"""Tagged per-directive outcomes and the aggregated apply report."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Literal


OutcomeStatus = Literal["applied", "skipped", "failed"]
StepStatus = Literal["pending", "running", "done", "skipped", "failed"]

STEP_VALIDATE_PACKAGE = "validate_package"
STEP_CHECK_COMPATIBILITY = "check_compatibility"
STEP_APPLY_FOLDERS = "apply_folders"
STEP_APPLY_FILES = "apply_files"
STEP_APPLY_ARCHIVES = "apply_archives"
STEP_RUN_MIGRATIONS = "run_migrations"
STEP_RUN_MANUAL_SQL = "run_manual_sql"
STEP_RECORD_VERSION = "record_version"
STEP_ORDER: tuple[str, ...] = (
    STEP_VALIDATE_PACKAGE,
    STEP_CHECK_COMPATIBILITY,
    STEP_APPLY_FOLDERS,
    STEP_APPLY_FILES,
    STEP_APPLY_ARCHIVES,
    STEP_RUN_MIGRATIONS,
    STEP_RUN_MANUAL_SQL,
    STEP_RECORD_VERSION,
)


@dataclass(frozen=True)
class DirectiveOutcome:
    """Result of one folder/file/archive directive, migration or SQL statement."""

    kind: str
    key: str
    status: OutcomeStatus
    target: str = ""
    message: str = ""

    @classmethod
    def applied(cls, kind: str, key: str, target: str = "", message: str = "") -> "DirectiveOutcome":
        return cls(kind=kind, key=key, status="applied", target=target, message=message)

    @classmethod
    def skipped(cls, kind: str, key: str, target: str = "", reason: str = "") -> "DirectiveOutcome":
        return cls(kind=kind, key=key, status="skipped", target=target, message=reason)

    @classmethod
    def failed(cls, kind: str, key: str, target: str = "", error: str = "") -> "DirectiveOutcome":
        return cls(kind=kind, key=key, status="failed", target=target, message=error)

    def to_dict(self) -> Dict[str, str]:
        """Return wire-format dictionary used by API responses."""
        payload = {"kind": self.kind, "key": self.key, "status": self.status}
        if self.target:
            payload["target"] = self.target
        if self.message:
            payload["message"] = self.message
        return payload


@dataclass
class StepState:
    """Mutable state for one pipeline step."""

    step: str
    status: StepStatus = "pending"
    message: str = ""

    def to_dict(self) -> Dict[str, str]:
        payload = {"step": self.step, "status": self.status}
        if self.message:
            payload["message"] = self.message
        return payload


@dataclass
class ApplyReport:
    """Aggregated outcomes of one apply attempt."""

    outcomes: List[DirectiveOutcome] = field(default_factory=list)
    steps: Dict[str, StepState] = field(
        default_factory=lambda: {step: StepState(step=step) for step in STEP_ORDER}
    )

    def extend(self, outcomes: Iterable[DirectiveOutcome]) -> None:
        self.outcomes.extend(outcomes)

    def set_step(self, step: str, status: StepStatus, message: str = "") -> None:
        state = self.steps[step]
        state.status = status
        state.message = message

    def running_step(self) -> str | None:
        for step in STEP_ORDER:
            if self.steps[step].status == "running":
                return step
        return None

    @property
    def failures(self) -> List[DirectiveOutcome]:
        return [item for item in self.outcomes if item.status == "failed"]

    @property
    def partial(self) -> bool:
        """True when at least one directive failed while the apply continued."""
        return bool(self.failures)

    def counts(self) -> Dict[str, int]:
        totals = {"applied": 0, "skipped": 0, "failed": 0}
        for item in self.outcomes:
            totals[item.status] += 1
        return totals

    def to_dict(self) -> Dict[str, object]:
        return {
            "partial": self.partial,
            "counts": self.counts(),
            "steps": [self.steps[step].to_dict() for step in STEP_ORDER],
            "outcomes": [item.to_dict() for item in self.outcomes],
        }


__all__ = [
    "ApplyReport",
    "DirectiveOutcome",
    "OutcomeStatus",
    "STEP_ORDER",
    "StepState",
]
