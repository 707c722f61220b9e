"""Run outcomes: per-step records and the report assembled for a run."""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from flux.errors import FluxError, ReportFinalized


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    UNAVAILABLE = "unavailable"


class OverallStatus(str, Enum):
    ALL_COMPLETED = "all_completed"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ExecutionStep:
    """Result of running one module."""

    module_name: str
    status: StepStatus
    started_at: datetime
    ended_at: datetime
    error: Optional[FluxError] = None
    skip_reason: Optional[SkipReason] = None

    @property
    def duration(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        """Structured record used by the log sink and JSON output."""
        record = {
            "module": self.module_name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration": round(self.duration, 3),
        }
        if self.error is not None:
            record["error"] = str(self.error)
            record["error_type"] = type(self.error).__name__
        if self.skip_reason is not None:
            record["skip_reason"] = self.skip_reason.value
        return record


class OutcomeReport:
    """Ordered record of what a run did.

    The engine appends steps while the run is in progress and finalizes the
    report once; after that it is read-only.
    """

    def __init__(self, target: str, kind: str, planned: Iterable[str] = ()):
        self.target = target
        self.kind = kind
        self.planned = tuple(planned)
        self._steps = []
        self._status: Optional[OverallStatus] = None
        self._fatal_error: Optional[FluxError] = None
        self._declined = False

    # Engine-side writers

    def _append(self, step: ExecutionStep) -> None:
        if self.finalized:
            raise ReportFinalized(f"Report for '{self.target}' is finalized")
        self._steps.append(step)

    def _finalize(
        self,
        status: OverallStatus,
        fatal_error: Optional[FluxError] = None,
        declined: bool = False,
    ) -> None:
        if self.finalized:
            raise ReportFinalized(f"Report for '{self.target}' is finalized")
        self._fatal_error = fatal_error
        self._declined = declined
        self._status = status

    # Read interface

    @property
    def finalized(self) -> bool:
        return self._status is not None

    @property
    def steps(self) -> tuple:
        return tuple(self._steps)

    @property
    def overall_status(self) -> Optional[OverallStatus]:
        return self._status

    @property
    def fatal_error(self) -> Optional[FluxError]:
        return self._fatal_error

    @property
    def declined(self) -> bool:
        return self._declined

    def _count(self, status: StepStatus) -> int:
        return sum(1 for step in self._steps if step.status is status)

    @property
    def completed(self) -> int:
        return self._count(StepStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return self._count(StepStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(StepStatus.SKIPPED)

    @property
    def failures(self) -> tuple:
        return tuple(s for s in self._steps if s.status is StepStatus.FAILED)

    @property
    def skipped_steps(self) -> tuple:
        return tuple(s for s in self._steps if s.status is StepStatus.SKIPPED)

    @property
    def not_attempted(self) -> tuple:
        """Planned modules the run never reached."""
        recorded = {step.module_name for step in self._steps}
        return tuple(name for name in self.planned if name not in recorded)

    @property
    def changes_made(self) -> bool:
        """Whether any module actually executed during the run."""
        return any(step.status is not StepStatus.SKIPPED for step in self._steps)

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "kind": self.kind,
            "status": self._status.value if self._status else None,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "declined": self._declined,
            "fatal_error": str(self._fatal_error) if self._fatal_error else None,
            "not_attempted": list(self.not_attempted),
            "steps": [step.to_dict() for step in self._steps],
        }

    def summary_lines(self) -> list:
        """Human-readable run summary."""
        lines = [f"=== {self.kind.capitalize()} Summary: {self.target} ==="]
        if self._fatal_error is not None:
            lines.append(f"✗ {self._fatal_error}")
            lines.append("No modules were run.")
            return lines

        lines.append(f"✓ Completed: {self.completed}")
        if self.failed:
            lines.append(f"✗ Failed: {self.failed}")
            for step in self.failures:
                lines.append(f"    {step.module_name}: {step.error}")
        if self.skipped:
            lines.append(f"○ Skipped: {self.skipped}")
            for step in self.skipped_steps:
                lines.append(f"    {step.module_name}: {step.skip_reason.value}")
        if self.not_attempted:
            lines.append(f"○ Not attempted: {', '.join(self.not_attempted)}")

        if self._declined:
            lines.append("Cancelled by user.")
            if not self.changes_made:
                lines.append("No changes were made.")
        lines.append(f"Status: {self._status.value if self._status else 'running'}")
        return lines
