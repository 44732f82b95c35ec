"""Execution state for a bring-up run.

All mutable execution state lives here: a StageRun per stage, owned by the
Stage Executor while the stage runs, and one PipelineReport owned by the
Pipeline Controller. Nothing is read from ambient environment state.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from cluster_bringup.core.contracts import StateSnapshot, utcnow
from cluster_bringup.exceptions import InvalidTransitionError


class StageStatus(str, Enum):
    """Lifecycle of a single stage run."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    REMEDIATING = "remediating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


TERMINAL_STATUSES = frozenset(
    {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED, StageStatus.CANCELLED}
)

# Pending -> Running -> (Waiting <-> Remediating)* -> Succeeded | Failed
ALLOWED_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.RUNNING, StageStatus.SKIPPED}),
    StageStatus.RUNNING: frozenset(
        {
            StageStatus.WAITING,
            StageStatus.REMEDIATING,
            StageStatus.SUCCEEDED,
            StageStatus.FAILED,
            StageStatus.CANCELLED,
        }
    ),
    StageStatus.WAITING: frozenset(
        {StageStatus.REMEDIATING, StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.CANCELLED}
    ),
    StageStatus.REMEDIATING: frozenset(
        {StageStatus.WAITING, StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.CANCELLED}
    ),
    StageStatus.SUCCEEDED: frozenset(),
    StageStatus.FAILED: frozenset(),
    StageStatus.SKIPPED: frozenset(),
    StageStatus.CANCELLED: frozenset(),
}


class PipelineStatus(str, Enum):
    """Aggregate status of a pipeline run."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    ABORTED = "aborted"


class ErrorKind(str, Enum):
    """Why a stage did not succeed."""

    TIMEOUT = "timeout"
    REMEDIATION_UNAVAILABLE = "remediation_unavailable"
    DEPENDENCY_FAILED = "dependency_failed"
    APPLY_REJECTED = "apply_rejected"
    CANCELLED = "cancelled"


class SignatureKind(str, Enum):
    """Failure signatures recognised by the remediation engine."""

    UNTOLERATED_TAINT = "untolerated_taint"
    IMAGE_PULL_BACKOFF = "image_pull_backoff"
    WEBHOOK_UNREACHABLE = "webhook_unreachable"
    INSUFFICIENT_RESOURCES = "insufficient_resources"


class ImageTarget(BaseModel):
    """A container whose image cannot be pulled, addressed through its owning workload."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    workload_kind: str = "Deployment"
    workload: str
    container: str
    image: str


class Signature(BaseModel):
    """A classified failure."""

    model_config = ConfigDict(frozen=True)

    kind: SignatureKind
    taint_key: Optional[str] = None
    images: tuple[str, ...] = ()
    targets: tuple[ImageTarget, ...] = ()
    detail: str = ""

    def describe(self) -> str:
        if self.kind == SignatureKind.UNTOLERATED_TAINT:
            return f"UntoleratedTaint({self.taint_key})"
        if self.kind == SignatureKind.IMAGE_PULL_BACKOFF:
            return f"ImagePullBackoff({', '.join(self.images)})"
        if self.kind == SignatureKind.WEBHOOK_UNREACHABLE:
            return "WebhookUnreachable"
        return "InsufficientResources"


class RemediationOutcome(str, Enum):
    """Result of a corrective action."""

    APPLIED = "applied"
    UNAVAILABLE = "unavailable"


class RetryPolicy(BaseModel):
    """How many readiness attempts a stage gets and how long to back off between them."""

    max_attempts: int = Field(default=3, ge=1, description="Readiness attempts, including the first")
    backoff_seconds: float = Field(default=5.0, ge=0.0, description="Delay after the first remediation")
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_seconds: float = Field(default=60.0, ge=0.0)

    def delay(self, attempt: int) -> float:
        """Backoff before readiness attempt `attempt + 1` (attempt is 1-based)."""
        raw = self.backoff_seconds * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(raw, self.max_backoff_seconds)


class DiagnosticSnapshot(BaseModel):
    """External state captured when a stage did not become ready."""

    stage_id: str
    captured_at: datetime = Field(default_factory=utcnow)
    unmet_condition: Optional[str] = Field(default=None, description="Readiness condition that was not met")
    error: Optional[str] = Field(default=None, description="Apply or query error text")
    state: StateSnapshot = Field(default_factory=StateSnapshot)

    def summary(self) -> str:
        parts: list[str] = []
        if self.unmet_condition:
            parts.append(f"unmet: {self.unmet_condition}")
        if self.error:
            parts.append(f"error: {self.error[:300]}")
        state_summary = self.state.summary()
        if state_summary:
            parts.append(state_summary)
        return "; ".join(parts) or "no diagnostics captured"


class RemediationAttempt(BaseModel):
    """A corrective action that was tried during a stage run."""

    attempt: int
    signature: Signature
    outcome: RemediationOutcome
    action: str = ""
    error: Optional[str] = Field(default=None, description="Why the corrective action itself failed")
    at: datetime = Field(default_factory=utcnow)


class StatusChange(BaseModel):
    """One entry in a StageRun's transition history."""

    status: StageStatus
    at: datetime = Field(default_factory=utcnow)


class StageRun(BaseModel):
    """One execution of a stage."""

    stage_id: str
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    degraded: bool = False
    note: Optional[str] = Field(default=None, description="Annotation, e.g. why a stage succeeded degraded")
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    diagnostics: Optional[DiagnosticSnapshot] = None
    diagnostic_summary: Optional[str] = Field(
        default=None, description="Kept when only the flat log is available"
    )
    remediations: list[RemediationAttempt] = Field(default_factory=list)
    history: list[StatusChange] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCEEDED

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def transition(self, status: StageStatus) -> None:
        """Move to a new status, enforcing the monotonic lifecycle."""
        if status == self.status:
            return
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"{self.stage_id}: cannot move from {self.status.value} to {status.value}",
                stage_id=self.stage_id,
            )
        now = utcnow()
        if self.started_at is None and status != StageStatus.SKIPPED:
            self.started_at = now
        if status in TERMINAL_STATUSES:
            self.finished_at = now
        self.status = status
        self.history.append(StatusChange(status=status, at=now))

    def fail(
        self,
        kind: ErrorKind,
        message: str,
        diagnostics: Optional[DiagnosticSnapshot] = None,
    ) -> None:
        """Finish as FAILED (or CANCELLED for a cancellation) with an error."""
        self.error_kind = kind
        self.error = message
        if diagnostics is not None:
            self.diagnostics = diagnostics
            self.diagnostic_summary = diagnostics.summary()
        terminal = StageStatus.CANCELLED if kind == ErrorKind.CANCELLED else StageStatus.FAILED
        self.transition(terminal)

    def skip(self, reason: str) -> None:
        """Record that the stage was not run because a dependency did not succeed."""
        self.error_kind = ErrorKind.DEPENDENCY_FAILED
        self.error = reason
        self.transition(StageStatus.SKIPPED)

    @property
    def last_remediation(self) -> Optional[RemediationAttempt]:
        return self.remediations[-1] if self.remediations else None


class PipelineReport(BaseModel):
    """Ordered record of every stage in a pipeline run. The sole external artifact."""

    run_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    pipeline: str = Field(default="bringup", description="Pipeline definition name")
    status: PipelineStatus = PipelineStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    resumed_from: Optional[str] = Field(default=None, description="run_id of the report this run resumed")
    reused_stage_ids: list[str] = Field(
        default_factory=list, description="Stages carried over unchanged from the prior report"
    )
    stages: list[StageRun] = Field(default_factory=list)

    def get(self, stage_id: str) -> Optional[StageRun]:
        for run in self.stages:
            if run.stage_id == stage_id:
                return run
        return None

    def by_status(self, status: StageStatus) -> list[StageRun]:
        return [run for run in self.stages if run.status == status]

    @property
    def succeeded_count(self) -> int:
        return len(self.by_status(StageStatus.SUCCEEDED))

    @property
    def failed_stages(self) -> list[StageRun]:
        return self.by_status(StageStatus.FAILED)

    @property
    def skipped_stages(self) -> list[StageRun]:
        return self.by_status(StageStatus.SKIPPED)

    @property
    def degraded_stages(self) -> list[StageRun]:
        return [run for run in self.stages if run.succeeded and run.degraded]

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def failure_summary(self) -> list[str]:
        """Name each failed stage, its last diagnostics, and the remediation tried."""
        lines: list[str] = []
        for run in self.failed_stages:
            kind = run.error_kind.value if run.error_kind else "unknown"
            lines.append(f"{run.stage_id} failed ({kind}): {run.error or ''}".rstrip())
            summary = run.diagnostics.summary() if run.diagnostics else run.diagnostic_summary
            if summary:
                lines.append(f"  diagnostics: {summary}")
            last = run.last_remediation
            if last is not None:
                lines.append(
                    f"  remediation tried: {last.signature.describe()} -> {last.outcome.value}"
                    + (f" ({last.action})" if last.action else "")
                    + (f": {last.error}" if last.error else "")
                )
        return lines
