"""Report persistence for resumption and audit.

Each run gets an append-only JSON-lines log, one line per completed stage
and one per finished pipeline, so a crashed or failed run can be resumed
without re-deriving earlier successes. A YAML summary is written alongside
for humans.

    .cluster-bringup/runs/
        <run_id>.jsonl   flat log (stage id, status, timestamp, diagnostics summary)
        <run_id>.yaml    readable summary of the final report
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from cluster_bringup.core.contracts import utcnow
from cluster_bringup.core.state import (
    ErrorKind,
    PipelineReport,
    PipelineStatus,
    RemediationAttempt,
    StageRun,
    StageStatus,
)
from cluster_bringup.exceptions import BringupError

logger = logging.getLogger(__name__)


class LogEntry(BaseModel):
    """One line of the report log."""

    event: Literal["stage", "pipeline"]
    run_id: str
    pipeline: str
    timestamp: datetime = Field(default_factory=utcnow)
    stage_id: Optional[str] = None
    status: str
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    degraded: bool = False
    reused: bool = False
    note: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    diagnostic_summary: Optional[str] = None
    remediations: list[dict[str, Any]] = Field(default_factory=list)
    resumed_from: Optional[str] = None
    stage_ids: list[str] = Field(default_factory=list)

    @classmethod
    def for_stage(cls, report: PipelineReport, run: StageRun, reused: bool = False) -> "LogEntry":
        summary = run.diagnostics.summary() if run.diagnostics else run.diagnostic_summary
        return cls(
            event="stage",
            run_id=report.run_id,
            pipeline=report.pipeline,
            stage_id=run.stage_id,
            status=run.status.value,
            attempts=run.attempts,
            started_at=run.started_at,
            finished_at=run.finished_at,
            degraded=run.degraded,
            reused=reused,
            note=run.note,
            error_kind=run.error_kind.value if run.error_kind else None,
            error=run.error,
            diagnostic_summary=summary,
            remediations=[r.model_dump(mode="json") for r in run.remediations],
        )

    @classmethod
    def for_pipeline(cls, report: PipelineReport) -> "LogEntry":
        return cls(
            event="pipeline",
            run_id=report.run_id,
            pipeline=report.pipeline,
            status=report.status.value,
            started_at=report.started_at,
            finished_at=report.finished_at,
            resumed_from=report.resumed_from,
            stage_ids=[run.stage_id for run in report.stages],
        )

    def to_stage_run(self) -> StageRun:
        return StageRun(
            stage_id=self.stage_id or "",
            status=StageStatus(self.status),
            attempts=self.attempts,
            started_at=self.started_at,
            finished_at=self.finished_at,
            degraded=self.degraded,
            note=self.note,
            error_kind=ErrorKind(self.error_kind) if self.error_kind else None,
            error=self.error,
            diagnostic_summary=self.diagnostic_summary,
            remediations=[RemediationAttempt.model_validate(r) for r in self.remediations],
        )


class ReportLog:
    """Manages report persistence for pipeline runs."""

    def __init__(self, report_dir: Path):
        """Initialize the report log.

        Args:
            report_dir: Directory holding one log per run
        """
        self._report_dir = Path(report_dir)

    @property
    def report_dir(self) -> Path:
        return self._report_dir

    def log_path(self, run_id: str) -> Path:
        """Get the JSON-lines log for a run."""
        return self._report_dir / f"{run_id}.jsonl"

    def summary_path(self, run_id: str) -> Path:
        """Get the YAML summary for a run."""
        return self._report_dir / f"{run_id}.yaml"

    def _append(self, entry: LogEntry) -> Path:
        self._report_dir.mkdir(parents=True, exist_ok=True)
        path = self.log_path(entry.run_id)
        with path.open("a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")
        return path

    def append_stage(self, report: PipelineReport, run: StageRun) -> Path:
        """Append a completed or carried-over stage. Usable as the controller's on_stage_complete."""
        reused = run.stage_id in report.reused_stage_ids
        return self._append(LogEntry.for_stage(report, run, reused=reused))

    def append_pipeline(self, report: PipelineReport) -> Path:
        """Append the final pipeline status."""
        path = self._append(LogEntry.for_pipeline(report))
        logger.info(f"Report for run {report.run_id} written to {path}")
        return path

    def load(self, run_id: str) -> PipelineReport:
        """Rebuild a PipelineReport from its log. The last line per stage wins.

        Raises:
            BringupError: the log does not exist or is unreadable
        """
        path = self.log_path(run_id)
        if not path.exists():
            raise BringupError(f"No report log for run {run_id} at {path}")

        pipeline_entry: Optional[LogEntry] = None
        stage_entries: dict[str, LogEntry] = {}
        first_seen: list[str] = []
        reused: list[str] = []
        pipeline_name = "bringup"

        for number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entry = LogEntry.model_validate(json.loads(line))
            except (json.JSONDecodeError, ValidationError) as e:
                # A torn final line from an interrupted run is expected.
                logger.warning(f"Ignoring unreadable line {number} in {path}: {e}")
                continue
            pipeline_name = entry.pipeline
            if entry.event == "pipeline":
                pipeline_entry = entry
            elif entry.stage_id:
                if entry.stage_id not in stage_entries:
                    first_seen.append(entry.stage_id)
                stage_entries[entry.stage_id] = entry
                if entry.reused and entry.stage_id not in reused:
                    reused.append(entry.stage_id)

        order = list(pipeline_entry.stage_ids) if pipeline_entry else []
        order += [s for s in first_seen if s not in order]
        stages = [
            stage_entries[s].to_stage_run() if s in stage_entries else StageRun(stage_id=s)
            for s in order
        ]

        if pipeline_entry is not None:
            status = PipelineStatus(pipeline_entry.status)
            started_at = pipeline_entry.started_at
            finished_at = pipeline_entry.finished_at
            resumed_from = pipeline_entry.resumed_from
        else:
            # The run never finished; treat it as aborted.
            status = PipelineStatus.ABORTED
            started_at = min((s.started_at for s in stages if s.started_at), default=None)
            finished_at = None
            resumed_from = None

        return PipelineReport(
            run_id=run_id,
            pipeline=pipeline_name,
            status=status,
            started_at=started_at,
            finished_at=finished_at,
            resumed_from=resumed_from,
            reused_stage_ids=reused,
            stages=stages,
        )

    def list_runs(self) -> list[str]:
        """Run ids, newest log first."""
        if not self._report_dir.exists():
            return []
        logs = sorted(
            self._report_dir.glob("*.jsonl"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        return [p.stem for p in logs]

    def latest_run_id(self) -> Optional[str]:
        """Most recently written run, if any."""
        runs = self.list_runs()
        return runs[0] if runs else None

    def save_summary(self, report: PipelineReport) -> Path:
        """Write a readable YAML summary of the report."""
        self._report_dir.mkdir(parents=True, exist_ok=True)
        path = self.summary_path(report.run_id)

        data = {
            "run_id": report.run_id,
            "pipeline": report.pipeline,
            "generated": utcnow().isoformat(),
            "status": report.status.value,
            "resumed_from": report.resumed_from,
            "duration_seconds": round(report.duration_seconds, 1),
            "stages": [
                {
                    "id": run.stage_id,
                    "status": run.status.value,
                    "degraded": run.degraded,
                    "attempts": run.attempts,
                    "reused": run.stage_id in report.reused_stage_ids,
                    "duration_seconds": round(run.duration_seconds, 1),
                    "note": run.note,
                    "error_kind": run.error_kind.value if run.error_kind else None,
                    "error": run.error,
                    "remediations": [
                        {
                            "signature": r.signature.describe(),
                            "outcome": r.outcome.value,
                            "action": r.action,
                        }
                        for r in run.remediations
                    ],
                }
                for run in report.stages
            ],
            "failures": report.failure_summary(),
        }

        self._write_yaml(path, data, header=f"# Bring-up report for run: {report.run_id}")
        return path

    def _write_yaml(self, path: Path, data: dict[str, Any], header: str = "") -> None:
        """Write data to YAML file with optional header comment."""
        content = ""
        if header:
            content = header + "\n\n"

        yaml_content = yaml.dump(
            data,
            default_flow_style=False,
            allow_unicode=True,
            sort_keys=False,
            width=120,
        )
        content += yaml_content
        path.write_text(content, encoding="utf-8")
