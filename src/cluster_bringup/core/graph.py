"""Pipeline Controller: runs a stage graph in dependency order.

    Droplets ──► Kubernetes ──► RemoveTaint ─┬─► Ingress ──► DNS (operator) ──┐
                                             ├─► CertManager ─────────────────┴─► ClusterIssuer
                                             ├─► ArgoCD ──► ArgoCD password
                                             └─► Dashboard

- The graph is validated before anything runs (duplicates, unknown
  dependencies, cycles are configuration errors).
- Stages whose dependencies all succeeded run concurrently, bounded by
  max_concurrency.
- A stage whose dependency did not succeed is SKIPPED, transitively.
- Given a prior report, only unfinished work is replayed (resumption).
- Cancellation stops new stages; in-flight stages unwind through their polls.

The report is owned here and published as a copy after each stage completes;
stages carried over from a prior report are published before any stage starts.
"""

import asyncio
import logging
from typing import Callable, Iterable, Optional, Protocol, Sequence

from cluster_bringup.core.contracts import utcnow
from cluster_bringup.core.executor import StageExecutor
from cluster_bringup.core.stage import Stage
from cluster_bringup.core.state import (
    ErrorKind,
    PipelineReport,
    PipelineStatus,
    StageRun,
    StageStatus,
)
from cluster_bringup.exceptions import PipelineConfigError

logger = logging.getLogger(__name__)

StageCallback = Callable[[PipelineReport, StageRun], None]


class GraphNode(Protocol):
    """Anything with an id and dependencies (Stage or StageSpec)."""

    id: str
    depends_on: Sequence[str]


def topological_order(nodes: Sequence[GraphNode]) -> list[str]:
    """Validate a stage graph and return a stable topological order.

    Ties are broken by declaration order.

    Raises:
        PipelineConfigError: duplicate ids, unknown dependencies or a cycle
    """
    ids = [n.id for n in nodes]
    seen: set[str] = set()
    for stage_id in ids:
        if stage_id in seen:
            raise PipelineConfigError(f"Duplicate stage id: {stage_id}", stage_id=stage_id)
        seen.add(stage_id)

    for node in nodes:
        for dep in node.depends_on:
            if dep not in seen:
                raise PipelineConfigError(
                    f"Stage {node.id} depends on unknown stage {dep}", stage_id=node.id
                )
            if dep == node.id:
                raise PipelineConfigError(f"Stage {node.id} depends on itself", stage_id=node.id)

    remaining = {n.id: set(n.depends_on) for n in nodes}
    order: list[str] = []
    while remaining:
        ready = [stage_id for stage_id in ids if stage_id in remaining and not remaining[stage_id]]
        if not ready:
            cycle = ", ".join(sorted(remaining))
            raise PipelineConfigError(f"Dependency cycle among stages: {cycle}")
        for stage_id in ready:
            order.append(stage_id)
            del remaining[stage_id]
        for deps in remaining.values():
            deps.difference_update(ready)
    return order


def descendants(nodes: Iterable[GraphNode], stage_id: str) -> set[str]:
    """All stages that depend on `stage_id`, directly or transitively."""
    dependents: dict[str, set[str]] = {}
    for node in nodes:
        for dep in node.depends_on:
            dependents.setdefault(dep, set()).add(node.id)

    found: set[str] = set()
    frontier = [stage_id]
    while frontier:
        current = frontier.pop()
        for child in dependents.get(current, ()):
            if child not in found:
                found.add(child)
                frontier.append(child)
    return found


def render_mermaid(nodes: Sequence[GraphNode]) -> str:
    """Render the stage graph as a Mermaid flowchart."""
    lines = ["flowchart TD"]
    for node in nodes:
        lines.append(f"    {_mermaid_id(node.id)}[\"{node.id}\"]")
    for node in nodes:
        for dep in node.depends_on:
            lines.append(f"    {_mermaid_id(dep)} --> {_mermaid_id(node.id)}")
    return "\n".join(lines)


def _mermaid_id(stage_id: str) -> str:
    return "".join(ch if ch.isalnum() else "_" for ch in stage_id)


def plan_resumption(
    nodes: Sequence[GraphNode],
    prior: Optional[PipelineReport],
    resume_from: Optional[str] = None,
) -> set[str]:
    """Decide which stages run in this execution.

    - No prior report: every stage.
    - Prior report, no named stage: every stage that did not succeed.
    - Prior report and `resume_from`: that stage and its descendants that
      did not succeed. Everything else is carried over unchanged.
    """
    ids = [n.id for n in nodes]
    if resume_from is not None and resume_from not in ids:
        raise PipelineConfigError(f"Cannot resume from unknown stage {resume_from}", stage_id=resume_from)
    if prior is None:
        if resume_from is not None:
            raise PipelineConfigError("Resuming from a stage requires a prior report", stage_id=resume_from)
        return set(ids)

    def succeeded_before(stage_id: str) -> bool:
        previous = prior.get(stage_id)
        return previous is not None and previous.succeeded

    if resume_from is None:
        return {stage_id for stage_id in ids if not succeeded_before(stage_id)}
    replay = {d for d in descendants(nodes, resume_from) if not succeeded_before(d)}
    replay.add(resume_from)
    return replay


class PipelineController:
    """Sequences stages and produces the PipelineReport."""

    def __init__(
        self,
        executor: StageExecutor,
        max_concurrency: int = 4,
        name: str = "bringup",
        on_stage_complete: Optional[StageCallback] = None,
    ):
        """Initialize the controller.

        Args:
            executor: Runs individual stages
            max_concurrency: Upper bound on stages running at once
            name: Pipeline name recorded in the report
            on_stage_complete: Receives a copy of the report and the finished run
        """
        self._executor = executor
        self._max_concurrency = max(1, max_concurrency)
        self._name = name
        self._on_stage_complete = on_stage_complete

    async def execute(
        self,
        stages: Sequence[Stage],
        prior: Optional[PipelineReport] = None,
        resume_from: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> PipelineReport:
        """Run the pipeline to completion (or cancellation).

        Args:
            stages: Stage definitions
            prior: Report of an earlier run to resume
            resume_from: Stage to re-enter at (requires prior)
            cancel: Operator cancellation signal

        Returns:
            PipelineReport; stage failures are recorded, never raised

        Raises:
            PipelineConfigError: the stage graph is invalid
        """
        order = topological_order(stages)
        to_run = plan_resumption(stages, prior, resume_from)
        by_id = {s.id: s for s in stages}
        cancel = cancel or asyncio.Event()

        report = PipelineReport(
            pipeline=self._name,
            status=PipelineStatus.RUNNING,
            started_at=utcnow(),
            resumed_from=prior.run_id if prior else None,
        )
        runs: dict[str, StageRun] = {}
        for stage_id in order:
            previous = prior.get(stage_id) if prior else None
            if stage_id not in to_run and previous is not None:
                runs[stage_id] = previous
                report.reused_stage_ids.append(stage_id)
            else:
                runs[stage_id] = StageRun(stage_id=stage_id)
        report.stages = [runs[stage_id] for stage_id in order]

        if prior is not None:
            logger.info(
                f"Resuming run {prior.run_id}: replaying {len(to_run)} stage(s), "
                f"reusing {len(report.reused_stage_ids)}"
            )
        logger.info(f"Pipeline {self._name} run {report.run_id} starting with {len(order)} stage(s)")
        # Record carried-over results first so an interrupted resumed run keeps them.
        for stage_id in report.reused_stage_ids:
            self._publish(report, runs, order, stage_id)

        semaphore = asyncio.Semaphore(self._max_concurrency)
        waiting = [stage_id for stage_id in order if stage_id in to_run]
        in_flight: dict[asyncio.Task, str] = {}

        async def guarded(stage: Stage) -> Optional[StageRun]:
            async with semaphore:
                if cancel.is_set():
                    return None
                return await self._executor.run(stage, cancel)

        def blocked(dep: str) -> bool:
            dep_run = runs[dep]
            if dep_run.succeeded:
                return False
            return dep_run.is_terminal or dep not in to_run

        try:
            while waiting or in_flight:
                progressed = True
                while progressed and not cancel.is_set():
                    progressed = False
                    for stage_id in list(waiting):
                        deps = by_id[stage_id].depends_on
                        failed_deps = [d for d in deps if blocked(d)]
                        if failed_deps:
                            waiting.remove(stage_id)
                            runs[stage_id].skip(f"dependency did not succeed: {', '.join(failed_deps)}")
                            logger.warning(f"Stage {stage_id}: skipped, {runs[stage_id].error}")
                            self._publish(report, runs, order, stage_id)
                            progressed = True
                        elif all(runs[d].succeeded for d in deps):
                            waiting.remove(stage_id)
                            task = asyncio.create_task(guarded(by_id[stage_id]), name=f"stage-{stage_id}")
                            in_flight[task] = stage_id
                            progressed = True

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    stage_id = in_flight.pop(task)
                    result = self._collect(task, stage_id)
                    if result is None:
                        continue
                    runs[stage_id] = result
                    self._publish(report, runs, order, stage_id)
        except asyncio.CancelledError:
            cancel.set()
            if in_flight:
                await asyncio.gather(*in_flight.keys(), return_exceptions=True)
            raise

        report.stages = [runs[stage_id] for stage_id in order]
        report.status = self._final_status(report, by_id, cancel)
        report.finished_at = utcnow()
        logger.info(
            f"Pipeline {self._name} run {report.run_id} {report.status.value}: "
            f"{report.succeeded_count}/{len(order)} succeeded, "
            f"{len(report.degraded_stages)} degraded, {len(report.failed_stages)} failed, "
            f"{len(report.skipped_stages)} skipped"
        )
        return report

    def _collect(self, task: asyncio.Task, stage_id: str) -> Optional[StageRun]:
        """Turn a finished task into a StageRun, recording unexpected errors."""
        try:
            return task.result()
        except asyncio.CancelledError:
            run = StageRun(stage_id=stage_id)
            run.transition(StageStatus.RUNNING)
            run.fail(ErrorKind.CANCELLED, "stage task cancelled")
            return run
        except Exception as e:
            logger.error(f"Stage {stage_id}: unexpected error: {e}", exc_info=True)
            run = StageRun(stage_id=stage_id)
            run.transition(StageStatus.RUNNING)
            run.fail(ErrorKind.INTERNAL_ERROR, f"Unexpected error: {e}")
            return run

    def _publish(
        self, report: PipelineReport, runs: dict[str, StageRun], order: list[str], stage_id: str
    ) -> None:
        report.stages = [runs[s] for s in order]
        if self._on_stage_complete is None:
            return
        snapshot = report.model_copy(deep=True)
        self._on_stage_complete(snapshot, snapshot.get(stage_id))

    @staticmethod
    def _final_status(
        report: PipelineReport, by_id: dict[str, Stage], cancel: asyncio.Event
    ) -> PipelineStatus:
        unfinished = any(
            run.status in (StageStatus.PENDING, StageStatus.CANCELLED) for run in report.stages
        )
        if cancel.is_set() and unfinished:
            return PipelineStatus.ABORTED
        for run in report.stages:
            if by_id[run.stage_id].required and run.status in (
                StageStatus.FAILED,
                StageStatus.SKIPPED,
                StageStatus.PENDING,
                StageStatus.CANCELLED,
            ):
                return PipelineStatus.PARTIALLY_FAILED
        return PipelineStatus.COMPLETED
