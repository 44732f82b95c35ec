"""Stage Executor: runs one stage and classifies the outcome.

    RUNNING      apply (idempotent; rejected manifests fail immediately)
    WAITING      poll the readiness condition with the stage timeout
    REMEDIATING  on timeout, diagnose, classify, apply the corrective action,
                 back off, and wait again while the retry budget lasts
    otherwise    graceful-degradation check, then SUCCEEDED (degraded) or FAILED

Never raises for stage-level problems; everything is recorded on the StageRun.
"""

import asyncio
import logging
from typing import Optional

from cluster_bringup.core.contracts import StateQuery, StateSnapshot
from cluster_bringup.core.poller import (
    ConditionPoller,
    PollOutcome,
    fetch_state,
    run_or_cancel,
    sleep_or_cancel,
)
from cluster_bringup.core.stage import Stage
from cluster_bringup.core.state import (
    DiagnosticSnapshot,
    ErrorKind,
    RemediationAttempt,
    RemediationOutcome,
    StageRun,
    StageStatus,
)
from cluster_bringup.exceptions import (
    ApplyError,
    ApplyRejectedError,
    BringupError,
    OperationCancelledError,
    QueryError,
)

logger = logging.getLogger(__name__)


class StageExecutor:
    """Runs stages against a cluster through the query interface."""

    def __init__(self, query: StateQuery, poller: Optional[ConditionPoller] = None):
        self._query = query
        self._poller = poller or ConditionPoller(query)

    async def run(self, stage: Stage, cancel: Optional[asyncio.Event] = None) -> StageRun:
        """Execute a stage to a terminal status.

        Args:
            stage: Stage to run
            cancel: Operator cancellation signal

        Returns:
            Finalized StageRun (SUCCEEDED, FAILED or CANCELLED)
        """
        run = StageRun(stage_id=stage.id)
        run.transition(StageStatus.RUNNING)
        logger.info(f"Stage {stage.id}: starting")

        if cancel is not None and cancel.is_set():
            run.fail(ErrorKind.CANCELLED, "cancelled before apply")
            return run

        try:
            pending_error = await self._apply(stage, cancel)
        except ApplyRejectedError as e:
            return await self._reject(stage, run, e)
        except OperationCancelledError:
            return self._cancelled(stage, run, "cancelled during apply")
        applied = pending_error is None

        while True:
            run.attempts += 1

            if pending_error is None:
                if cancel is not None and cancel.is_set():
                    return self._cancelled(stage, run, "cancelled after apply")
                run.transition(StageStatus.WAITING)
                if stage.ready is None:
                    run.transition(StageStatus.SUCCEEDED)
                    logger.info(f"Stage {stage.id}: applied")
                    return run

                poll = await self._poller.await_condition(
                    stage.ready,
                    interval=stage.poll_interval_seconds,
                    timeout=stage.timeout_seconds,
                    cancel=cancel,
                )
                if poll.outcome == PollOutcome.SATISFIED:
                    run.transition(StageStatus.SUCCEEDED)
                    logger.info(f"Stage {stage.id}: ready after {run.attempts} attempt(s)")
                    return run
                if poll.outcome == PollOutcome.CANCELLED:
                    run.fail(ErrorKind.CANCELLED, "cancelled while waiting")
                    return run
                diagnostic = await self._diagnose(
                    stage, unmet=stage.ready.describe(), error=poll.last_error
                )
            else:
                diagnostic = await self._diagnose(stage, error=pending_error)

            signature = stage.remediation.classify(diagnostic)
            if signature is None:
                return await self._finish_unresolved(
                    stage,
                    run,
                    diagnostic,
                    ErrorKind.REMEDIATION_UNAVAILABLE,
                    "no known failure signature; manual diagnosis required",
                    applied,
                )
            if run.attempts >= stage.retry.max_attempts:
                return await self._finish_unresolved(
                    stage,
                    run,
                    diagnostic,
                    ErrorKind.TIMEOUT,
                    f"not ready after {run.attempts} attempt(s); last signature {signature.describe()}",
                    applied,
                )

            run.transition(StageStatus.REMEDIATING)
            action_error: Optional[str] = None
            # Corrective actions complete even if the operator cancels meanwhile.
            try:
                outcome = await asyncio.shield(stage.remediation.remediate(signature))
            except BringupError as e:
                logger.warning(f"Stage {stage.id}: corrective action for {signature.describe()} failed: {e}")
                outcome = RemediationOutcome.UNAVAILABLE
                action_error = str(e)
            run.remediations.append(
                RemediationAttempt(
                    attempt=run.attempts,
                    signature=signature,
                    outcome=outcome,
                    action=stage.remediation.describe_action(signature),
                    error=action_error,
                )
            )
            if outcome == RemediationOutcome.UNAVAILABLE:
                if action_error:
                    message = f"corrective action for {signature.describe()} failed: {action_error}"
                else:
                    message = f"no corrective action available for {signature.describe()}"
                return await self._finish_unresolved(
                    stage, run, diagnostic, ErrorKind.REMEDIATION_UNAVAILABLE, message, applied
                )

            logger.info(
                f"Stage {stage.id}: remediated {signature.describe()}, "
                f"attempt {run.attempts + 1}/{stage.retry.max_attempts}"
            )
            if await sleep_or_cancel(stage.retry.delay(run.attempts), cancel):
                run.fail(ErrorKind.CANCELLED, "cancelled during backoff")
                return run
            run.transition(StageStatus.WAITING)

            if pending_error is not None:
                try:
                    pending_error = await self._apply(stage, cancel)
                except ApplyRejectedError as e:
                    return await self._reject(stage, run, e)
                except OperationCancelledError:
                    return self._cancelled(stage, run, "cancelled during apply")
                applied = pending_error is None

    async def _apply(self, stage: Stage, cancel: Optional[asyncio.Event]) -> Optional[str]:
        """Run the apply action. Returns error text for failures worth diagnosing.

        Raises:
            ApplyRejectedError: the resource was rejected outright
            OperationCancelledError: cancellation interrupted the action
        """
        try:
            await run_or_cancel(stage.apply(), cancel)
        except (ApplyRejectedError, OperationCancelledError):
            raise
        except ApplyError as e:
            logger.warning(f"Stage {stage.id}: apply failed: {e}")
            return "\n".join(part for part in (str(e), e.output) if part)
        except BringupError as e:
            logger.warning(f"Stage {stage.id}: apply failed: {e}")
            return str(e)
        except Exception as e:
            logger.error(f"Stage {stage.id}: unexpected apply error: {e}", exc_info=True)
            return f"Unexpected error: {e}"
        return None

    def _cancelled(self, stage: Stage, run: StageRun, reason: str) -> StageRun:
        logger.warning(f"Stage {stage.id}: {reason}")
        run.fail(ErrorKind.CANCELLED, reason)
        return run

    async def _reject(self, stage: Stage, run: StageRun, error: ApplyRejectedError) -> StageRun:
        logger.error(f"Stage {stage.id}: apply rejected: {error}")
        detail = "\n".join(part for part in (str(error), error.output) if part)
        diagnostic = DiagnosticSnapshot(stage_id=stage.id, error=detail)
        run.fail(ErrorKind.APPLY_REJECTED, f"apply rejected: {error}", diagnostic)
        return run

    async def _diagnose(
        self, stage: Stage, unmet: Optional[str] = None, error: Optional[str] = None
    ) -> DiagnosticSnapshot:
        """Capture fresh state relevant to the stage."""
        try:
            state = await fetch_state(self._query, stage.diagnostic_selectors())
        except QueryError as e:
            state = StateSnapshot()
            error = f"{error}; {e}" if error else f"diagnostics unavailable: {e}"
        return DiagnosticSnapshot(stage_id=stage.id, unmet_condition=unmet, error=error, state=state)

    async def _finish_unresolved(
        self,
        stage: Stage,
        run: StageRun,
        diagnostic: DiagnosticSnapshot,
        kind: ErrorKind,
        message: str,
        applied: bool,
    ) -> StageRun:
        """Graceful-degradation check, then SUCCEEDED (degraded) or FAILED."""
        if applied and stage.degraded is not None:
            try:
                snapshot = await fetch_state(self._query, stage.degraded.selectors())
            except QueryError as e:
                logger.warning(f"Stage {stage.id}: degradation check could not read state: {e}")
                snapshot = None
            if snapshot is not None and stage.degraded.evaluate(snapshot):
                run.degraded = True
                run.note = f"degraded: {stage.degraded.describe()} ({message})"
                run.diagnostics = diagnostic
                run.diagnostic_summary = diagnostic.summary()
                run.transition(StageStatus.SUCCEEDED)
                logger.warning(f"Stage {stage.id}: succeeded degraded, {stage.degraded.describe()}")
                return run

        logger.error(f"Stage {stage.id}: failed ({kind.value}): {message}")
        run.fail(kind, message, diagnostic)
        return run
