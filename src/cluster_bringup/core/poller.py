"""Condition Poller: the only place the orchestration core blocks.

Evaluates a condition against freshly fetched state on an interval until it
holds, the deadline passes, or the cancellation event is set. Timing out is a
result, not an exception; the caller decides whether it is fatal.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Optional, TypeVar

from pydantic import BaseModel

from cluster_bringup.core.conditions import BaseCondition
from cluster_bringup.core.contracts import Selector, StateQuery, StateSnapshot
from cluster_bringup.exceptions import OperationCancelledError, QueryError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollOutcome(str, Enum):
    """How a wait ended."""

    SATISFIED = "satisfied"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class PollResult(BaseModel):
    """Result of waiting on a condition."""

    outcome: PollOutcome
    polls: int = 0
    elapsed_seconds: float = 0.0
    snapshot: Optional[StateSnapshot] = None
    last_error: Optional[str] = None

    @property
    def satisfied(self) -> bool:
        return self.outcome == PollOutcome.SATISFIED


async def sleep_or_cancel(delay: float, cancel: Optional[asyncio.Event]) -> bool:
    """Sleep for `delay` seconds. Returns True if cancellation interrupted the sleep."""
    if cancel is None:
        await asyncio.sleep(delay)
        return False
    if cancel.is_set():
        return True
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


async def run_or_cancel(awaitable: Awaitable[T], cancel: Optional[asyncio.Event]) -> T:
    """Await `awaitable` unless cancellation comes first.

    On cancellation the underlying task is cancelled and awaited so that
    child processes and threads get a chance to clean up.

    Raises:
        OperationCancelledError: the cancellation event was set first
    """
    if cancel is None:
        return await awaitable
    if cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelledError("cancelled before start")

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work.done():
        return work.result()
    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    raise OperationCancelledError("cancelled while in progress")


async def fetch_state(query: StateQuery, selectors: list[Selector]) -> StateSnapshot:
    """Fetch and merge fresh state for every selector."""
    snapshot = StateSnapshot()
    for selector in selectors:
        snapshot = snapshot.merge(await query.query(selector))
    return snapshot


class ConditionPoller:
    """Blocking-wait primitive shared by every stage."""

    def __init__(self, query: StateQuery):
        self._query = query

    async def await_condition(
        self,
        condition: BaseCondition,
        interval: float,
        timeout: float,
        cancel: Optional[asyncio.Event] = None,
    ) -> PollResult:
        """Wait until the condition holds.

        Args:
            condition: Side-effect-free predicate to evaluate
            interval: Seconds between polls
            timeout: Wall-clock budget in seconds
            cancel: Event that aborts the wait when set

        Returns:
            PollResult with SATISFIED, TIMED_OUT or CANCELLED
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout
        selectors = condition.selectors()
        polls = 0
        snapshot: Optional[StateSnapshot] = None
        last_error: Optional[str] = None

        def result(outcome: PollOutcome) -> PollResult:
            return PollResult(
                outcome=outcome,
                polls=polls,
                elapsed_seconds=loop.time() - started,
                snapshot=snapshot,
                last_error=last_error,
            )

        while True:
            if cancel is not None and cancel.is_set():
                return result(PollOutcome.CANCELLED)

            polls += 1
            try:
                snapshot = await fetch_state(self._query, selectors)
            except QueryError as e:
                # The cluster API is eventually consistent; a failed read is a false tick.
                last_error = str(e)
                logger.warning(f"Poll {polls} for '{condition.describe()}' could not read state: {e}")
            else:
                last_error = None
                if condition.evaluate(snapshot):
                    logger.debug(f"Condition met after {polls} poll(s): {condition.describe()}")
                    return result(PollOutcome.SATISFIED)

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.info(f"Timed out after {polls} poll(s) waiting for: {condition.describe()}")
                return result(PollOutcome.TIMED_OUT)

            if await sleep_or_cancel(min(interval, remaining), cancel):
                return result(PollOutcome.CANCELLED)
