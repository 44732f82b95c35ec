"""Tests for the Condition Poller."""

import asyncio

import pytest

from cluster_bringup.core.conditions import NodesReady
from cluster_bringup.core.poller import ConditionPoller, PollOutcome, run_or_cancel, sleep_or_cancel
from cluster_bringup.exceptions import OperationCancelledError, QueryError
from conftest import FakeCluster, make_node


class TestAwaitCondition:
    @pytest.mark.asyncio
    async def test_satisfied_on_first_poll(self, cluster: FakeCluster):
        cluster.state.nodes = [make_node("a")]
        result = await ConditionPoller(cluster).await_condition(NodesReady(), interval=0.01, timeout=1)
        assert result.outcome == PollOutcome.SATISFIED
        assert result.polls == 1
        assert result.satisfied

    @pytest.mark.asyncio
    async def test_satisfied_after_state_changes(self, cluster: FakeCluster):
        def become_ready(c: FakeCluster, count: int) -> None:
            if count == 3:
                c.state.nodes = [make_node("a")]

        cluster.on_query = become_ready
        result = await ConditionPoller(cluster).await_condition(NodesReady(), interval=0.01, timeout=1)
        assert result.outcome == PollOutcome.SATISFIED
        assert result.polls == 3

    @pytest.mark.asyncio
    async def test_each_poll_fetches_fresh_state(self, cluster: FakeCluster):
        result = await ConditionPoller(cluster).await_condition(NodesReady(), interval=0.01, timeout=0.05)
        assert result.outcome == PollOutcome.TIMED_OUT
        assert cluster.query_count == result.polls
        assert result.polls >= 2

    @pytest.mark.asyncio
    async def test_timeout_is_a_result(self, cluster: FakeCluster):
        cluster.state.nodes = [make_node("a", ready=False)]
        result = await ConditionPoller(cluster).await_condition(NodesReady(), interval=0.01, timeout=0.03)
        assert result.outcome == PollOutcome.TIMED_OUT
        assert result.snapshot is not None
        assert result.elapsed_seconds >= 0.025

    @pytest.mark.asyncio
    async def test_query_error_is_a_false_tick(self, cluster: FakeCluster):
        cluster.state.nodes = [make_node("a")]
        cluster.query_errors = [QueryError("connection refused")]
        result = await ConditionPoller(cluster).await_condition(NodesReady(), interval=0.01, timeout=1)
        assert result.outcome == PollOutcome.SATISFIED
        assert result.polls == 2
        assert result.last_error is None

    @pytest.mark.asyncio
    async def test_last_error_reported_on_timeout(self, cluster: FakeCluster):
        cluster.query_errors = [QueryError("connection refused") for _ in range(100)]
        result = await ConditionPoller(cluster).await_condition(NodesReady(), interval=0.01, timeout=0.03)
        assert result.outcome == PollOutcome.TIMED_OUT
        assert "connection refused" in result.last_error

    @pytest.mark.asyncio
    async def test_cancelled_before_first_poll(self, cluster: FakeCluster):
        cancel = asyncio.Event()
        cancel.set()
        result = await ConditionPoller(cluster).await_condition(
            NodesReady(), interval=0.01, timeout=1, cancel=cancel
        )
        assert result.outcome == PollOutcome.CANCELLED
        assert result.polls == 0

    @pytest.mark.asyncio
    async def test_cancel_interrupts_wait(self, cluster: FakeCluster):
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        result = await ConditionPoller(cluster).await_condition(
            NodesReady(), interval=5, timeout=30, cancel=cancel
        )
        assert result.outcome == PollOutcome.CANCELLED
        assert result.elapsed_seconds < 5


class TestSleepOrCancel:
    @pytest.mark.asyncio
    async def test_sleep_completes(self):
        assert await sleep_or_cancel(0.01, asyncio.Event()) is False

    @pytest.mark.asyncio
    async def test_sleep_without_event(self):
        assert await sleep_or_cancel(0, None) is False

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        cancel = asyncio.Event()
        cancel.set()
        assert await sleep_or_cancel(10, cancel) is True


class TestRunOrCancel:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def work() -> str:
            await asyncio.sleep(0.01)
            return "done"

        assert await run_or_cancel(work(), asyncio.Event()) == "done"
        assert await run_or_cancel(work(), None) == "done"

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        async def work() -> None:
            raise QueryError("boom")

        with pytest.raises(QueryError):
            await run_or_cancel(work(), asyncio.Event())

    @pytest.mark.asyncio
    async def test_already_cancelled_never_starts(self):
        started = []

        async def work() -> None:
            started.append(True)

        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(OperationCancelledError):
            await run_or_cancel(work(), cancel)
        assert started == []

    @pytest.mark.asyncio
    async def test_cancel_interrupts_work(self):
        finished = []

        async def work() -> None:
            try:
                await asyncio.sleep(10)
                finished.append(True)
            except asyncio.CancelledError:
                finished.append(False)
                raise

        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        with pytest.raises(OperationCancelledError):
            await run_or_cancel(work(), cancel)
        assert finished == [False]
