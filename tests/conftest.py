"""Shared test fixtures for cluster bring-up tests.

Provides an in-memory FakeCluster that satisfies the apply, query and
remediation interfaces, plus builders for snapshot objects and stages with
timings small enough for unit tests.
"""

from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import pytest

from cluster_bringup.config import Settings
from cluster_bringup.core.contracts import (
    ContainerState,
    EndpointsState,
    NodeState,
    PodState,
    ResourceDescriptor,
    SecretReference,
    SecretState,
    Selector,
    ServiceState,
    StateSnapshot,
    Taint,
)
from cluster_bringup.core.remediation import RemediationEngine
from cluster_bringup.core.stage import Stage
from cluster_bringup.core.state import RetryPolicy
from cluster_bringup.exceptions import SecretNotFoundError

CONTROL_PLANE_TAINT = "node-role.kubernetes.io/control-plane"


# ---------------------------------------------------------------------------
# Snapshot builders
# ---------------------------------------------------------------------------
def make_node(name: str, ready: bool = True, taints: Sequence[str] = ()) -> NodeState:
    return NodeState(name=name, ready=ready, taints=[Taint(key=k) for k in taints])


def make_pod(
    name: str,
    namespace: str = "default",
    ready: bool = True,
    labels: Optional[dict[str, str]] = None,
    phase: Optional[str] = None,
    waiting_reason: Optional[str] = None,
    image: str = "nginx:1.25",
    owner: Optional[str] = None,
    container: str = "main",
    unschedulable: Optional[str] = None,
) -> PodState:
    return PodState(
        name=name,
        namespace=namespace,
        phase=phase or ("Running" if ready else "Pending"),
        ready=ready,
        labels=labels or {},
        containers=[
            ContainerState(name=container, image=image, ready=ready, waiting_reason=waiting_reason)
        ],
        owner_kind="Deployment" if owner else None,
        owner_name=owner,
        unschedulable_message=unschedulable,
    )


def make_stage(stage_id: str, **kwargs: Any) -> Stage:
    """Stage with unit-test timings unless overridden."""
    kwargs.setdefault("timeout_seconds", 0.05)
    kwargs.setdefault("poll_interval_seconds", 0.01)
    kwargs.setdefault("retry", RetryPolicy(max_attempts=3, backoff_seconds=0))
    if "depends_on" in kwargs:
        kwargs["depends_on"] = tuple(kwargs["depends_on"])
    return Stage(id=stage_id, **kwargs)


def untaint_message(key: str = CONTROL_PLANE_TAINT) -> str:
    return f"0/3 nodes are available: 3 node(s) had untolerated taint {{{key}: }}. preemption: 0/3 nodes are available"


# ---------------------------------------------------------------------------
# Fake cluster
# ---------------------------------------------------------------------------
class FakeCluster:
    """In-memory cluster with scripted behaviour.

    Hooks let a test change state in reaction to what the code under test
    does: `on_apply` runs after each apply (and may raise), `on_query` runs
    before each query with the running query count.
    """

    def __init__(self, state: Optional[StateSnapshot] = None):
        self.state = state or StateSnapshot()
        self.applied: list[ResourceDescriptor] = []
        self.commands: list[list[str]] = []
        self.removed_taints: list[str] = []
        self.image_updates: list[tuple[str, str, str, str, str]] = []
        self.query_count = 0
        self.query_errors: list[Exception] = []
        self.command_errors: list[Exception] = []
        self.secret_values: dict[tuple[str, str, str], str] = {}
        self.on_apply: Optional[Callable[["FakeCluster", ResourceDescriptor], None]] = None
        self.on_query: Optional[Callable[["FakeCluster", int], None]] = None
        self.after_remove_taint: Optional[Callable[["FakeCluster", str], None]] = None

    # StateQuery
    async def query(self, selector: Selector) -> StateSnapshot:
        self.query_count += 1
        if self.on_query is not None:
            self.on_query(self, self.query_count)
        if self.query_errors:
            raise self.query_errors.pop(0)
        return selector.restrict(self.state.model_copy(deep=True))

    # ResourceApplier
    async def apply(self, descriptor: ResourceDescriptor) -> None:
        self.applied.append(descriptor)
        if self.on_apply is not None:
            self.on_apply(self, descriptor)

    # Remediation
    async def remove_taint(self, key: str) -> list[str]:
        self.removed_taints.append(key)
        untainted = []
        for node in self.state.nodes:
            if node.has_taint(key):
                node.taints = [t for t in node.taints if t.key != key]
                untainted.append(node.name)
        if self.after_remove_taint is not None:
            self.after_remove_taint(self, key)
        return untainted

    async def set_image(
        self, namespace: str, workload_kind: str, workload: str, container: str, image: str
    ) -> None:
        self.image_updates.append((namespace, workload_kind, workload, container, image))
        for pod in self.state.pods:
            if pod.namespace != namespace or pod.owner_name != workload:
                continue
            for c in pod.containers:
                if c.name == container:
                    c.image = image
                    c.waiting_reason = None
                    c.ready = True
            pod.ready = all(c.ready for c in pod.containers)
            pod.phase = "Running" if pod.ready else pod.phase

    # Secrets
    def add_secret(self, namespace: str, name: str, key: str, value: str) -> None:
        self.state.secrets.append(SecretState(name=name, namespace=namespace, keys=[key]))
        self.secret_values[(namespace, name, key)] = value

    async def read_secret(self, ref: SecretReference) -> bytes:
        try:
            return self.secret_values[(ref.namespace, ref.name, ref.key)].encode()
        except KeyError:
            raise SecretNotFoundError(f"Secret {ref.describe()} not found")

    # Commands
    async def run_command(
        self, argv: Sequence[str], cwd: Optional[str] = None, timeout: Optional[float] = None
    ) -> None:
        self.commands.append(list(argv))
        if self.command_errors:
            raise self.command_errors.pop(0)

    # Convenience
    def set_endpoints(self, namespace: str, name: str, ready: int) -> None:
        self.state.endpoints = [
            e for e in self.state.endpoints if not (e.namespace == namespace and e.name == name)
        ]
        self.state.endpoints.append(EndpointsState(name=name, namespace=namespace, ready_addresses=ready))

    def set_load_balancer(self, namespace: str, name: str, address: Optional[str]) -> None:
        self.state.services = [
            s for s in self.state.services if not (s.namespace == namespace and s.name == name)
        ]
        self.state.services.append(
            ServiceState(
                name=name,
                namespace=namespace,
                type="LoadBalancer",
                ingress=[address] if address else [],
            )
        )


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def empty_engine() -> RemediationEngine:
    return RemediationEngine()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings with unit-test timings and an isolated report directory."""
    return Settings(
        poll_interval_seconds=0.01,
        default_stage_timeout_seconds=0.1,
        default_max_attempts=3,
        default_backoff_seconds=0,
        max_concurrency=4,
        report_dir=str(tmp_path / "runs"),
        kubectl_retry_wait_seconds=0,
        registry_mirrors="",
    )
