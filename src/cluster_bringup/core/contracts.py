"""Contract definitions for the boundary between the orchestration core and the cluster.

The core never talks to kubectl, Ansible or a terminal directly. It sees:
- Selector / StateSnapshot: what it asks for and what it gets back
- ResourceDescriptor: what it asks to be applied
- SecretReference: which generated credential to read
- ResourceApplier / StateQuery / Operator: the protocols adapters satisfy
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def parse_label_selector(selector: Optional[str]) -> dict[str, str]:
    """Parse an equality-based label selector ("app=web,tier=front").

    Bare keys ("app") match any value and are stored with an empty string.
    """
    if not selector:
        return {}
    parsed: dict[str, str] = {}
    for term in selector.split(","):
        term = term.strip()
        if not term:
            continue
        if "==" in term:
            key, value = term.split("==", 1)
        elif "=" in term:
            key, value = term.split("=", 1)
        else:
            key, value = term, ""
        parsed[key.strip()] = value.strip()
    return parsed


def labels_match(labels: dict[str, str], selector: Optional[str]) -> bool:
    """Check whether a label set satisfies an equality-based selector."""
    for key, value in parse_label_selector(selector).items():
        if key not in labels:
            return False
        if value and labels[key] != value:
            return False
    return True


# =============================================================================
# Selectors
# =============================================================================


class ResourceKind(str, Enum):
    """Kinds of external state the core can ask for."""

    NODES = "nodes"
    PODS = "pods"
    SERVICES = "services"
    ENDPOINTS = "endpoints"
    SECRETS = "secrets"


class Selector(BaseModel):
    """Which slice of external state to fetch."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    namespace: Optional[str] = Field(default=None, description="None means all namespaces")
    label_selector: Optional[str] = Field(default=None, description="Equality-based label selector")
    name: Optional[str] = Field(default=None, description="Single object name")

    def describe(self) -> str:
        """Human-readable form used in logs and diagnostics."""
        parts = [self.kind.value]
        if self.name:
            parts.append(self.name)
        parts.append(f"-n {self.namespace}" if self.namespace else "-A")
        if self.label_selector:
            parts.append(f"-l {self.label_selector}")
        return " ".join(parts)

    def _matches(self, namespace: Optional[str], name: str, labels: dict[str, str]) -> bool:
        if self.namespace and namespace != self.namespace:
            return False
        if self.name and name != self.name:
            return False
        return labels_match(labels, self.label_selector)

    def restrict(self, snapshot: "StateSnapshot") -> "StateSnapshot":
        """Return only the part of a snapshot this selector covers."""
        restricted = StateSnapshot(fetched_at=snapshot.fetched_at)
        if self.kind == ResourceKind.NODES:
            restricted.nodes = [
                n for n in snapshot.nodes if self._matches(None, n.name, n.labels)
            ]
        elif self.kind == ResourceKind.PODS:
            restricted.pods = [
                p for p in snapshot.pods if self._matches(p.namespace, p.name, p.labels)
            ]
        elif self.kind == ResourceKind.SERVICES:
            restricted.services = [
                s for s in snapshot.services if self._matches(s.namespace, s.name, s.labels)
            ]
        elif self.kind == ResourceKind.ENDPOINTS:
            restricted.endpoints = [
                e for e in snapshot.endpoints if self._matches(e.namespace, e.name, {})
            ]
        elif self.kind == ResourceKind.SECRETS:
            restricted.secrets = [
                s for s in snapshot.secrets if self._matches(s.namespace, s.name, {})
            ]
        return restricted


# =============================================================================
# State snapshots
# =============================================================================


class Taint(BaseModel):
    """A node taint."""

    key: str
    value: Optional[str] = None
    effect: str = "NoSchedule"


class NodeState(BaseModel):
    """Observed state of a node."""

    name: str
    ready: bool = False
    labels: dict[str, str] = Field(default_factory=dict)
    taints: list[Taint] = Field(default_factory=list)

    def has_taint(self, key: str) -> bool:
        return any(t.key == key for t in self.taints)


class ContainerState(BaseModel):
    """Observed state of a container inside a pod."""

    name: str
    image: str = ""
    ready: bool = False
    restart_count: int = 0
    waiting_reason: Optional[str] = None
    waiting_message: Optional[str] = None


class PodState(BaseModel):
    """Observed state of a pod."""

    name: str
    namespace: str = "default"
    phase: str = "Pending"
    ready: bool = False
    labels: dict[str, str] = Field(default_factory=dict)
    containers: list[ContainerState] = Field(default_factory=list)
    owner_kind: Optional[str] = Field(default=None, description="Top-level owner kind, e.g. Deployment")
    owner_name: Optional[str] = None
    unschedulable_message: Optional[str] = Field(
        default=None, description="PodScheduled=False message from the scheduler"
    )

    @property
    def waiting_reasons(self) -> list[str]:
        return [c.waiting_reason for c in self.containers if c.waiting_reason]


class ServiceState(BaseModel):
    """Observed state of a service."""

    name: str
    namespace: str = "default"
    type: str = "ClusterIP"
    labels: dict[str, str] = Field(default_factory=dict)
    ingress: list[str] = Field(default_factory=list, description="Load-balancer IPs or hostnames")
    node_ports: list[int] = Field(default_factory=list)


class EndpointsState(BaseModel):
    """Observed endpoints of a service."""

    name: str
    namespace: str = "default"
    ready_addresses: int = 0
    not_ready_addresses: int = 0


class SecretState(BaseModel):
    """Observed secret. Only key names are kept, never values."""

    name: str
    namespace: str = "default"
    keys: list[str] = Field(default_factory=list)


class StateSnapshot(BaseModel):
    """A consistent read of external state."""

    fetched_at: datetime = Field(default_factory=utcnow)
    nodes: list[NodeState] = Field(default_factory=list)
    pods: list[PodState] = Field(default_factory=list)
    services: list[ServiceState] = Field(default_factory=list)
    endpoints: list[EndpointsState] = Field(default_factory=list)
    secrets: list[SecretState] = Field(default_factory=list)

    def merge(self, other: "StateSnapshot") -> "StateSnapshot":
        """Combine two snapshots, keeping one copy of each object and the older fetch time."""

        def union(left: list, right: list) -> list:
            seen = {(getattr(o, "namespace", None), o.name) for o in left}
            merged = list(left)
            for obj in right:
                key = (getattr(obj, "namespace", None), obj.name)
                if key not in seen:
                    seen.add(key)
                    merged.append(obj)
            return merged

        return StateSnapshot(
            fetched_at=min(self.fetched_at, other.fetched_at),
            nodes=union(self.nodes, other.nodes),
            pods=union(self.pods, other.pods),
            services=union(self.services, other.services),
            endpoints=union(self.endpoints, other.endpoints),
            secrets=union(self.secrets, other.secrets),
        )

    def summary(self, limit: int = 10) -> str:
        """One-line-per-problem summary used in reports."""
        lines: list[str] = []
        if self.nodes:
            ready = sum(1 for n in self.nodes if n.ready)
            lines.append(f"nodes ready {ready}/{len(self.nodes)}")
            for node in self.nodes:
                if node.taints:
                    keys = ", ".join(t.key for t in node.taints)
                    lines.append(f"node {node.name} taints: {keys}")
        if self.pods:
            ready = sum(1 for p in self.pods if p.ready)
            lines.append(f"pods ready {ready}/{len(self.pods)}")
            for pod in self.pods:
                if pod.ready:
                    continue
                detail = ", ".join(pod.waiting_reasons) or pod.unschedulable_message or pod.phase
                lines.append(f"pod {pod.namespace}/{pod.name}: {detail}")
        for svc in self.services:
            if svc.type == "LoadBalancer":
                lines.append(f"service {svc.namespace}/{svc.name} ingress: {', '.join(svc.ingress) or '<pending>'}")
        for ep in self.endpoints:
            lines.append(f"endpoints {ep.namespace}/{ep.name}: {ep.ready_addresses} ready")
        if len(lines) > limit:
            lines = lines[:limit] + [f"... {len(lines) - limit} more"]
        return "; ".join(lines)


# =============================================================================
# Apply and secrets
# =============================================================================


class ResourceDescriptor(BaseModel):
    """A declarative resource to be ensured on the cluster.

    Exactly one of `source` (file path or URL) or `documents` (inline
    manifests) is used.
    """

    name: str = Field(description="Short name used in logs")
    source: Optional[str] = Field(default=None, description="Manifest path or URL")
    documents: list[dict[str, Any]] = Field(default_factory=list, description="Inline manifest documents")
    namespace: Optional[str] = Field(default=None, description="Namespace passed to kubectl apply")
    server_side: bool = Field(default=False, description="Use server-side apply (large CRDs)")


class SecretReference(BaseModel):
    """Pointer to a key inside a Kubernetes secret."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    name: str
    key: str

    def describe(self) -> str:
        return f"{self.namespace}/{self.name}[{self.key}]"


# =============================================================================
# Protocols satisfied by adapters
# =============================================================================


class ResourceApplier(Protocol):
    """Idempotent creation/update of an external declarative resource."""

    async def apply(self, descriptor: ResourceDescriptor) -> None:
        """Apply the resource. Raises ApplyRejectedError or ApplyError."""
        ...


class StateQuery(Protocol):
    """Read current external state."""

    async def query(self, selector: Selector) -> StateSnapshot:
        """Return a consistent snapshot for the selector. Raises QueryError."""
        ...


class Operator(Protocol):
    """The sole sanctioned manual-intervention point."""

    async def prompt_and_wait(self, instructions: str) -> None:
        """Show instructions and return once the operator acknowledges."""
        ...

    async def reveal(self, label: str, value: str) -> None:
        """Show a generated credential to the operator without logging it."""
        ...
