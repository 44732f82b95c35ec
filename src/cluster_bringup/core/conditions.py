"""Readiness conditions: pure predicates over a StateSnapshot.

Each condition declares the selectors it needs fetched and evaluates a
snapshot without side effects. Conditions are pydantic models with a `type`
discriminator so pipeline definition files can declare them directly.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from cluster_bringup.core.contracts import ResourceKind, Selector, StateSnapshot


class BaseCondition(BaseModel):
    """Common interface for all conditions."""

    model_config = ConfigDict(frozen=True)

    def selectors(self) -> list[Selector]:
        """Selectors whose state must be fetched to evaluate this condition."""
        raise NotImplementedError

    def evaluate(self, snapshot: StateSnapshot) -> bool:
        """Evaluate against a freshly fetched snapshot."""
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError


class NodesReady(BaseCondition):
    """At least `min_ready` nodes report Ready."""

    type: Literal["nodes_ready"] = "nodes_ready"
    min_ready: int = Field(default=1, ge=1)
    label_selector: Optional[str] = None

    def selectors(self) -> list[Selector]:
        return [Selector(kind=ResourceKind.NODES, label_selector=self.label_selector)]

    def evaluate(self, snapshot: StateSnapshot) -> bool:
        nodes = self.selectors()[0].restrict(snapshot).nodes
        return sum(1 for n in nodes if n.ready) >= self.min_ready

    def describe(self) -> str:
        return f"at least {self.min_ready} node(s) Ready"


class NoTaint(BaseCondition):
    """No node carries the taint key."""

    type: Literal["no_taint"] = "no_taint"
    key: str
    label_selector: Optional[str] = None

    def selectors(self) -> list[Selector]:
        return [Selector(kind=ResourceKind.NODES, label_selector=self.label_selector)]

    def evaluate(self, snapshot: StateSnapshot) -> bool:
        nodes = self.selectors()[0].restrict(snapshot).nodes
        return not any(n.has_taint(self.key) for n in nodes)

    def describe(self) -> str:
        return f"no node carries taint {self.key}"


class PodsReady(BaseCondition):
    """Pods matching the selector are Ready.

    With `min_ready` unset every matching pod must be Ready (and at least one
    must exist). With `min_ready` set, that many Ready pods suffice; this is
    the usual shape of a graceful-degradation check.
    """

    type: Literal["pods_ready"] = "pods_ready"
    namespace: str
    label_selector: Optional[str] = None
    min_ready: Optional[int] = Field(default=None, ge=1)

    def selectors(self) -> list[Selector]:
        return [
            Selector(
                kind=ResourceKind.PODS,
                namespace=self.namespace,
                label_selector=self.label_selector,
            )
        ]

    def evaluate(self, snapshot: StateSnapshot) -> bool:
        pods = [
            p
            for p in self.selectors()[0].restrict(snapshot).pods
            if p.phase != "Succeeded"
        ]
        ready = sum(1 for p in pods if p.ready)
        if self.min_ready is None:
            return bool(pods) and ready == len(pods)
        return ready >= self.min_ready

    def describe(self) -> str:
        scope = f"{self.namespace}" + (f" ({self.label_selector})" if self.label_selector else "")
        if self.min_ready is None:
            return f"all pods Ready in {scope}"
        return f"at least {self.min_ready} pod(s) Ready in {scope}"


class NoPodsWaiting(BaseCondition):
    """No container is waiting with the given reason."""

    type: Literal["no_pods_waiting"] = "no_pods_waiting"
    reason: str
    namespace: Optional[str] = None
    label_selector: Optional[str] = None

    def selectors(self) -> list[Selector]:
        return [
            Selector(
                kind=ResourceKind.PODS,
                namespace=self.namespace,
                label_selector=self.label_selector,
            )
        ]

    def evaluate(self, snapshot: StateSnapshot) -> bool:
        pods = self.selectors()[0].restrict(snapshot).pods
        return not any(self.reason in p.waiting_reasons for p in pods)

    def describe(self) -> str:
        return f"no pod waiting with {self.reason}"


class LoadBalancerAssigned(BaseCondition):
    """A LoadBalancer service has a public IP or hostname."""

    type: Literal["load_balancer_assigned"] = "load_balancer_assigned"
    namespace: str
    service: str

    def selectors(self) -> list[Selector]:
        return [Selector(kind=ResourceKind.SERVICES, namespace=self.namespace, name=self.service)]

    def evaluate(self, snapshot: StateSnapshot) -> bool:
        services = self.selectors()[0].restrict(snapshot).services
        return any(s.ingress for s in services)

    def describe(self) -> str:
        return f"service {self.namespace}/{self.service} has an external address"


class EndpointsReady(BaseCondition):
    """A service has ready endpoint addresses (e.g. an admission webhook is serving)."""

    type: Literal["endpoints_ready"] = "endpoints_ready"
    namespace: str
    service: str
    min_ready: int = Field(default=1, ge=1)

    def selectors(self) -> list[Selector]:
        return [Selector(kind=ResourceKind.ENDPOINTS, namespace=self.namespace, name=self.service)]

    def evaluate(self, snapshot: StateSnapshot) -> bool:
        endpoints = self.selectors()[0].restrict(snapshot).endpoints
        return any(e.ready_addresses >= self.min_ready for e in endpoints)

    def describe(self) -> str:
        return f"service {self.namespace}/{self.service} has {self.min_ready} ready endpoint(s)"


class SecretPresent(BaseCondition):
    """A secret exists (and holds the key, when one is named)."""

    type: Literal["secret_present"] = "secret_present"
    namespace: str
    name: str
    key: Optional[str] = None

    def selectors(self) -> list[Selector]:
        return [Selector(kind=ResourceKind.SECRETS, namespace=self.namespace, name=self.name)]

    def evaluate(self, snapshot: StateSnapshot) -> bool:
        secrets = self.selectors()[0].restrict(snapshot).secrets
        if self.key is None:
            return bool(secrets)
        return any(self.key in s.keys for s in secrets)

    def describe(self) -> str:
        suffix = f"[{self.key}]" if self.key else ""
        return f"secret {self.namespace}/{self.name}{suffix} exists"


class AllOf(BaseCondition):
    """Every nested condition holds."""

    type: Literal["all_of"] = "all_of"
    conditions: list["Condition"] = Field(min_length=1)

    def selectors(self) -> list[Selector]:
        seen: list[Selector] = []
        for condition in self.conditions:
            for selector in condition.selectors():
                if selector not in seen:
                    seen.append(selector)
        return seen

    def evaluate(self, snapshot: StateSnapshot) -> bool:
        return all(c.evaluate(snapshot) for c in self.conditions)

    def describe(self) -> str:
        return " and ".join(c.describe() for c in self.conditions)


Condition = Annotated[
    Union[
        NodesReady,
        NoTaint,
        PodsReady,
        NoPodsWaiting,
        LoadBalancerAssigned,
        EndpointsReady,
        SecretPresent,
        AllOf,
    ],
    Field(discriminator="type"),
]

AllOf.model_rebuild()
