"""Parse `kubectl get -o json` output into snapshot models.

Secrets are reduced to their key names; values never enter a snapshot.
"""

from typing import Any, Optional

from cluster_bringup.core.contracts import (
    ContainerState,
    EndpointsState,
    NodeState,
    PodState,
    ResourceKind,
    SecretState,
    ServiceState,
    StateSnapshot,
    Taint,
)


def _items(data: dict[str, Any]) -> list[dict[str, Any]]:
    """Accept both List objects and a single object (kubectl get <kind> <name>)."""
    if "items" in data:
        return data.get("items") or []
    if data.get("metadata"):
        return [data]
    return []


def _condition(conditions: list[dict[str, Any]], condition_type: str) -> Optional[dict[str, Any]]:
    for cond in conditions or []:
        if cond.get("type") == condition_type:
            return cond
    return None


def parse_node(item: dict[str, Any]) -> NodeState:
    metadata = item.get("metadata", {})
    ready = _condition(item.get("status", {}).get("conditions", []), "Ready")
    taints = [
        Taint(key=t["key"], value=t.get("value"), effect=t.get("effect", "NoSchedule"))
        for t in item.get("spec", {}).get("taints", []) or []
        if t.get("key")
    ]
    return NodeState(
        name=metadata.get("name", ""),
        ready=bool(ready and ready.get("status") == "True"),
        labels=metadata.get("labels", {}) or {},
        taints=taints,
    )


def _owner(metadata: dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
    """Resolve the top-level owner; ReplicaSets created by a Deployment map to the Deployment."""
    refs = metadata.get("ownerReferences") or []
    if not refs:
        return None, None
    ref = next((r for r in refs if r.get("controller")), refs[0])
    kind, name = ref.get("kind"), ref.get("name")
    if kind == "ReplicaSet" and name and "-" in name:
        return "Deployment", name.rsplit("-", 1)[0]
    return kind, name


def parse_pod(item: dict[str, Any]) -> PodState:
    metadata = item.get("metadata", {})
    status = item.get("status", {})
    conditions = status.get("conditions", []) or []

    statuses = {c.get("name"): c for c in status.get("containerStatuses", []) or []}
    containers: list[ContainerState] = []
    for spec in item.get("spec", {}).get("containers", []) or []:
        observed = statuses.pop(spec.get("name"), {})
        waiting = (observed.get("state") or {}).get("waiting") or {}
        containers.append(
            ContainerState(
                name=spec.get("name", ""),
                # The declared image; status reports a resolved digest once pulled.
                image=spec.get("image") or observed.get("image", ""),
                ready=bool(observed.get("ready", False)),
                restart_count=observed.get("restartCount", 0),
                waiting_reason=waiting.get("reason"),
                waiting_message=waiting.get("message"),
            )
        )
    for name, observed in statuses.items():
        waiting = (observed.get("state") or {}).get("waiting") or {}
        containers.append(
            ContainerState(
                name=name or "",
                image=observed.get("image", ""),
                ready=bool(observed.get("ready", False)),
                restart_count=observed.get("restartCount", 0),
                waiting_reason=waiting.get("reason"),
                waiting_message=waiting.get("message"),
            )
        )

    ready = _condition(conditions, "Ready")
    scheduled = _condition(conditions, "PodScheduled")
    unschedulable = None
    if scheduled and scheduled.get("status") == "False":
        unschedulable = scheduled.get("message") or scheduled.get("reason")

    owner_kind, owner_name = _owner(metadata)
    return PodState(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", "default"),
        phase=status.get("phase", "Pending"),
        ready=bool(ready and ready.get("status") == "True"),
        labels=metadata.get("labels", {}) or {},
        containers=containers,
        owner_kind=owner_kind,
        owner_name=owner_name,
        unschedulable_message=unschedulable,
    )


def parse_service(item: dict[str, Any]) -> ServiceState:
    metadata = item.get("metadata", {})
    spec = item.get("spec", {})
    ingress = []
    for entry in (item.get("status", {}).get("loadBalancer", {}) or {}).get("ingress", []) or []:
        address = entry.get("ip") or entry.get("hostname")
        if address:
            ingress.append(address)
    return ServiceState(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", "default"),
        type=spec.get("type", "ClusterIP"),
        labels=metadata.get("labels", {}) or {},
        ingress=ingress,
        node_ports=[p["nodePort"] for p in spec.get("ports", []) or [] if p.get("nodePort")],
    )


def parse_endpoints(item: dict[str, Any]) -> EndpointsState:
    metadata = item.get("metadata", {})
    ready = 0
    not_ready = 0
    for subset in item.get("subsets", []) or []:
        ready += len(subset.get("addresses", []) or [])
        not_ready += len(subset.get("notReadyAddresses", []) or [])
    return EndpointsState(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", "default"),
        ready_addresses=ready,
        not_ready_addresses=not_ready,
    )


def parse_secret(item: dict[str, Any]) -> SecretState:
    metadata = item.get("metadata", {})
    return SecretState(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", "default"),
        keys=sorted((item.get("data") or {}).keys()),
    )


def parse_snapshot(kind: ResourceKind, data: dict[str, Any]) -> StateSnapshot:
    """Build a snapshot from one `kubectl get <kind> -o json` response."""
    items = _items(data)
    if kind == ResourceKind.NODES:
        return StateSnapshot(nodes=[parse_node(i) for i in items])
    if kind == ResourceKind.PODS:
        return StateSnapshot(pods=[parse_pod(i) for i in items])
    if kind == ResourceKind.SERVICES:
        return StateSnapshot(services=[parse_service(i) for i in items])
    if kind == ResourceKind.ENDPOINTS:
        return StateSnapshot(endpoints=[parse_endpoints(i) for i in items])
    return StateSnapshot(secrets=[parse_secret(i) for i in items])
