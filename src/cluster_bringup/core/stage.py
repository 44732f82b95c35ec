"""Stage definitions.

A Stage is defined once when the pipeline is built and never mutated; each
execution produces a fresh StageRun.
"""

from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from cluster_bringup.core.conditions import BaseCondition
from cluster_bringup.core.contracts import ResourceKind, Selector
from cluster_bringup.core.remediation import RemediationEngine
from cluster_bringup.core.state import RetryPolicy

ApplyAction = Callable[[], Awaitable[None]]


async def noop_apply() -> None:
    """Apply action for stages that only wait."""
    return None


class Stage(BaseModel):
    """One named unit of provisioning work."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    id: str = Field(min_length=1)
    description: str = ""
    depends_on: tuple[str, ...] = ()
    apply: ApplyAction = Field(default=noop_apply, description="Idempotent external mutation")
    ready: Optional[BaseCondition] = Field(default=None, description="Readiness predicate; None means ready after apply")
    degraded: Optional[BaseCondition] = Field(default=None, description="Weaker sufficiency predicate")
    remediation: RemediationEngine = Field(default_factory=RemediationEngine)
    timeout_seconds: float = Field(default=300.0, gt=0)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    required: bool = True
    diagnostics: tuple[Selector, ...] = Field(
        default=(), description="Extra state captured on timeout"
    )

    def diagnostic_selectors(self) -> list[Selector]:
        """Selectors captured when the stage does not become ready.

        Always includes the readiness/degradation selectors, every node (for
        taints), and the pods of every namespace those selectors touch.
        """
        selectors: list[Selector] = []

        def add(selector: Selector) -> None:
            if selector not in selectors:
                selectors.append(selector)

        for condition in (self.ready, self.degraded):
            if condition is None:
                continue
            for selector in condition.selectors():
                add(selector)
        add(Selector(kind=ResourceKind.NODES))
        for namespace in sorted({s.namespace for s in selectors if s.namespace}):
            add(Selector(kind=ResourceKind.PODS, namespace=namespace))
            add(Selector(kind=ResourceKind.ENDPOINTS, namespace=namespace))
        for selector in self.diagnostics:
            add(selector)
        return selectors
