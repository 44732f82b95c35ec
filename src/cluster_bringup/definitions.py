"""Pipeline definition files.

A pipeline is declared in YAML and bound to adapters at run time:

    name: digitalocean-kubespray
    stages:
      - id: install-cert-manager
        depends_on: [install-kubernetes]
        apply:
          type: manifest
          manifests: [https://.../cert-manager.yaml]
        ready:
          type: endpoints_ready
          namespace: cert-manager
          service: cert-manager-webhook
        remediation:
          taint_keys: [node-role.kubernetes.io/control-plane]

Relative manifest paths resolve against the definition file's directory.
Command working directories are used as given (relative to the invocation
directory, where the terraform and kubespray checkouts live).
"""

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Any, Literal, Optional, Protocol, Sequence, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from cluster_bringup.config import Settings, get_settings
from cluster_bringup.core.conditions import Condition
from cluster_bringup.core.contracts import (
    Operator,
    ResourceDescriptor,
    SecretReference,
    Selector,
)
from cluster_bringup.core.graph import render_mermaid, topological_order
from cluster_bringup.core.poller import ConditionPoller
from cluster_bringup.core.remediation import build_engine
from cluster_bringup.core.stage import ApplyAction, Stage, noop_apply
from cluster_bringup.core.state import RetryPolicy
from cluster_bringup.exceptions import DefinitionError, PipelineConfigError
from cluster_bringup.secrets import SecretReader

logger = logging.getLogger(__name__)


# =============================================================================
# Apply actions
# =============================================================================


class ManifestApply(BaseModel):
    """kubectl apply of files, URLs and/or inline documents. Inline documents go first."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["manifest"] = "manifest"
    manifests: list[str] = Field(default_factory=list, description="Paths or URLs")
    documents: list[dict[str, Any]] = Field(default_factory=list, description="Inline manifests")
    namespace: Optional[str] = None
    server_side: bool = False

    @model_validator(mode="after")
    def _has_content(self) -> "ManifestApply":
        if not self.manifests and not self.documents:
            raise ValueError("manifest apply needs manifests or documents")
        return self


class CommandApply(BaseModel):
    """An external provisioning command (terraform, ansible-playbook)."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["command"] = "command"
    argv: list[str] = Field(min_length=1)
    cwd: Optional[str] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class OperatorApply(BaseModel):
    """A manual step; the stage waits for the operator's acknowledgement."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["operator"] = "operator"
    instructions: str = Field(min_length=1)


class SecretApply(BaseModel):
    """Wait for a generated secret and show it to the operator."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["secret"] = "secret"
    namespace: str
    name: str
    key: str
    label: Optional[str] = None
    timeout_seconds: float = Field(default=120.0, gt=0)


class NoopApply(BaseModel):
    """Nothing to apply; the stage only waits."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["noop"] = "noop"


ApplySpec = Annotated[
    Union[ManifestApply, CommandApply, OperatorApply, SecretApply, NoopApply],
    Field(discriminator="type"),
]


# =============================================================================
# Stage and pipeline specs
# =============================================================================


class RetrySpec(BaseModel):
    """Per-stage overrides of the retry defaults in Settings."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: Optional[int] = Field(default=None, ge=1)
    backoff_seconds: Optional[float] = Field(default=None, ge=0)
    backoff_multiplier: Optional[float] = Field(default=None, ge=1)
    max_backoff_seconds: Optional[float] = Field(default=None, ge=0)


class RemediationSpec(BaseModel):
    """Which corrective actions a stage may take."""

    model_config = ConfigDict(extra="forbid")

    taint_keys: list[str] = Field(default_factory=list, description="Taints that may be removed")
    registry_mirrors: dict[str, str] = Field(
        default_factory=dict, description="Merged over Settings.registry_mirrors"
    )
    webhook_rewait: bool = True
    insufficient_resources: Literal["escalate", "rewait"] = "escalate"


class StageSpec(BaseModel):
    """One stage as declared in a pipeline file."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    description: str = ""
    depends_on: list[str] = Field(default_factory=list)
    required: bool = True
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    poll_interval_seconds: Optional[float] = Field(default=None, gt=0)
    retry: RetrySpec = Field(default_factory=RetrySpec)
    apply: ApplySpec = Field(default_factory=NoopApply)
    ready: Optional[Condition] = None
    degraded: Optional[Condition] = None
    remediation: RemediationSpec = Field(default_factory=RemediationSpec)
    diagnostics: list[Selector] = Field(default_factory=list)


class PipelineDefinition(BaseModel):
    """A named stage graph."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    description: str = ""
    stages: list[StageSpec] = Field(min_length=1)
    source_dir: Optional[Path] = Field(default=None, exclude=True)

    def get(self, stage_id: str) -> Optional[StageSpec]:
        return next((s for s in self.stages if s.id == stage_id), None)

    def order(self) -> list[str]:
        """Topological stage order. Raises PipelineConfigError."""
        return topological_order(self.stages)

    def to_mermaid(self) -> str:
        return render_mermaid(self.stages)


def load_definition(path: Path) -> PipelineDefinition:
    """Load and validate a pipeline definition file.

    Args:
        path: YAML file

    Returns:
        Validated PipelineDefinition with an acyclic stage graph

    Raises:
        DefinitionError: unreadable file, invalid YAML, schema errors or a bad graph
    """
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise DefinitionError(f"Cannot read pipeline definition {path}: {e}") from e
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise DefinitionError(f"Pipeline definition {path} must be a mapping")

    try:
        definition = PipelineDefinition.model_validate({**data, "source_dir": path.parent})
    except ValidationError as e:
        raise DefinitionError(f"Invalid pipeline definition {path}:\n{e}") from e

    try:
        definition.order()
    except PipelineConfigError as e:
        raise DefinitionError(str(e), stage_id=e.stage_id) from e

    logger.debug(f"Loaded pipeline {definition.name} with {len(definition.stages)} stage(s) from {path}")
    return definition


# =============================================================================
# Binding to adapters
# =============================================================================


class ClusterClient(Protocol):
    """What stage actions need from the cluster adapter (KubectlClient)."""

    async def apply(self, descriptor: ResourceDescriptor) -> None: ...

    async def query(self, selector: Selector) -> Any: ...

    async def read_secret(self, ref: SecretReference) -> bytes: ...

    async def remove_taint(self, key: str) -> list[str]: ...

    async def set_image(
        self, namespace: str, workload_kind: str, workload: str, container: str, image: str
    ) -> None: ...

    async def run_command(
        self, argv: Sequence[str], cwd: Optional[str] = None, timeout: Optional[float] = None
    ) -> Any: ...


def _resolve_manifest(source: str, base: Optional[Path]) -> str:
    if "://" in source or base is None or Path(source).is_absolute():
        return source
    return str(base / source)


def _manifest_action(spec: ManifestApply, stage_id: str, client: ClusterClient, base: Optional[Path]) -> ApplyAction:
    descriptors: list[ResourceDescriptor] = []
    if spec.documents:
        descriptors.append(
            ResourceDescriptor(
                name=f"{stage_id} (inline)",
                documents=spec.documents,
                namespace=spec.namespace,
                server_side=spec.server_side,
            )
        )
    for source in spec.manifests:
        descriptors.append(
            ResourceDescriptor(
                name=source.rsplit("/", 1)[-1],
                source=_resolve_manifest(source, base),
                namespace=spec.namespace,
                server_side=spec.server_side,
            )
        )

    async def apply() -> None:
        for descriptor in descriptors:
            await client.apply(descriptor)

    return apply


def _command_action(spec: CommandApply, client: ClusterClient) -> ApplyAction:
    async def apply() -> None:
        await client.run_command(spec.argv, cwd=spec.cwd, timeout=spec.timeout_seconds)

    return apply


def _operator_action(spec: OperatorApply, operator: Operator) -> ApplyAction:
    async def apply() -> None:
        await operator.prompt_and_wait(spec.instructions.strip())

    return apply


def _secret_action(
    spec: SecretApply,
    client: ClusterClient,
    operator: Operator,
    interval: float,
    cancel: Optional[asyncio.Event],
) -> ApplyAction:
    ref = SecretReference(namespace=spec.namespace, name=spec.name, key=spec.key)
    reader = SecretReader(ConditionPoller(client), client)

    async def apply() -> None:
        value = await reader.read(ref, timeout=spec.timeout_seconds, interval=interval, cancel=cancel)
        await operator.reveal(spec.label or ref.describe(), value.decode("utf-8", errors="replace"))

    return apply


def build_stages(
    definition: PipelineDefinition,
    client: ClusterClient,
    operator: Operator,
    settings: Optional[Settings] = None,
    cancel: Optional[asyncio.Event] = None,
) -> list[Stage]:
    """Bind a definition to adapters and settings, producing executable stages.

    Args:
        definition: Loaded pipeline definition
        client: Cluster adapter used for apply, queries and remediations
        operator: Manual-intervention adapter
        settings: Source of per-stage defaults
        cancel: Cancellation event handed to actions that wait internally

    Returns:
        Stages in declaration order
    """
    settings = settings or get_settings()
    stages: list[Stage] = []

    for spec in definition.stages:
        interval = spec.poll_interval_seconds or settings.poll_interval_seconds

        if isinstance(spec.apply, ManifestApply):
            action = _manifest_action(spec.apply, spec.id, client, definition.source_dir)
        elif isinstance(spec.apply, CommandApply):
            action = _command_action(spec.apply, client)
        elif isinstance(spec.apply, OperatorApply):
            action = _operator_action(spec.apply, operator)
        elif isinstance(spec.apply, SecretApply):
            action = _secret_action(spec.apply, client, operator, interval, cancel)
        else:
            action = noop_apply

        retry = RetryPolicy(
            **{
                "max_attempts": settings.default_max_attempts,
                "backoff_seconds": settings.default_backoff_seconds,
                **spec.retry.model_dump(exclude_none=True),
            }
        )
        engine = build_engine(
            remover=client,
            rewriter=client,
            taint_keys=spec.remediation.taint_keys,
            registry_mirrors={**settings.registry_mirror_map, **spec.remediation.registry_mirrors},
            webhook_rewait=spec.remediation.webhook_rewait,
            insufficient_resources_rewait=spec.remediation.insufficient_resources == "rewait",
        )

        stages.append(
            Stage(
                id=spec.id,
                description=spec.description,
                depends_on=tuple(spec.depends_on),
                apply=action,
                ready=spec.ready,
                degraded=spec.degraded,
                remediation=engine,
                timeout_seconds=spec.timeout_seconds or settings.default_stage_timeout_seconds,
                poll_interval_seconds=interval,
                retry=retry,
                required=spec.required,
                diagnostics=tuple(spec.diagnostics),
            )
        )
    return stages
