"""Remediation Rule Engine.

Maps a diagnostic snapshot to a typed failure signature and each signature to
exactly one idempotent corrective action. Detection stays pragmatic (scheduler
messages, waiting reasons, error text) but lives in one testable place.

    classify(diagnostic) -> Signature | None
    remediate(signature) -> APPLIED | UNAVAILABLE
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Optional, Protocol

from cluster_bringup.core.state import (
    DiagnosticSnapshot,
    ImageTarget,
    RemediationOutcome,
    Signature,
    SignatureKind,
)

logger = logging.getLogger(__name__)

PULL_BACKOFF_REASONS = ("ImagePullBackOff", "ErrImagePull")

WEBHOOK_ERROR_PATTERNS = (
    "failed calling webhook",
    "no endpoints available for service",
    "webhook.cert-manager.io",
)

UNTOLERATED_TAINT_PATTERN = re.compile(r"untolerated taint[s]?\s*\{([^:}\s]+)")
INSUFFICIENT_PATTERN = re.compile(r"Insufficient (cpu|memory|pods|ephemeral-storage)")


class TaintRemover(Protocol):
    """Removes a taint key from every node that carries it."""

    async def remove_taint(self, key: str) -> list[str]:
        ...


class ImageRewriter(Protocol):
    """Points a workload container at a different image."""

    async def set_image(
        self, namespace: str, workload_kind: str, workload: str, container: str, image: str
    ) -> None:
        ...


def rewrite_image(image: str, mirrors: dict[str, str]) -> Optional[str]:
    """Redirect an image reference to a mirror registry.

    Images without a registry host are treated as docker.io images. Returns
    None when no mirror covers the image.

    Args:
        image: Image reference, e.g. "quay.io/jetstack/cert-manager-webhook:v1.14.4"
        mirrors: Source prefix to mirror prefix, e.g. {"quay.io": "mirror.example.com/quay"}
    """
    first = image.split("/", 1)[0]
    if "/" not in image or ("." not in first and ":" not in first and first != "localhost"):
        qualified = f"docker.io/{image}" if "/" in image else f"docker.io/library/{image}"
    else:
        qualified = image

    for source in sorted(mirrors, key=len, reverse=True):
        prefix = source.rstrip("/")
        if qualified.startswith(prefix + "/"):
            return mirrors[source].rstrip("/") + qualified[len(prefix):]
    return None


class RemediationRule(ABC):
    """One failure signature and its corrective action."""

    kind: SignatureKind

    @abstractmethod
    def match(self, diagnostic: DiagnosticSnapshot) -> Optional[Signature]:
        """Return a signature when the diagnostic shows this failure."""

    @abstractmethod
    async def apply(self, signature: Signature) -> RemediationOutcome:
        """Run the corrective action. Must be a no-op when already resolved."""

    def describe_action(self, signature: Signature) -> str:
        return ""


class UntoleratedTaintRule(RemediationRule):
    """Remove watched taint keys that block scheduling."""

    kind = SignatureKind.UNTOLERATED_TAINT

    def __init__(self, remover: TaintRemover, taint_keys: list[str]):
        self._remover = remover
        self._keys = list(taint_keys)

    def match(self, diagnostic: DiagnosticSnapshot) -> Optional[Signature]:
        for node in diagnostic.state.nodes:
            for taint in node.taints:
                if taint.key in self._keys:
                    return Signature(
                        kind=self.kind,
                        taint_key=taint.key,
                        detail=f"node {node.name} carries {taint.key}",
                    )
        for pod in diagnostic.state.pods:
            if not pod.unschedulable_message:
                continue
            for key in UNTOLERATED_TAINT_PATTERN.findall(pod.unschedulable_message):
                if key in self._keys:
                    return Signature(kind=self.kind, taint_key=key, detail=pod.unschedulable_message)
        return None

    async def apply(self, signature: Signature) -> RemediationOutcome:
        if not signature.taint_key:
            return RemediationOutcome.UNAVAILABLE
        nodes = await self._remover.remove_taint(signature.taint_key)
        logger.info(f"Removed taint {signature.taint_key} from {len(nodes)} node(s)")
        return RemediationOutcome.APPLIED

    def describe_action(self, signature: Signature) -> str:
        return f"remove taint {signature.taint_key} from all nodes"


class ImagePullBackoffRule(RemediationRule):
    """Redirect unpullable images to a mirror registry."""

    kind = SignatureKind.IMAGE_PULL_BACKOFF

    def __init__(self, rewriter: ImageRewriter, mirrors: dict[str, str]):
        self._rewriter = rewriter
        self._mirrors = dict(mirrors)

    def match(self, diagnostic: DiagnosticSnapshot) -> Optional[Signature]:
        targets: list[ImageTarget] = []
        for pod in diagnostic.state.pods:
            for container in pod.containers:
                if container.waiting_reason not in PULL_BACKOFF_REASONS:
                    continue
                if not pod.owner_name:
                    continue
                target = ImageTarget(
                    namespace=pod.namespace,
                    workload_kind=pod.owner_kind or "Deployment",
                    workload=pod.owner_name,
                    container=container.name,
                    image=container.image,
                )
                if target not in targets:
                    targets.append(target)
        if not targets:
            return None
        images = tuple(sorted({t.image for t in targets}))
        return Signature(kind=self.kind, images=images, targets=tuple(targets))

    async def apply(self, signature: Signature) -> RemediationOutcome:
        applied = False
        for target in signature.targets:
            mirrored = rewrite_image(target.image, self._mirrors)
            if mirrored is None or mirrored == target.image:
                logger.warning(f"No registry mirror configured for {target.image}")
                continue
            await self._rewriter.set_image(
                target.namespace, target.workload_kind, target.workload, target.container, mirrored
            )
            logger.info(f"Redirected {target.workload}/{target.container} to {mirrored}")
            applied = True
        return RemediationOutcome.APPLIED if applied else RemediationOutcome.UNAVAILABLE

    def describe_action(self, signature: Signature) -> str:
        return "redirect images to mirror: " + ", ".join(signature.images)


class WebhookUnreachableRule(RemediationRule):
    """An admission webhook is not serving yet; the cure is to wait longer."""

    kind = SignatureKind.WEBHOOK_UNREACHABLE

    def match(self, diagnostic: DiagnosticSnapshot) -> Optional[Signature]:
        if diagnostic.error:
            lowered = diagnostic.error.lower()
            for pattern in WEBHOOK_ERROR_PATTERNS:
                if pattern in lowered:
                    return Signature(kind=self.kind, detail=diagnostic.error[:300])
        for endpoints in diagnostic.state.endpoints:
            if "webhook" in endpoints.name and endpoints.ready_addresses == 0:
                return Signature(
                    kind=self.kind,
                    detail=f"{endpoints.namespace}/{endpoints.name} has no ready endpoints",
                )
        return None

    async def apply(self, signature: Signature) -> RemediationOutcome:
        return RemediationOutcome.APPLIED

    def describe_action(self, signature: Signature) -> str:
        return "wait for webhook to start serving"


class InsufficientResourcesRule(RemediationRule):
    """Pods do not fit on the nodes. Escalates unless configured to re-wait."""

    kind = SignatureKind.INSUFFICIENT_RESOURCES

    def __init__(self, rewait: bool = False):
        self._rewait = rewait

    def match(self, diagnostic: DiagnosticSnapshot) -> Optional[Signature]:
        for pod in diagnostic.state.pods:
            message = pod.unschedulable_message or ""
            if INSUFFICIENT_PATTERN.search(message):
                return Signature(kind=self.kind, detail=message)
        return None

    async def apply(self, signature: Signature) -> RemediationOutcome:
        if self._rewait:
            return RemediationOutcome.APPLIED
        return RemediationOutcome.UNAVAILABLE

    def describe_action(self, signature: Signature) -> str:
        return "wait for capacity" if self._rewait else "add node capacity (manual)"


class RemediationEngine:
    """Ordered rule set for one stage."""

    def __init__(self, rules: Optional[list[RemediationRule]] = None):
        self._rules: list[RemediationRule] = list(rules or [])

    @property
    def rules(self) -> list[RemediationRule]:
        return self._rules

    def classify(self, diagnostic: DiagnosticSnapshot) -> Optional[Signature]:
        """Return the first matching signature, or None to escalate."""
        for rule in self._rules:
            signature = rule.match(diagnostic)
            if signature is not None:
                logger.info(f"{diagnostic.stage_id}: classified failure as {signature.describe()}")
                return signature
        return None

    def _rule_for(self, signature: Signature) -> Optional[RemediationRule]:
        for rule in self._rules:
            if rule.kind == signature.kind:
                return rule
        return None

    async def remediate(self, signature: Signature) -> RemediationOutcome:
        """Run the corrective action mapped to the signature."""
        rule = self._rule_for(signature)
        if rule is None:
            return RemediationOutcome.UNAVAILABLE
        return await rule.apply(signature)

    def describe_action(self, signature: Signature) -> str:
        rule = self._rule_for(signature)
        return rule.describe_action(signature) if rule else ""


def build_engine(
    remover: Optional[TaintRemover] = None,
    rewriter: Optional[ImageRewriter] = None,
    taint_keys: Optional[list[str]] = None,
    registry_mirrors: Optional[dict[str, str]] = None,
    webhook_rewait: bool = True,
    insufficient_resources_rewait: bool = False,
) -> RemediationEngine:
    """Build an engine with the standard rule order.

    Rules without their collaborator (no remover, no taint keys) are left out.
    An image rule without mirrors still classifies, so the report names the
    failure, but its remediation is unavailable.
    """
    rules: list[RemediationRule] = []
    if remover is not None and taint_keys:
        rules.append(UntoleratedTaintRule(remover, taint_keys))
    if rewriter is not None:
        rules.append(ImagePullBackoffRule(rewriter, registry_mirrors or {}))
    if webhook_rewait:
        rules.append(WebhookUnreachableRule())
    rules.append(InsufficientResourcesRule(rewait=insufficient_resources_rewait))
    return RemediationEngine(rules)
