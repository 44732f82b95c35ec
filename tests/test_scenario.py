"""End-to-end bring-up against the fake cluster.

A small version of the DigitalOcean pipeline: tainted control-plane nodes,
a cert-manager webhook that is not serving on the first issuer apply, an
Argo CD install that only reaches a partial quorum, and an optional
dashboard that does not fit. Then a resumed run once capacity is added.
"""

from pathlib import Path

import pytest

from cluster_bringup.config import Settings
from cluster_bringup.core.artifacts import ReportLog
from cluster_bringup.core.contracts import ResourceDescriptor
from cluster_bringup.core.executor import StageExecutor
from cluster_bringup.core.graph import PipelineController
from cluster_bringup.core.state import ErrorKind, PipelineStatus, SignatureKind, StageStatus
from cluster_bringup.definitions import build_stages, load_definition
from cluster_bringup.exceptions import ApplyError
from cluster_bringup.operator import AutoAcknowledgeOperator
from conftest import CONTROL_PLANE_TAINT, FakeCluster, make_node, make_pod

PIPELINE = f"""
name: scenario
stages:
  - id: install-kubernetes
    ready:
      type: nodes_ready
      min_ready: 3

  - id: remove-control-plane-taint
    depends_on: [install-kubernetes]
    ready:
      type: no_taint
      key: {CONTROL_PLANE_TAINT}
    remediation:
      taint_keys: [{CONTROL_PLANE_TAINT}]

  - id: install-cert-manager
    depends_on: [remove-control-plane-taint]
    apply:
      type: manifest
      manifests: [https://example.com/cert-manager.yaml]
    ready:
      type: endpoints_ready
      namespace: cert-manager
      service: cert-manager-webhook

  - id: create-cluster-issuer
    depends_on: [install-cert-manager]
    apply:
      type: manifest
      documents:
        - {{apiVersion: cert-manager.io/v1, kind: ClusterIssuer, metadata: {{name: letsencrypt-prod}}}}

  - id: install-argocd
    depends_on: [remove-control-plane-taint]
    apply:
      type: manifest
      manifests: [https://example.com/argocd.yaml]
      namespace: argocd
    ready:
      type: pods_ready
      namespace: argocd
    degraded:
      type: pods_ready
      namespace: argocd
      min_ready: 2

  - id: fetch-argocd-password
    depends_on: [install-argocd]
    required: false
    apply:
      type: secret
      namespace: argocd
      name: argocd-initial-admin-secret
      key: password
      label: Argo CD admin password

  - id: install-dashboard
    depends_on: [remove-control-plane-taint]
    required: false
    apply:
      type: manifest
      manifests: [https://example.com/dashboard.yaml]
    ready:
      type: pods_ready
      namespace: kubernetes-dashboard
"""

WEBHOOK_ERROR = (
    'Internal error occurred: failed calling webhook "webhook.cert-manager.io": '
    'no endpoints available for service "cert-manager-webhook"'
)


def build_cluster() -> FakeCluster:
    cluster = FakeCluster()
    cluster.state.nodes = [
        make_node(f"node-{i}", taints=[CONTROL_PLANE_TAINT]) for i in range(1, 4)
    ]
    cluster.state.pods = [
        make_pod("argocd-server", "argocd"),
        make_pod("argocd-repo-server", "argocd"),
        make_pod("argocd-dex-server", "argocd", ready=False, waiting_reason="CrashLoopBackOff"),
        make_pod(
            "kubernetes-dashboard",
            "kubernetes-dashboard",
            ready=False,
            unschedulable="0/3 nodes are available: 3 Insufficient memory.",
        ),
    ]
    cluster.add_secret("argocd", "argocd-initial-admin-secret", "password", "s3cr3t")
    issuer_applies = {"count": 0}

    def react(c: FakeCluster, descriptor: ResourceDescriptor) -> None:
        if descriptor.source and descriptor.source.endswith("cert-manager.yaml"):
            c.set_endpoints("cert-manager", "cert-manager-webhook", ready=1)
        if descriptor.documents and descriptor.documents[0]["kind"] == "ClusterIssuer":
            issuer_applies["count"] += 1
            if issuer_applies["count"] == 1:
                raise ApplyError("create-cluster-issuer: kubectl apply failed", output=WEBHOOK_ERROR)

    cluster.on_apply = react
    return cluster


async def run_pipeline(tmp_path: Path, cluster: FakeCluster, settings: Settings, prior=None):
    path = tmp_path / "scenario.yaml"
    path.write_text(PIPELINE)
    definition = load_definition(path)
    operator = AutoAcknowledgeOperator()
    reports = ReportLog(settings.report_path)
    controller = PipelineController(
        StageExecutor(cluster),
        max_concurrency=settings.max_concurrency,
        name=definition.name,
        on_stage_complete=reports.append_stage,
    )
    stages = build_stages(definition, cluster, operator, settings)
    report = await controller.execute(stages, prior=prior)
    reports.append_pipeline(report)
    return report, operator, reports


class TestBringupScenario:
    @pytest.mark.asyncio
    async def test_full_bringup(self, tmp_path: Path, test_settings: Settings):
        cluster = build_cluster()
        report, operator, reports = await run_pipeline(tmp_path, cluster, test_settings)

        # Optional dashboard failure does not fail the pipeline.
        assert report.status == PipelineStatus.COMPLETED

        taint = report.get("remove-control-plane-taint")
        assert taint.status == StageStatus.SUCCEEDED
        assert taint.remediations[0].signature.kind == SignatureKind.UNTOLERATED_TAINT
        assert cluster.removed_taints == [CONTROL_PLANE_TAINT]

        issuer = report.get("create-cluster-issuer")
        assert issuer.status == StageStatus.SUCCEEDED
        assert issuer.remediations[0].signature.kind == SignatureKind.WEBHOOK_UNREACHABLE

        argocd = report.get("install-argocd")
        assert argocd.status == StageStatus.SUCCEEDED and argocd.degraded
        assert [r.stage_id for r in report.degraded_stages] == ["install-argocd"]

        assert report.get("fetch-argocd-password").succeeded
        assert operator.revealed == ["Argo CD admin password"]

        dashboard = report.get("install-dashboard")
        assert dashboard.status == StageStatus.FAILED
        assert dashboard.error_kind == ErrorKind.REMEDIATION_UNAVAILABLE
        assert dashboard.remediations[0].signature.kind == SignatureKind.INSUFFICIENT_RESOURCES
        assert any("install-dashboard failed" in line for line in report.failure_summary())

        persisted = reports.load(report.run_id)
        assert persisted.status == PipelineStatus.COMPLETED
        assert persisted.get("install-dashboard").status == StageStatus.FAILED

    @pytest.mark.asyncio
    async def test_resume_after_adding_capacity(self, tmp_path: Path, test_settings: Settings):
        cluster = build_cluster()
        first, _, reports = await run_pipeline(tmp_path, cluster, test_settings)
        applied_before = len(cluster.applied)

        cluster.state.pods = [
            p for p in cluster.state.pods if p.namespace != "kubernetes-dashboard"
        ] + [make_pod("kubernetes-dashboard", "kubernetes-dashboard")]

        prior = reports.load(first.run_id)
        second, _, _ = await run_pipeline(tmp_path, cluster, test_settings, prior=prior)

        assert second.status == PipelineStatus.COMPLETED
        assert second.get("install-dashboard").status == StageStatus.SUCCEEDED
        assert "install-dashboard" not in second.reused_stage_ids
        assert "install-argocd" in second.reused_stage_ids
        # Only the dashboard manifest is applied again.
        assert [d.source for d in cluster.applied[applied_before:]] == ["https://example.com/dashboard.yaml"]
