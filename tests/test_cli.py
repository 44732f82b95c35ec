"""Tests for the click CLI."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from cluster_bringup import __version__, main
from cluster_bringup.config import Settings
from cluster_bringup.core.artifacts import ReportLog
from cluster_bringup.core.state import PipelineStatus, StageStatus
from conftest import FakeCluster, make_pod

PIPELINE = """
name: demo
stages:
  - id: namespace
    apply:
      type: manifest
      documents:
        - {apiVersion: v1, kind: Namespace, metadata: {name: demo}}
  - id: app
    depends_on: [namespace]
    ready:
      type: pods_ready
      namespace: demo
  - id: dns
    depends_on: [app]
    apply:
      type: operator
      instructions: Point DNS at the load balancer.
"""


@pytest.fixture
def fake_cluster(monkeypatch: pytest.MonkeyPatch, test_settings: Settings) -> FakeCluster:
    cluster = FakeCluster()
    monkeypatch.setattr(main, "get_settings", lambda: test_settings)
    monkeypatch.setattr(main, "KubectlClient", lambda settings: cluster)
    return cluster


@pytest.fixture
def pipeline_file(tmp_path: Path) -> Path:
    path = tmp_path / "demo.yaml"
    path.write_text(PIPELINE)
    return path


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestInformational:
    def test_version(self, runner: CliRunner):
        result = runner.invoke(main.cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_validate_packaged_pipeline(self, runner: CliRunner, fake_cluster: FakeCluster):
        result = runner.invoke(main.cli, ["validate"])
        assert result.exit_code == 0
        assert "digitalocean-kubespray" in result.output

    def test_validate_bad_file(self, runner: CliRunner, fake_cluster: FakeCluster, tmp_path: Path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("name: demo\nstages:\n  - id: a\n    depends_on: [missing]\n")
        result = runner.invoke(main.cli, ["validate", "--pipeline", str(bad)])
        assert result.exit_code == main.EXIT_CONFIG_ERROR
        assert "unknown stage" in result.output

    def test_graph(self, runner: CliRunner, fake_cluster: FakeCluster, pipeline_file: Path):
        result = runner.invoke(main.cli, ["graph", "--pipeline", str(pipeline_file)])
        assert result.exit_code == 0
        assert "flowchart TD" in result.output
        assert "namespace --> app" in result.output

    def test_status(self, runner: CliRunner, fake_cluster: FakeCluster):
        result = runner.invoke(main.cli, ["status"])
        assert result.exit_code == 0
        assert "Bring-up Status" in result.output

    def test_report_without_runs(self, runner: CliRunner, fake_cluster: FakeCluster):
        result = runner.invoke(main.cli, ["report"])
        assert result.exit_code == 0
        assert "No runs recorded" in result.output


class TestRun:
    def test_successful_run(
        self, runner: CliRunner, fake_cluster: FakeCluster, pipeline_file: Path, test_settings: Settings
    ):
        fake_cluster.state.pods = [make_pod("web", "demo")]
        result = runner.invoke(main.cli, ["run", "--pipeline", str(pipeline_file), "--yes"])

        assert result.exit_code == 0, result.output
        assert "completed" in result.output
        reports = ReportLog(test_settings.report_path)
        run_id = reports.latest_run_id()
        report = reports.load(run_id)
        assert report.status == PipelineStatus.COMPLETED
        assert all(r.status == StageStatus.SUCCEEDED for r in report.stages)
        assert reports.summary_path(run_id).exists()

    def test_failed_run_exits_non_zero(
        self, runner: CliRunner, fake_cluster: FakeCluster, pipeline_file: Path, test_settings: Settings
    ):
        result = runner.invoke(main.cli, ["run", "--pipeline", str(pipeline_file), "--yes"])

        assert result.exit_code == main.EXIT_PARTIALLY_FAILED
        assert "Failures" in result.output
        report = ReportLog(test_settings.report_path).load(
            ReportLog(test_settings.report_path).latest_run_id()
        )
        assert report.get("app").status == StageStatus.FAILED
        assert report.get("dns").status == StageStatus.SKIPPED

    def test_resume_replays_only_unfinished(
        self, runner: CliRunner, fake_cluster: FakeCluster, pipeline_file: Path, test_settings: Settings
    ):
        first = runner.invoke(main.cli, ["run", "--pipeline", str(pipeline_file), "--yes"])
        assert first.exit_code == main.EXIT_PARTIALLY_FAILED
        applied_before = len(fake_cluster.applied)

        fake_cluster.state.pods = [make_pod("web", "demo")]
        second = runner.invoke(main.cli, ["run", "--pipeline", str(pipeline_file), "--yes", "--resume"])

        assert second.exit_code == 0, second.output
        # The namespace stage succeeded the first time and is not applied again.
        assert len(fake_cluster.applied) == applied_before
        reports = ReportLog(test_settings.report_path)
        report = reports.load(reports.latest_run_id())
        assert report.reused_stage_ids == ["namespace"]
        assert report.resumed_from is not None

    def test_resume_without_previous_run(
        self, runner: CliRunner, fake_cluster: FakeCluster, pipeline_file: Path
    ):
        result = runner.invoke(main.cli, ["run", "--pipeline", str(pipeline_file), "--resume"])
        assert result.exit_code == main.EXIT_CONFIG_ERROR
        assert "no previous run" in result.output

    def test_resume_from_unknown_stage(
        self, runner: CliRunner, fake_cluster: FakeCluster, pipeline_file: Path
    ):
        fake_cluster.state.pods = [make_pod("web", "demo")]
        runner.invoke(main.cli, ["run", "--pipeline", str(pipeline_file), "--yes"])
        result = runner.invoke(
            main.cli, ["run", "--pipeline", str(pipeline_file), "--yes", "--resume-from", "nope"]
        )
        assert result.exit_code == main.EXIT_CONFIG_ERROR

    def test_report_shows_latest_run(
        self, runner: CliRunner, fake_cluster: FakeCluster, pipeline_file: Path
    ):
        fake_cluster.state.pods = [make_pod("web", "demo")]
        runner.invoke(main.cli, ["run", "--pipeline", str(pipeline_file), "--yes"])
        result = runner.invoke(main.cli, ["report"])
        assert result.exit_code == 0
        assert "namespace" in result.output
        assert "completed" in result.output
