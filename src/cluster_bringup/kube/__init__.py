"""kubectl adapters for the orchestration core."""

from cluster_bringup.kube.kubectl import CommandResult, KubectlClient

__all__ = ["CommandResult", "KubectlClient"]
