"""Tests for generated-credential retrieval."""

import asyncio

import pytest

from cluster_bringup.core.contracts import SecretReference
from cluster_bringup.core.poller import ConditionPoller
from cluster_bringup.exceptions import OperationCancelledError, SecretNotFoundError
from cluster_bringup.secrets import SecretReader
from conftest import FakeCluster

REF = SecretReference(namespace="argocd", name="argocd-initial-admin-secret", key="password")


def reader(cluster: FakeCluster) -> SecretReader:
    return SecretReader(ConditionPoller(cluster), cluster)


class TestSecretReader:
    @pytest.mark.asyncio
    async def test_reads_present_secret(self, cluster: FakeCluster):
        cluster.add_secret("argocd", "argocd-initial-admin-secret", "password", "s3cr3t")
        assert await reader(cluster).read(REF, timeout=1, interval=0.01) == b"s3cr3t"

    @pytest.mark.asyncio
    async def test_waits_for_secret_to_appear(self, cluster: FakeCluster):
        def generate(c: FakeCluster, count: int) -> None:
            if count == 3 and not c.secret_values:
                c.add_secret("argocd", "argocd-initial-admin-secret", "password", "s3cr3t")

        cluster.on_query = generate
        assert await reader(cluster).read(REF, timeout=1, interval=0.01) == b"s3cr3t"

    @pytest.mark.asyncio
    async def test_timeout_raises_not_found(self, cluster: FakeCluster):
        with pytest.raises(SecretNotFoundError):
            await reader(cluster).read(REF, timeout=0.03, interval=0.01)

    @pytest.mark.asyncio
    async def test_cancelled(self, cluster: FakeCluster):
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(OperationCancelledError):
            await reader(cluster).read(REF, timeout=1, interval=0.01, cancel=cancel)
