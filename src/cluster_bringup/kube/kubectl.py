"""kubectl-backed adapters for the orchestration core.

KubectlClient satisfies ResourceApplier, StateQuery, TaintRemover and
ImageRewriter. Every call shells out to kubectl in a worker thread so the
event loop keeps polling other stages. Transport failures (API server
restarting, TLS handshake timeouts) are retried; everything else is
classified and raised. Long-running commands (terraform, ansible-playbook) run
as asyncio subprocesses so cancellation can stop them.
"""

import asyncio
import base64
import binascii
import json
import logging
import subprocess
from pathlib import Path
from typing import Optional, Sequence

import yaml
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from cluster_bringup.config import Settings, get_settings
from cluster_bringup.core.contracts import (
    ResourceDescriptor,
    ResourceKind,
    SecretReference,
    Selector,
    StateSnapshot,
)
from cluster_bringup.exceptions import (
    ApplyError,
    ApplyRejectedError,
    BringupError,
    QueryError,
    SecretNotFoundError,
)
from cluster_bringup.kube.parsing import parse_snapshot

logger = logging.getLogger(__name__)

TRANSIENT_PATTERNS = (
    "unable to connect to the server",
    "connection refused",
    "connection reset by peer",
    "i/o timeout",
    "tls handshake timeout",
    "etcdserver: request timed out",
    "the server is currently unable to handle the request",
)

REJECTED_PATTERNS = (
    "error validating",
    "is invalid",
    "unknown field",
    "error parsing",
    "error converting yaml",
    "strict decoding error",
)

# terraform and ansible get this long to shut down cleanly after SIGTERM.
TERMINATE_GRACE_SECONDS = 10.0

NAMESPACED_KINDS = (
    ResourceKind.PODS,
    ResourceKind.SERVICES,
    ResourceKind.ENDPOINTS,
    ResourceKind.SECRETS,
)


class TransientKubectlError(BringupError):
    """kubectl could not reach the API server."""


class CommandResult(BaseModel):
    """Captured result of an external command."""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stderr.strip(), self.stdout.strip()) if part)


def is_transient(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(pattern in lowered for pattern in TRANSIENT_PATTERNS)


def is_rejection(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(pattern in lowered for pattern in REJECTED_PATTERNS)


class KubectlClient:
    """Talks to the target cluster through the kubectl binary."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()

    def _base_cmd(self) -> list[str]:
        cmd = [self._settings.kubectl_binary]
        if self._settings.kubeconfig:
            cmd.extend(["--kubeconfig", self._settings.kubeconfig])
        return cmd

    def _run_once(self, args: Sequence[str], input_text: Optional[str] = None) -> CommandResult:
        cmd = self._base_cmd() + list(args)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                input=input_text,
                timeout=self._settings.kubectl_timeout_seconds,
            )
        except FileNotFoundError as e:
            raise BringupError(f"kubectl not found: {self._settings.kubectl_binary}") from e
        except subprocess.TimeoutExpired as e:
            raise TransientKubectlError(
                f"kubectl {' '.join(args[:2])} timed out after {self._settings.kubectl_timeout_seconds}s"
            ) from e

        if result.returncode != 0 and is_transient(result.stderr):
            raise TransientKubectlError(result.stderr.strip()[:300])
        return CommandResult(
            args=cmd, returncode=result.returncode, stdout=result.stdout, stderr=result.stderr
        )

    async def kubectl(self, args: Sequence[str], input_text: Optional[str] = None) -> CommandResult:
        """Run kubectl, retrying transport failures.

        Raises:
            TransientKubectlError: the API server stayed unreachable
            BringupError: kubectl is not installed
        """

        @retry(
            stop=stop_after_attempt(max(1, self._settings.kubectl_retries)),
            wait=wait_exponential(
                multiplier=self._settings.kubectl_retry_wait_seconds,
                max=self._settings.kubectl_retry_wait_seconds * 10,
            ),
            retry=retry_if_exception_type(TransientKubectlError),
            reraise=True,
        )
        def _attempt() -> CommandResult:
            return self._run_once(args, input_text)

        return await asyncio.to_thread(_attempt)

    # =========================================================================
    # ResourceApplier
    # =========================================================================

    async def apply(self, descriptor: ResourceDescriptor) -> None:
        """Apply a manifest file, URL or inline documents.

        Raises:
            ApplyRejectedError: the manifest itself is invalid
            ApplyError: anything else (webhooks not serving, API unreachable)
        """
        args = ["apply"]
        if descriptor.server_side:
            args.extend(["--server-side", "--force-conflicts"])
        if descriptor.namespace:
            args.extend(["-n", descriptor.namespace])

        input_text = None
        if descriptor.documents:
            args.extend(["-f", "-"])
            input_text = yaml.safe_dump_all(descriptor.documents, sort_keys=False)
        elif descriptor.source:
            args.extend(["-f", descriptor.source])
        else:
            raise ApplyRejectedError(f"{descriptor.name}: nothing to apply")

        try:
            result = await self.kubectl(args, input_text)
        except TransientKubectlError as e:
            raise ApplyError(f"{descriptor.name}: cluster unreachable", output=str(e)) from e

        if result.ok:
            logger.info(f"Applied {descriptor.name}")
            return
        if is_rejection(result.stderr):
            raise ApplyRejectedError(f"{descriptor.name}: manifest rejected", output=result.output)
        raise ApplyError(f"{descriptor.name}: kubectl apply failed", output=result.output)

    # =========================================================================
    # StateQuery
    # =========================================================================

    async def query(self, selector: Selector) -> StateSnapshot:
        """Fetch a snapshot for one selector.

        A named object that does not exist yields an empty snapshot.

        Raises:
            QueryError: kubectl failed or returned unparsable output
        """
        args = ["get", selector.kind.value]
        if selector.name:
            args.append(selector.name)
        if selector.kind in NAMESPACED_KINDS:
            args.extend(["-n", selector.namespace] if selector.namespace else ["-A"])
        if selector.label_selector:
            args.extend(["-l", selector.label_selector])
        args.extend(["-o", "json"])

        try:
            result = await self.kubectl(args)
        except TransientKubectlError as e:
            raise QueryError(f"{selector.describe()}: {e}") from e

        if not result.ok:
            if selector.name and "notfound" in result.stderr.lower().replace(" ", ""):
                return StateSnapshot()
            raise QueryError(f"{selector.describe()}: {result.stderr.strip()[:300]}")

        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise QueryError(f"{selector.describe()}: unparsable output: {e}") from e
        return parse_snapshot(selector.kind, data)

    # =========================================================================
    # Remediation actions
    # =========================================================================

    async def remove_taint(self, key: str) -> list[str]:
        """Remove a taint key from every node that carries it.

        Returns:
            Names of the nodes that were untainted (empty when none carried it)
        """
        snapshot = await self.query(Selector(kind=ResourceKind.NODES))
        untainted: list[str] = []
        for node in snapshot.nodes:
            if not node.has_taint(key):
                continue
            try:
                result = await self.kubectl(["taint", "nodes", node.name, f"{key}-"])
            except TransientKubectlError as e:
                raise ApplyError(f"Could not untaint {node.name}", output=str(e)) from e
            if result.ok or "not found" in result.stderr.lower():
                untainted.append(node.name)
                continue
            raise ApplyError(f"Could not untaint {node.name}", output=result.output)
        return untainted

    async def set_image(
        self, namespace: str, workload_kind: str, workload: str, container: str, image: str
    ) -> None:
        """Point a workload container at a new image."""
        args = [
            "set", "image", f"{workload_kind.lower()}/{workload}",
            f"{container}={image}",
            "-n", namespace,
        ]
        try:
            result = await self.kubectl(args)
        except TransientKubectlError as e:
            raise ApplyError(f"Could not update image of {workload}", output=str(e)) from e
        if not result.ok:
            raise ApplyError(f"Could not update image of {workload}", output=result.output)

    # =========================================================================
    # Secrets
    # =========================================================================

    async def read_secret(self, ref: SecretReference) -> bytes:
        """Read and base64-decode one key of a secret.

        Raises:
            SecretNotFoundError: the secret or key does not exist
            QueryError: kubectl failed
        """
        args = ["get", "secret", ref.name, "-n", ref.namespace, "-o", "json"]
        try:
            result = await self.kubectl(args)
        except TransientKubectlError as e:
            raise QueryError(f"{ref.describe()}: {e}") from e
        if not result.ok:
            if "notfound" in result.stderr.lower().replace(" ", ""):
                raise SecretNotFoundError(f"Secret {ref.describe()} not found")
            raise QueryError(f"{ref.describe()}: {result.stderr.strip()[:300]}")

        try:
            data = json.loads(result.stdout).get("data") or {}
        except json.JSONDecodeError as e:
            raise QueryError(f"{ref.describe()}: unparsable output: {e}") from e
        if ref.key not in data:
            raise SecretNotFoundError(f"Secret {ref.describe()} has no key {ref.key}")
        try:
            return base64.b64decode(data[ref.key], validate=True)
        except binascii.Error as e:
            raise QueryError(f"{ref.describe()}: value is not valid base64") from e

    # =========================================================================
    # External commands
    # =========================================================================

    async def run_command(
        self,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a non-kubectl command (terraform, ansible-playbook) to completion.

        Raises:
            ApplyRejectedError: the executable or working directory does not exist
            ApplyError: non-zero exit or timeout
        """
        if cwd and not Path(cwd).is_dir():
            raise ApplyRejectedError(f"Working directory not found: {cwd}")
        limit = timeout or self._settings.command_timeout_seconds
        name = Path(argv[0]).name if argv else "command"

        logger.info(f"Running {' '.join(argv)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ApplyRejectedError(f"Executable not found: {argv[0]}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=limit)
        except asyncio.TimeoutError as e:
            await _terminate(process)
            raise ApplyError(f"{name} timed out after {limit}s") from e
        except asyncio.CancelledError:
            logger.warning(f"Cancelled; stopping {name} (pid {process.pid})")
            await _terminate(process)
            raise

        result = CommandResult(
            args=list(argv),
            returncode=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if not result.ok:
            # Tail only; ansible output runs to thousands of lines.
            raise ApplyError(f"{name} exited with {result.returncode}", output=result.output[-2000:])
        return result


async def _terminate(process: asyncio.subprocess.Process, grace: float = TERMINATE_GRACE_SECONDS) -> None:
    """SIGTERM a child process, escalating to SIGKILL after `grace` seconds."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
