"""Retrieval of generated credentials (e.g. the Argo CD initial admin password)."""

import asyncio
import logging
from typing import Optional, Protocol

from cluster_bringup.core.conditions import SecretPresent
from cluster_bringup.core.contracts import SecretReference
from cluster_bringup.core.poller import ConditionPoller, PollOutcome
from cluster_bringup.exceptions import OperationCancelledError, SecretNotFoundError

logger = logging.getLogger(__name__)


class SecretSource(Protocol):
    async def read_secret(self, ref: SecretReference) -> bytes:
        ...


class SecretReader:
    """Waits for a secret to be generated, then reads it."""

    def __init__(self, poller: ConditionPoller, source: SecretSource):
        self._poller = poller
        self._source = source

    async def read(
        self,
        ref: SecretReference,
        timeout: float = 120.0,
        interval: float = 5.0,
        cancel: Optional[asyncio.Event] = None,
    ) -> bytes:
        """Return the raw value once the secret holds the key.

        Raises:
            SecretNotFoundError: the key did not appear before the timeout
            OperationCancelledError: cancelled while waiting
        """
        condition = SecretPresent(namespace=ref.namespace, name=ref.name, key=ref.key)
        result = await self._poller.await_condition(condition, interval=interval, timeout=timeout, cancel=cancel)
        if result.outcome == PollOutcome.CANCELLED:
            raise OperationCancelledError(f"Cancelled while waiting for secret {ref.describe()}")
        if not result.satisfied:
            raise SecretNotFoundError(
                f"Secret {ref.describe()} not present after {timeout:.0f}s"
                + (f": {result.last_error}" if result.last_error else "")
            )
        value = await self._source.read_secret(ref)
        logger.info(f"Read secret {ref.describe()}")
        return value
