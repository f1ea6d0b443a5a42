"""
Health gate for CrateDB clusters.

The gate polls the health reported on the CrateDB resource until it is GREEN.
YELLOW, RED and UNKNOWN keep it waiting; failed queries are retried with
exponential backoff until the retry budget is spent. The whole gate is bounded
by the policy timeout and can be interrupted through a cancel event.
"""

import asyncio
from typing import Any, Mapping, Optional, Protocol

from kubernetes.client.exceptions import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from .errors import GateCancelledError, HealthTimeoutError, HealthUnavailableError, TransientError
from .models import ClusterIdentity, HealthStatus, PollPolicy

TRANSIENT_ERRORS = (TransientError, ApiException, HTTPError, OSError, asyncio.TimeoutError)


def nested_get(document: Any, *path: str) -> Optional[Any]:
    """Walk nested mappings, returning None as soon as the shape does not match."""
    current = document
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def extract_health_status(document: Any) -> HealthStatus:
    """Read status.crateDBStatus.health from a CrateDB resource."""
    return HealthStatus.parse(nested_get(document, "status", "crateDBStatus", "health"))


class HealthSource(Protocol):
    """Anything that can read the current health of a cluster."""

    async def read_health(self, cluster: ClusterIdentity) -> HealthStatus:
        ...


class HealthMonitor:
    """Polls a HealthSource until a cluster reports GREEN."""

    def __init__(self, source: HealthSource, cancel_event: Optional[asyncio.Event] = None, log=None):
        self.source = source
        self.log = log or logger
        self.cancel_event = cancel_event or asyncio.Event()
        self.queries = 0

    async def check(self, cluster: ClusterIdentity) -> HealthStatus:
        """Read the health once."""
        self.queries += 1
        return await self.source.read_health(cluster)

    async def await_healthy(self, cluster: ClusterIdentity, policy: PollPolicy) -> int:
        """
        Block until the cluster reports GREEN.

        Args:
            cluster: Cluster to watch
            policy: Poll interval, gate timeout and retry budget

        Returns:
            Number of successful health reads it took

        Raises:
            HealthUnavailableError: More consecutive query failures than policy.max_retries
            HealthTimeoutError: policy.timeout elapsed before GREEN was seen
            GateCancelledError: The cancel event was set
        """
        loop = asyncio.get_running_loop()
        deadline = None if policy.timeout is None else loop.time() + policy.timeout
        checks = 0
        failures = 0
        last_status: Optional[HealthStatus] = None

        while True:
            if self.cancel_event.is_set():
                raise GateCancelledError(cluster, last_status=last_status)
            if deadline is not None and loop.time() >= deadline:
                raise HealthTimeoutError(cluster, policy.timeout, last_status=last_status)

            try:
                status = await self._read(cluster, deadline, last_status)
            except asyncio.TimeoutError as e:
                if deadline is not None and loop.time() >= deadline:
                    raise HealthTimeoutError(cluster, policy.timeout, last_status=last_status) from e
                failures, delay = self._record_failure(cluster, policy, failures, e, last_status)
            except TRANSIENT_ERRORS as e:
                failures, delay = self._record_failure(cluster, policy, failures, e, last_status)
            else:
                checks += 1
                failures = 0
                last_status = status
                if status == HealthStatus.GREEN:
                    self.log.info(f"[{cluster}] health GREEN (check {checks})")
                    return checks
                self.log.info(f"[{cluster}] health {status.value}, waiting {policy.interval:.0f}s (check {checks})")
                delay = policy.interval

            await self._pause(cluster, delay, deadline, last_status)

    def _record_failure(self, cluster, policy: PollPolicy, failures: int, error: BaseException, last_status):
        failures += 1
        if failures > policy.max_retries:
            self.log.error(f"[{cluster}] health query failed {failures} times in a row, giving up: {error}")
            raise HealthUnavailableError(cluster, failures, cause=error, last_status=last_status) from error
        delay = policy.backoff_delay(failures)
        self.log.warning(
            f"[{cluster}] health query failed (attempt {failures}/{policy.max_retries + 1}): {error}. "
            f"Retrying in {delay:.1f}s"
        )
        return failures, delay

    async def _read(self, cluster: ClusterIdentity, deadline: Optional[float], last_status) -> HealthStatus:
        """One health read, raced against the cancel event and bounded by the deadline."""
        read = asyncio.ensure_future(self.check(cluster))
        cancelled = asyncio.ensure_future(self.cancel_event.wait())
        timeout = None if deadline is None else max(deadline - asyncio.get_running_loop().time(), 0)
        try:
            done, _ = await asyncio.wait({read, cancelled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not read.done():
                read.cancel()

        if cancelled in done:
            raise GateCancelledError(cluster, last_status=last_status)
        if read not in done:
            raise asyncio.TimeoutError()
        return read.result()

    async def _pause(self, cluster, delay: float, deadline: Optional[float], last_status) -> None:
        """Sleep for delay, waking early on cancel. Never sleeps past the deadline."""
        if deadline is not None:
            delay = min(delay, max(deadline - asyncio.get_running_loop().time(), 0))
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise GateCancelledError(cluster, last_status=last_status)
