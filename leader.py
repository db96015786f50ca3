# leader.py
from __future__ import annotations

import logging
import socket
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError as TransportError

logger = logging.getLogger(__name__)


def default_identity() -> str:
    return f"{socket.gethostname()}_{uuid.uuid4().hex[:8]}"


class LeaderElector:
    """coordination.k8s.io/v1 Lease based leader election.

    `run()` blocks: it waits to acquire the lease, calls `on_started`, keeps
    renewing, and calls `on_stopped` once renewal has failed for longer than
    `renew_deadline` or the stop event is set.
    """

    def __init__(
        self,
        name: str,
        namespace: str,
        identity: Optional[str] = None,
        lease_duration: float = 15.0,
        renew_deadline: float = 10.0,
        retry_period: float = 2.0,
        on_started: Optional[Callable[[], None]] = None,
        on_stopped: Optional[Callable[[], None]] = None,
        coordination=None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.name = name
        self.namespace = namespace
        self.identity = identity or default_identity()
        self.lease_duration = lease_duration
        self.renew_deadline = renew_deadline
        self.retry_period = retry_period
        self.on_started = on_started
        self.on_stopped = on_stopped
        self.api = coordination or client.CoordinationV1Api()
        self.now = now
        self.is_leader = False

    def _new_lease(self, now: datetime):
        return client.V1Lease(
            metadata=client.V1ObjectMeta(name=self.name, namespace=self.namespace),
            spec=client.V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=int(self.lease_duration),
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            ),
        )

    def try_acquire_or_renew(self) -> bool:
        now = self.now()
        timeout = self.renew_deadline
        try:
            lease = self.api.read_namespaced_lease(self.name, self.namespace, _request_timeout=timeout)
        except ApiException as e:
            if e.status != 404:
                logger.warning("[leader] reading lease failed: %s", e.reason)
                return False
            try:
                self.api.create_namespaced_lease(self.namespace, self._new_lease(now), _request_timeout=timeout)
            except ApiException as ce:
                logger.debug("[leader] creating lease failed: %s", ce.reason)
                return False
            return True
        except TransportError as e:
            logger.warning("[leader] reading lease failed: %s", e)
            return False

        spec = lease.spec or client.V1LeaseSpec()
        holder = spec.holder_identity
        duration = spec.lease_duration_seconds or int(self.lease_duration)
        expired = spec.renew_time is None or spec.renew_time + timedelta(seconds=duration) < now
        if holder and holder != self.identity and not expired:
            return False

        if holder != self.identity:
            spec.holder_identity = self.identity
            spec.acquire_time = now
            spec.lease_transitions = (spec.lease_transitions or 0) + 1
        spec.renew_time = now
        spec.lease_duration_seconds = int(self.lease_duration)
        lease.spec = spec
        try:
            self.api.replace_namespaced_lease(self.name, self.namespace, lease, _request_timeout=timeout)
        except ApiException as e:
            # 409: someone else got there first
            logger.debug("[leader] updating lease failed: %s", e.reason)
            return False
        except TransportError as e:
            logger.warning("[leader] updating lease failed: %s", e)
            return False
        return True

    def release(self) -> None:
        """Give the lease up so a standby doesn't wait for expiry."""
        try:
            lease = self.api.read_namespaced_lease(self.name, self.namespace, _request_timeout=self.renew_deadline)
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            lease.spec.lease_duration_seconds = 1
            self.api.replace_namespaced_lease(self.name, self.namespace, lease, _request_timeout=self.renew_deadline)
            logger.info("[leader] released lease %s/%s", self.namespace, self.name)
        except (ApiException, TransportError) as e:
            logger.warning("[leader] releasing lease failed: %s", e)

    def run(self, stop_event: threading.Event) -> None:
        logger.info("[leader] %s waiting for lease %s/%s", self.identity, self.namespace, self.name)
        while not stop_event.is_set():
            if self.try_acquire_or_renew():
                break
            stop_event.wait(self.retry_period)
        if stop_event.is_set():
            return

        self.is_leader = True
        logger.info("[leader] %s acquired lease", self.identity)
        if self.on_started:
            self.on_started()

        last_renew = time.monotonic()
        while not stop_event.wait(self.retry_period):
            if self.try_acquire_or_renew():
                last_renew = time.monotonic()
            elif time.monotonic() - last_renew > self.renew_deadline:
                logger.error("[leader] %s lost the lease", self.identity)
                break

        self.is_leader = False
        if stop_event.is_set():
            self.release()
        if self.on_stopped:
            self.on_stopped()
