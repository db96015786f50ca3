# sync.py
"""Apply a tunnel ingress document to Cloudflare.

The remote only supports whole-document replacement and has no transactions,
so every write for a given tunnel goes through one serialized runner:

- one apply in flight per tunnel id;
- callers arriving meanwhile park their document as "pending" and wait;
  the runner does exactly one follow-up with the newest pending document;
- a write happens only when the remote document differs (ordered
  hostname/path/service comparison).

Transient failures are retried here with exponential backoff; whatever
escapes is already classified for the worker.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

from errors import AuthError, ControllerError, TransientError, ValidationError, classify
from ingress.builder import MAX_INGRESS_RULES, IngressRule, ensure_catch_all
from ingress.diff import documents_equal, merge_config
from metrics import METRICS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    tunnel_id: str
    changed: bool
    rules: int
    attempts: int = 1


class _Work:
    __slots__ = ("account_id", "rules", "cf")

    def __init__(self, account_id: str, rules: List[dict], cf):
        self.account_id = account_id
        self.rules = rules
        self.cf = cf


class _Tunnel:
    def __init__(self) -> None:
        self.running = False
        self.seq = 0  # run currently in flight (or last started)
        self.done = 0  # last finished run
        self.pending: Optional[_Work] = None
        self.waiters: Dict[int, int] = {}
        self.outcomes: Dict[int, Union[SyncResult, BaseException]] = {}


class SyncEngine:
    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        stop_event: Optional[threading.Event] = None,
        metrics=None,
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.stop_event = stop_event or threading.Event()
        self.metrics = metrics or METRICS
        self._cond = threading.Condition()
        self._tunnels: Dict[str, _Tunnel] = {}

    def apply(self, tunnel_id: str, account_id: str, document: Sequence[Union[IngressRule, dict]], cf) -> SyncResult:
        rules = ensure_catch_all(
            [r.to_dict() if isinstance(r, IngressRule) else dict(r) for r in document]
        )
        work = _Work(account_id, rules, cf)

        with self._cond:
            t = self._tunnels.setdefault(tunnel_id, _Tunnel())
            if t.running:
                # coalesce: only the newest document survives
                ticket = t.seq + 1
                t.pending = work
                t.waiters[ticket] = t.waiters.get(ticket, 0) + 1
                logger.debug("[sync] tunnel %s busy, parked document for run #%d", tunnel_id, ticket)
                while t.done < ticket:
                    self._cond.wait()
                outcome = t.outcomes[ticket]
                t.waiters[ticket] -= 1
                if t.waiters[ticket] == 0:
                    del t.waiters[ticket]
                    del t.outcomes[ticket]
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome

            t.running = True
            t.seq += 1
            mine = t.seq

        own: Union[SyncResult, BaseException, None] = None
        seq = mine
        finished = False
        try:
            while True:
                try:
                    outcome: Union[SyncResult, BaseException] = self._apply_once(tunnel_id, work)
                except ControllerError as e:
                    outcome = e
                except Exception as e:
                    # handed to whoever waits on this run
                    logger.exception("[sync] unexpected failure applying tunnel %s", tunnel_id)
                    outcome = e

                if seq == mine:
                    own = outcome

                with self._cond:
                    if t.waiters.get(seq):
                        t.outcomes[seq] = outcome
                    t.done = seq
                    if t.pending is not None:
                        work = t.pending
                        t.pending = None
                        t.seq += 1
                        seq = t.seq
                        self._cond.notify_all()
                        continue
                    t.running = False
                    self._cond.notify_all()
                    finished = True
                    break
        finally:
            if not finished:
                self._abandon(tunnel_id, t)

        if isinstance(own, BaseException):
            raise own
        return own

    def _abandon(self, tunnel_id: str, t: _Tunnel) -> None:
        """Runner is unwinding (interrupt, exit): fail parked callers, free the tunnel."""
        with self._cond:
            aborted = TransientError(f"sync of tunnel {tunnel_id} interrupted")
            for ticket in t.waiters:
                t.outcomes[ticket] = aborted
            if t.waiters:
                t.seq = max(t.seq, max(t.waiters))
            t.done = t.seq
            t.pending = None
            t.running = False
            self._cond.notify_all()
        logger.warning("[sync] tunnel %s runner interrupted, parked callers released", tunnel_id)

    def _apply_once(self, tunnel_id: str, work: _Work) -> SyncResult:
        start = time.monotonic()
        try:
            result = self._apply_with_retry(tunnel_id, work)
        except ControllerError as e:
            self.metrics.record_sync(tunnel_id, time.monotonic() - start, "error")
            self.metrics.record_sync_error(classify(e))
            raise
        self.metrics.record_sync(tunnel_id, time.monotonic() - start, "success" if result.changed else "unchanged")
        self.metrics.set_ingress_rules(tunnel_id, result.rules)
        return result

    def _apply_with_retry(self, tunnel_id: str, work: _Work) -> SyncResult:
        if len(work.rules) > MAX_INGRESS_RULES:
            raise ValidationError(f"ingress rules limit exceeded: {len(work.rules)} rules (max {MAX_INGRESS_RULES})")

        attempt = 0
        while True:
            attempt += 1
            if self.stop_event.is_set():
                raise TransientError(f"sync of tunnel {tunnel_id} cancelled")
            try:
                return self._fetch_compare_replace(tunnel_id, work, attempt)
            except AuthError:
                raise
            except ControllerError as e:
                if not e.retryable:
                    raise
                if attempt >= self.max_attempts:
                    raise TransientError(
                        f"sync of tunnel {tunnel_id} failed after {attempt} attempts: {e}",
                        status_code=e.status_code,
                    ) from e
                delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
                logger.warning("[sync] tunnel %s attempt %d failed (%s), retrying in %.1fs", tunnel_id, attempt, e, delay)
                if self.stop_event.wait(delay):
                    raise TransientError(f"sync of tunnel {tunnel_id} cancelled") from e

    def _fetch_compare_replace(self, tunnel_id: str, work: _Work, attempt: int) -> SyncResult:
        current_config = work.cf.get_configuration(work.account_id, tunnel_id)
        current = current_config.get("ingress") or []
        if documents_equal(current, work.rules):
            logger.debug("[sync] tunnel %s already up to date (%d rules)", tunnel_id, len(work.rules))
            return SyncResult(tunnel_id=tunnel_id, changed=False, rules=len(work.rules), attempts=attempt)

        work.cf.update_configuration(work.account_id, tunnel_id, merge_config(current_config, work.rules))
        logger.info("[sync] updated tunnel %s configuration (%d rules)", tunnel_id, len(work.rules))
        return SyncResult(tunnel_id=tunnel_id, changed=True, rules=len(work.rules), attempts=attempt)
