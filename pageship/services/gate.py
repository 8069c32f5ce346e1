"""Per-target mutual exclusion for deployments.

A :class:`DeploymentGate` hands out at most one :class:`DeploymentPermit` at a
time. Waiters are served in arrival order and an in-flight permit is never
revoked; a new arrival only ever queues behind it.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import itertools
import logging
import threading
import time

from pageship.models.deployment import DeploymentPermit, GateStatus
from pageship.services.errors import GateSupersededError, GateTimeoutError


LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class _Waiter:
    ticket: int
    run_id: str | None
    superseded: bool = False


class DeploymentGate:
    """FIFO lock guarding a single deployment target."""

    def __init__(self, target: str, *, supersede_pending: bool = False) -> None:
        self.target = target
        self.supersede_pending = supersede_pending
        self._condition = threading.Condition()
        self._queue: deque[_Waiter] = deque()
        self._holder: DeploymentPermit | None = None
        self._tickets = itertools.count(1)

    def acquire(self, *, run_id: str | None = None, timeout: float | None = None) -> DeploymentPermit:
        """Block until this caller holds the permit for the target.

        Raises :class:`GateTimeoutError` when ``timeout`` elapses first and
        :class:`GateSupersededError` when the supersede policy drops the waiter.
        """

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            waiter = _Waiter(ticket=next(self._tickets), run_id=run_id)
            if self.supersede_pending and self._queue:
                for stale in self._queue:
                    stale.superseded = True
                LOGGER.info(
                    "GATE_SUPERSEDE target=%s dropped=%s by run_id=%s", self.target, len(self._queue), run_id
                )
                self._queue.clear()
                self._condition.notify_all()
            self._queue.append(waiter)
            LOGGER.info(
                "GATE_QUEUED target=%s run_id=%s ticket=%s ahead=%s",
                self.target,
                run_id,
                waiter.ticket,
                len(self._queue) - 1 + (self._holder is not None),
            )

            try:
                while not (self._holder is None and self._queue and self._queue[0] is waiter):
                    if waiter.superseded:
                        raise GateSupersededError(self.target, run_id)
                    if deadline is None:
                        self._condition.wait()
                        continue
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise GateTimeoutError(self.target, timeout)
                    self._condition.wait(remaining)
            except BaseException:
                # A waiter that gives up must not stay at the head of the queue.
                if waiter in self._queue:
                    self._queue.remove(waiter)
                    self._condition.notify_all()
                raise

            self._queue.popleft()
            permit = DeploymentPermit(
                target=self.target,
                ticket=waiter.ticket,
                run_id=run_id,
                acquired_at=datetime.now(timezone.utc),
            )
            self._holder = permit
            LOGGER.info("GATE_ACQUIRED target=%s run_id=%s ticket=%s", self.target, run_id, permit.ticket)
            return permit

    def release(self, permit: DeploymentPermit) -> None:
        """Return ``permit`` and wake the next queued waiter."""

        with self._condition:
            if self._holder is None or self._holder != permit:
                raise ValueError(f"Permit {permit.ticket} does not hold deployment gate '{self.target}'")
            self._holder = None
            self._condition.notify_all()
            LOGGER.info("GATE_RELEASED target=%s run_id=%s ticket=%s", self.target, permit.run_id, permit.ticket)

    @contextmanager
    def hold(self, *, run_id: str | None = None, timeout: float | None = None) -> Iterator[DeploymentPermit]:
        """Acquire the permit for the duration of the ``with`` block, releasing on every exit."""

        permit = self.acquire(run_id=run_id, timeout=timeout)
        try:
            yield permit
        finally:
            self.release(permit)

    def status(self) -> GateStatus:
        with self._condition:
            holder = self._holder
            return GateStatus(
                target=self.target,
                holder=holder.run_id if holder else None,
                holder_ticket=holder.ticket if holder else None,
                pending=len(self._queue),
            )


class GateRegistry:
    """One :class:`DeploymentGate` per target, created on first use."""

    def __init__(self, *, supersede_pending: bool = False) -> None:
        self._supersede_pending = supersede_pending
        self._gates: dict[str, DeploymentGate] = {}
        self._lock = threading.Lock()

    def gate(self, target: str) -> DeploymentGate:
        with self._lock:
            gate = self._gates.get(target)
            if gate is None:
                gate = DeploymentGate(target, supersede_pending=self._supersede_pending)
                self._gates[target] = gate
            return gate

    def acquire(self, target: str, *, run_id: str | None = None, timeout: float | None = None) -> DeploymentPermit:
        return self.gate(target).acquire(run_id=run_id, timeout=timeout)

    def release(self, permit: DeploymentPermit) -> None:
        self.gate(permit.target).release(permit)

    def hold(
        self, target: str, *, run_id: str | None = None, timeout: float | None = None
    ):
        return self.gate(target).hold(run_id=run_id, timeout=timeout)

    def snapshot(self) -> list[GateStatus]:
        with self._lock:
            gates = list(self._gates.values())
        return [gate.status() for gate in sorted(gates, key=lambda item: item.target)]
