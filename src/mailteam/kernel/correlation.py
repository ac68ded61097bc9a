"""Bookkeeping for request/response exchanges keyed by `requestId`.

Every permission, plan-approval and shutdown request gets one
`PendingCorrelation`. It starts `requested` and becomes `resolved` exactly once:
by the matching response, or by cancellation when the requesting agent's
process exits. Later resolution attempts return False and change nothing, so
approve/reject may be called defensively from racing callers.

There is no timeout here. A correlation can stay open indefinitely; callers
that want a deadline pass one to `wait()`.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from ..util.time import utc_now_iso
from .errors import AgentExitedError

CorrelationKind = Literal["permission", "plan", "shutdown"]
CorrelationState = Literal["requested", "resolved"]


@dataclass(frozen=True)
class Cancelled:
    """Outcome recorded when the owning agent exits before a response."""

    exit_code: Optional[int]


class PendingCorrelation:
    def __init__(self, request_id: str, agent_name: str, kind: CorrelationKind, request: Any = None) -> None:
        self.request_id = request_id
        self.agent_name = agent_name
        self.kind = kind
        self.request = request
        self.created_at = utc_now_iso()
        self.resolved_at: Optional[str] = None
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._outcome: Any = None

    @property
    def state(self) -> CorrelationState:
        return "resolved" if self._done.is_set() else "requested"

    @property
    def resolved(self) -> bool:
        return self._done.is_set()

    @property
    def cancelled(self) -> bool:
        return isinstance(self._outcome, Cancelled)

    @property
    def outcome(self) -> Any:
        return self._outcome

    def resolve(self, outcome: Any) -> bool:
        """Record `outcome`; True only for the call that performed the transition."""
        with self._lock:
            if self._done.is_set():
                return False
            self._outcome = outcome
            self.resolved_at = utc_now_iso()
            self._done.set()
        return True

    def cancel(self, exit_code: Optional[int]) -> bool:
        return self.resolve(Cancelled(exit_code))

    def wait(self, timeout: Optional[float] = None) -> Any:
        if not self._done.wait(timeout):
            raise TimeoutError(f"{self.kind} request {self.request_id} still pending after {timeout}s")
        outcome = self._outcome
        if isinstance(outcome, Cancelled):
            raise AgentExitedError(
                self.agent_name,
                outcome.exit_code,
                f"before {self.kind} request {self.request_id} was answered",
            )
        return outcome

    def __repr__(self) -> str:
        return f"PendingCorrelation({self.kind}, {self.request_id!r}, agent={self.agent_name!r}, {self.state})"


DEFAULT_MAX_RESOLVED = 1000


class CorrelationTable:
    """All open correlations of one controller plus the most recent resolved ones.

    Resolved entries are kept so a late duplicate response can be recognised;
    beyond `max_resolved` the oldest of them are dropped. Open entries are
    never dropped.
    """

    def __init__(self, max_resolved: int = DEFAULT_MAX_RESOLVED) -> None:
        self.max_resolved = max(0, int(max_resolved))
        self._lock = threading.Lock()
        self._items: Dict[str, PendingCorrelation] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _prune_locked(self) -> None:
        resolved = [rid for rid, c in self._items.items() if c.resolved]
        for rid in resolved[: max(0, len(resolved) - self.max_resolved)]:
            del self._items[rid]

    def open(self, request_id: str, agent_name: str, kind: CorrelationKind, request: Any = None) -> PendingCorrelation:
        """Register a request. A redelivered request id keeps the original entry."""
        with self._lock:
            existing = self._items.get(request_id)
            if existing is not None:
                return existing
            item = PendingCorrelation(request_id, agent_name, kind, request)
            self._items[request_id] = item
            self._prune_locked()
            return item

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def get(self, request_id: str) -> Optional[PendingCorrelation]:
        with self._lock:
            return self._items.get(request_id)

    def pending(self, agent_name: Optional[str] = None) -> List[PendingCorrelation]:
        with self._lock:
            items = list(self._items.values())
        return [c for c in items if not c.resolved and (agent_name is None or c.agent_name == agent_name)]

    def cancel_agent(self, agent_name: str, exit_code: Optional[int]) -> List[PendingCorrelation]:
        """Cancel every open correlation owned by `agent_name`; returns the ones cancelled here."""
        return [c for c in self.pending(agent_name) if c.cancel(exit_code)]

    def cancel_all(self, exit_code: Optional[int] = None) -> List[PendingCorrelation]:
        return [c for c in self.pending() if c.cancel(exit_code)]
