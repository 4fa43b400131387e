"""
Capacity Monitor - Live Provider Health, Load and Circuit Breaking
==================================================================

Tracks per-provider latency, error rate, in-flight depth and quota usage,
fed exclusively by provider adapters through record().

Rolling window:
    Samples are evicted FIFO by age (window_seconds), not by count, so the
    statistics stay recent under bursty traffic.

Circuit breaker (per provider):
    CLOSED ──K consecutive failures in window──► OPEN
    OPEN ──cooldown elapsed──► HALF_OPEN
    HALF_OPEN ──probe success──► CLOSED
    HALF_OPEN ──probe failure──► OPEN (cooldown restarts)

    HALF_OPEN admits exactly one probe at a time. try_admit() hands the probe
    an id and only a record() carrying that id frees the slot, so calls
    admitted before the circuit opened cannot release it. Cancelled calls are
    not failures.

Quota:
    rpm/tpm admissions are counted in a sliding window. An exhausted quota
    makes a provider ineligible for routing without touching its circuit.

Concurrency:
    Each provider has its own lock around its bookkeeping. Requests are
    never serialized, only the read-modify-write of one provider's counters.
    Snapshots are copies and may be slightly stale by the time they are used.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from prime_router.core.router_config import MonitorConfig
from prime_router.core.router_models import (
    Admission,
    AttemptOutcome,
    CircuitState,
    ProviderDescriptor,
    ProviderState,
)
from prime_router.core.router_telemetry import EventType, RouterEvent, TelemetryEmitter

logger = logging.getLogger(__name__)


class _ProviderCell:
    """Mutable per-provider bookkeeping. Only touched under its own lock."""

    __slots__ = (
        "provider_id", "lock", "samples", "failure_streak", "admissions",
        "state", "opened_at", "probe_id", "probe_seq", "in_flight",
        "total_calls", "total_failures", "total_tokens", "times_opened",
    )

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        self.lock = threading.Lock()

        # (timestamp, success, latency_ms)
        self.samples: Deque[Tuple[float, bool, float]] = deque()
        # timestamps of failures since the last success
        self.failure_streak: Deque[float] = deque()
        # (timestamp, tokens) for quota accounting
        self.admissions: Deque[Tuple[float, int]] = deque()

        self.state = CircuitState.CLOSED
        self.opened_at: Optional[float] = None
        # id of the admission holding the half-open probe slot
        self.probe_id: Optional[int] = None
        self.probe_seq = 0
        self.in_flight = 0

        self.total_calls = 0
        self.total_failures = 0
        self.total_tokens = 0
        self.times_opened = 0


class CapacityMonitor:
    """
    Per-provider live metrics and circuit breakers.

    Usage:
        monitor = CapacityMonitor(MonitorConfig(failure_threshold=3))

        # Adapters report every call exactly once
        monitor.record("local-llama", AttemptOutcome.SUCCESS, latency_ms=420.0)

        # Routing reads snapshots
        state = monitor.snapshot("local-llama")
        if state.available:
            ...
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        emitter: Optional[TelemetryEmitter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or MonitorConfig()
        self._emitter = emitter
        self._clock = clock
        self._cells: Dict[str, _ProviderCell] = {}
        self._cells_lock = threading.Lock()

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def record(
        self,
        provider_id: str,
        outcome: AttemptOutcome,
        latency_ms: float,
        tokens: int = 0,
        probe_id: Optional[int] = None,
    ) -> None:
        """
        Record the outcome of one provider call.

        probe_id is the Admission.probe_id of the call, if it had one.
        """
        cell = self._cell(provider_id)
        transitions: List[Tuple[CircuitState, CircuitState, str]] = []

        with cell.lock:
            now = self._clock()
            self._advance(cell, now, transitions)
            self._evict(cell, now)

            cell.in_flight = max(0, cell.in_flight - 1)
            is_probe = probe_id is not None and probe_id == cell.probe_id
            if is_probe:
                cell.probe_id = None

            if outcome == AttemptOutcome.CANCELLED:
                pass
            elif outcome == AttemptOutcome.SUCCESS:
                cell.total_calls += 1
                cell.total_tokens += max(tokens, 0)
                cell.samples.append((now, True, latency_ms))
                cell.failure_streak.clear()

                if cell.state == CircuitState.HALF_OPEN:
                    self._transition(cell, CircuitState.CLOSED, now, transitions,
                                     "probe succeeded" if is_probe else "success while half-open")
            else:
                cell.total_calls += 1
                cell.total_failures += 1
                cell.samples.append((now, False, latency_ms))
                cell.failure_streak.append(now)

                if cell.state == CircuitState.HALF_OPEN:
                    self._transition(cell, CircuitState.OPEN, now, transitions,
                                     "probe failed" if is_probe else "failure while half-open")
                elif (
                    cell.state == CircuitState.CLOSED
                    and len(cell.failure_streak) >= self.config.failure_threshold
                ):
                    self._transition(
                        cell, CircuitState.OPEN, now, transitions,
                        f"{len(cell.failure_streak)} consecutive failures",
                    )

        self._emit_transitions(provider_id, transitions)

    def snapshot(self, provider_id: str) -> ProviderState:
        """Copy of one provider's current state."""
        cell = self._cell(provider_id)
        transitions: List[Tuple[CircuitState, CircuitState, str]] = []

        with cell.lock:
            now = self._clock()
            self._advance(cell, now, transitions)
            self._evict(cell, now)
            state = self._build_state(cell)

        self._emit_transitions(provider_id, transitions)
        return state

    def snapshot_all(self, provider_ids: Optional[List[str]] = None) -> Dict[str, ProviderState]:
        ids = provider_ids if provider_ids is not None else list(self._cells)
        return {pid: self.snapshot(pid) for pid in ids}

    def try_admit(self, descriptor: ProviderDescriptor, tokens: int = 0) -> Admission:
        """
        Claim capacity for one call.

        Counts the call against rpm/tpm quota and in-flight depth, and claims
        the probe slot when the circuit is half-open. The returned Admission
        is falsy when the circuit is open, the probe slot is taken, or quota
        is exhausted. Pass its probe_id back to record().
        """
        cell = self._cell(descriptor.provider_id)
        transitions: List[Tuple[CircuitState, CircuitState, str]] = []

        with cell.lock:
            now = self._clock()
            self._advance(cell, now, transitions)
            self._evict(cell, now)

            reason: Optional[str] = None
            probe_id: Optional[int] = None
            if cell.state == CircuitState.OPEN:
                reason = "circuit open"
            elif cell.state == CircuitState.HALF_OPEN and cell.probe_id is not None:
                reason = "probe in flight"
            else:
                reason = quota_block_reason(descriptor, self._build_state(cell), tokens)

            if reason is None:
                if cell.state == CircuitState.HALF_OPEN:
                    cell.probe_seq += 1
                    cell.probe_id = probe_id = cell.probe_seq
                cell.admissions.append((now, max(tokens, 0)))
                cell.in_flight += 1

        self._emit_transitions(descriptor.provider_id, transitions)
        return Admission(
            admitted=reason is None,
            provider_id=descriptor.provider_id,
            probe_id=probe_id,
            reason=reason,
        )

    def reset(self, provider_id: str) -> None:
        """Forget everything about a provider (circuit closed, no samples)."""
        with self._cells_lock:
            self._cells.pop(provider_id, None)
        logger.info(f"Capacity state reset for {provider_id}")

    def get_statistics(self) -> Dict[str, Any]:
        providers = {}
        for provider_id in list(self._cells):
            cell = self._cells.get(provider_id)
            if cell is None:
                continue
            data = self.snapshot(provider_id).to_dict()
            with cell.lock:
                data.update({
                    "total_calls": cell.total_calls,
                    "total_failures": cell.total_failures,
                    "total_tokens": cell.total_tokens,
                    "times_opened": cell.times_opened,
                })
            providers[provider_id] = data

        return {
            "window_seconds": self.config.window_seconds,
            "failure_threshold": self.config.failure_threshold,
            "cooldown_seconds": self.config.cooldown_seconds,
            "providers": providers,
        }

    # =========================================================================
    # INTERNALS (caller holds cell.lock)
    # =========================================================================

    def _cell(self, provider_id: str) -> _ProviderCell:
        cell = self._cells.get(provider_id)
        if cell is None:
            with self._cells_lock:
                cell = self._cells.get(provider_id)
                if cell is None:
                    cell = _ProviderCell(provider_id)
                    self._cells[provider_id] = cell
        return cell

    def _advance(
        self,
        cell: _ProviderCell,
        now: float,
        transitions: List[Tuple[CircuitState, CircuitState, str]],
    ) -> None:
        """OPEN becomes HALF_OPEN once the cooldown has elapsed."""
        if (
            cell.state == CircuitState.OPEN
            and cell.opened_at is not None
            and now - cell.opened_at >= self.config.cooldown_seconds
        ):
            self._transition(cell, CircuitState.HALF_OPEN, now, transitions, "cooldown elapsed")

    def _evict(self, cell: _ProviderCell, now: float) -> None:
        cutoff = now - self.config.window_seconds
        while cell.samples and cell.samples[0][0] < cutoff:
            cell.samples.popleft()
        while cell.failure_streak and cell.failure_streak[0] < cutoff:
            cell.failure_streak.popleft()

        quota_cutoff = now - self.config.quota_window_seconds
        while cell.admissions and cell.admissions[0][0] < quota_cutoff:
            cell.admissions.popleft()

    def _transition(
        self,
        cell: _ProviderCell,
        new_state: CircuitState,
        now: float,
        transitions: List[Tuple[CircuitState, CircuitState, str]],
        reason: str,
    ) -> None:
        old_state = cell.state
        if old_state == new_state:
            return

        cell.state = new_state
        if new_state == CircuitState.OPEN:
            cell.opened_at = now
            cell.probe_id = None
            cell.times_opened += 1
        elif new_state == CircuitState.HALF_OPEN:
            cell.probe_id = None
        elif new_state == CircuitState.CLOSED:
            cell.opened_at = None
            cell.probe_id = None
            cell.failure_streak.clear()

        transitions.append((old_state, new_state, reason))

    def _build_state(self, cell: _ProviderCell) -> ProviderState:
        latencies = [latency for _, ok, latency in cell.samples if ok]
        failures = sum(1 for _, ok, _ in cell.samples if not ok)
        sample_count = len(cell.samples)

        available = cell.state == CircuitState.CLOSED or (
            cell.state == CircuitState.HALF_OPEN and cell.probe_id is None
        )

        return ProviderState(
            provider_id=cell.provider_id,
            circuit_state=cell.state,
            available=available,
            consecutive_failures=len(cell.failure_streak),
            queue_depth=cell.in_flight,
            rolling_latency_ms=(sum(latencies) / len(latencies)) if latencies else None,
            error_rate=(failures / sample_count) if sample_count else 0.0,
            sample_count=sample_count,
            requests_in_window=len(cell.admissions),
            tokens_in_window=sum(t for _, t in cell.admissions),
            opened_at=cell.opened_at,
            probe_in_flight=cell.probe_id is not None,
        )

    def _emit_transitions(
        self,
        provider_id: str,
        transitions: List[Tuple[CircuitState, CircuitState, str]],
    ) -> None:
        for old_state, new_state, reason in transitions:
            if new_state == CircuitState.OPEN:
                logger.warning(f"Circuit {provider_id}: {old_state.value} -> {new_state.value} ({reason})")
            else:
                logger.info(f"Circuit {provider_id}: {old_state.value} -> {new_state.value} ({reason})")

            if self._emitter is not None:
                self._emitter.emit(RouterEvent(
                    event_type=EventType.CIRCUIT_STATE,
                    provider_id=provider_id,
                    state=new_state.value,
                    from_state=old_state.value,
                    reason=reason,
                ))


def quota_block_reason(
    descriptor: ProviderDescriptor,
    state: ProviderState,
    tokens: int = 0,
) -> Optional[str]:
    """Return why rpm/tpm quota blocks another call, or None."""
    if descriptor.rpm_limit is not None and state.requests_in_window >= descriptor.rpm_limit:
        return f"rpm quota exhausted ({state.requests_in_window}/{descriptor.rpm_limit})"

    if descriptor.tpm_limit is not None and state.tokens_in_window + tokens > descriptor.tpm_limit:
        return f"tpm quota exhausted ({state.tokens_in_window}+{tokens}/{descriptor.tpm_limit})"

    return None
