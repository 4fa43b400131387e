"""Tests for the capacity monitor and per-provider circuit breakers."""

import pytest

from prime_router.core.capacity_monitor import quota_block_reason
from prime_router.core.router_models import AttemptOutcome, CircuitState, ProviderState
from prime_router.core.router_telemetry import EventType


def fail(monitor, provider_id, times=1):
    for _ in range(times):
        monitor.record(provider_id, AttemptOutcome.ERROR, latency_ms=100.0)


class TestCircuitBreaker:
    """Closed -> open -> half-open -> closed transitions."""

    def test_closed_by_default(self, monitor):
        """Unknown providers start closed and available."""
        state = monitor.snapshot("local-llama")

        assert state.circuit_state == CircuitState.CLOSED
        assert state.available is True
        assert state.sample_count == 0

    def test_opens_after_k_consecutive_failures(self, monitor):
        """K consecutive failures open the circuit."""
        fail(monitor, "local-llama", 2)
        assert monitor.snapshot("local-llama").available is True

        fail(monitor, "local-llama")
        state = monitor.snapshot("local-llama")

        assert state.circuit_state == CircuitState.OPEN
        assert state.available is False
        assert state.consecutive_failures == 3

    def test_success_resets_failure_streak(self, monitor):
        """A success in between breaks the consecutive run."""
        fail(monitor, "local-llama", 2)
        monitor.record("local-llama", AttemptOutcome.SUCCESS, latency_ms=50.0)
        fail(monitor, "local-llama", 2)

        state = monitor.snapshot("local-llama")
        assert state.circuit_state == CircuitState.CLOSED
        assert state.consecutive_failures == 2

    def test_failures_outside_window_are_evicted(self, monitor, clock):
        """Failures older than the window do not count toward K."""
        fail(monitor, "local-llama", 2)
        clock.advance(61)
        fail(monitor, "local-llama")

        state = monitor.snapshot("local-llama")
        assert state.circuit_state == CircuitState.CLOSED
        assert state.consecutive_failures == 1
        assert state.sample_count == 1

    def test_half_open_after_cooldown(self, monitor, clock):
        """Open becomes half-open purely on elapsed cooldown."""
        fail(monitor, "local-llama", 3)

        clock.advance(29)
        assert monitor.snapshot("local-llama").circuit_state == CircuitState.OPEN

        clock.advance(1)
        state = monitor.snapshot("local-llama")
        assert state.circuit_state == CircuitState.HALF_OPEN
        assert state.available is True

    def test_half_open_admits_exactly_one_probe(self, monitor, clock, local_provider):
        """Only one probe may be in flight while half-open."""
        fail(monitor, local_provider.provider_id, 3)
        clock.advance(30)

        assert monitor.try_admit(local_provider).admitted is True
        assert monitor.try_admit(local_provider).admitted is False

        state = monitor.snapshot(local_provider.provider_id)
        assert state.probe_in_flight is True
        assert state.available is False

    def test_stale_call_does_not_free_probe_slot(self, monitor, clock, local_provider):
        """A call admitted before the circuit opened cannot release the probe slot."""
        provider_id = local_provider.provider_id
        stale = monitor.try_admit(local_provider)
        assert stale.probe_id is None

        fail(monitor, provider_id, 3)
        clock.advance(30)

        probe = monitor.try_admit(local_provider)
        assert probe.probe_id is not None

        monitor.record(provider_id, AttemptOutcome.CANCELLED, latency_ms=5.0, probe_id=stale.probe_id)
        second = monitor.try_admit(local_provider)
        assert second.admitted is False
        assert second.reason == "probe in flight"

        monitor.record(provider_id, AttemptOutcome.CANCELLED, latency_ms=5.0, probe_id=probe.probe_id)
        assert monitor.try_admit(local_provider).probe_id is not None

    def test_late_probe_from_earlier_half_open_is_ignored(self, monitor, clock, local_provider):
        """An outdated probe id never frees the current probe's slot."""
        provider_id = local_provider.provider_id
        fail(monitor, provider_id, 3)
        clock.advance(30)
        first = monitor.try_admit(local_provider)

        fail(monitor, provider_id)
        clock.advance(30)
        current = monitor.try_admit(local_provider)
        assert current.probe_id != first.probe_id

        monitor.record(provider_id, AttemptOutcome.CANCELLED, latency_ms=5.0, probe_id=first.probe_id)
        assert monitor.try_admit(local_provider).admitted is False

    def test_probe_success_closes(self, monitor, clock, local_provider):
        """One successful probe closes the circuit."""
        fail(monitor, local_provider.provider_id, 3)
        clock.advance(30)

        assert monitor.try_admit(local_provider)
        monitor.record(local_provider.provider_id, AttemptOutcome.SUCCESS, latency_ms=80.0)

        state = monitor.snapshot(local_provider.provider_id)
        assert state.circuit_state == CircuitState.CLOSED
        assert state.available is True
        assert state.consecutive_failures == 0

    def test_probe_failure_reopens_and_restarts_cooldown(self, monitor, clock, local_provider):
        """A failed probe reopens the circuit for a full cooldown."""
        fail(monitor, local_provider.provider_id, 3)
        clock.advance(30)

        assert monitor.try_admit(local_provider)
        fail(monitor, local_provider.provider_id)
        assert monitor.snapshot(local_provider.provider_id).circuit_state == CircuitState.OPEN

        clock.advance(29)
        assert monitor.snapshot(local_provider.provider_id).circuit_state == CircuitState.OPEN

        clock.advance(1)
        assert monitor.snapshot(local_provider.provider_id).circuit_state == CircuitState.HALF_OPEN

    def test_failures_while_open_do_not_extend_cooldown(self, monitor, clock):
        """Extra failures while open leave the cooldown and other providers alone."""
        fail(monitor, "local-llama", 3)
        opened_at = monitor.snapshot("local-llama").opened_at

        clock.advance(10)
        fail(monitor, "local-llama", 5)

        assert monitor.snapshot("local-llama").opened_at == opened_at
        other = monitor.snapshot("cloud-claude")
        assert other.circuit_state == CircuitState.CLOSED
        assert other.sample_count == 0

        clock.advance(20)
        assert monitor.snapshot("local-llama").circuit_state == CircuitState.HALF_OPEN

    def test_open_circuit_refuses_admission(self, monitor, local_provider):
        """try_admit refuses while the circuit is open."""
        fail(monitor, local_provider.provider_id, 3)
        assert monitor.try_admit(local_provider).admitted is False

    def test_cancellation_is_not_a_failure(self, monitor):
        """Cancelled calls never count toward K."""
        for _ in range(5):
            monitor.record("local-llama", AttemptOutcome.CANCELLED, latency_ms=10.0)

        state = monitor.snapshot("local-llama")
        assert state.circuit_state == CircuitState.CLOSED
        assert state.sample_count == 0

    def test_timeouts_count_as_failures(self, monitor):
        """Timeouts are failures like any other error."""
        for _ in range(3):
            monitor.record("local-llama", AttemptOutcome.TIMEOUT, latency_ms=30000.0)

        assert monitor.snapshot("local-llama").circuit_state == CircuitState.OPEN

    def test_transitions_are_emitted(self, monitor, sink, clock):
        """Every circuit transition produces one telemetry event."""
        fail(monitor, "local-llama", 3)
        clock.advance(30)
        monitor.snapshot("local-llama")

        events = [e for e in sink.events if e.event_type == EventType.CIRCUIT_STATE]
        assert [(e.from_state, e.state) for e in events] == [
            ("closed", "open"),
            ("open", "half_open"),
        ]
        assert all(e.provider_id == "local-llama" for e in events)

    def test_reset_forgets_provider(self, monitor):
        """reset() returns a provider to a fresh closed state."""
        fail(monitor, "local-llama", 3)
        monitor.reset("local-llama")

        state = monitor.snapshot("local-llama")
        assert state.circuit_state == CircuitState.CLOSED
        assert state.sample_count == 0


class TestRollingMetrics:
    """Latency, error rate and queue depth."""

    def test_rolling_latency_and_error_rate(self, monitor):
        """Latency averages successes, error rate covers all samples."""
        monitor.record("local-llama", AttemptOutcome.SUCCESS, latency_ms=100.0)
        monitor.record("local-llama", AttemptOutcome.SUCCESS, latency_ms=300.0)
        monitor.record("local-llama", AttemptOutcome.ERROR, latency_ms=900.0)
        monitor.record("local-llama", AttemptOutcome.SUCCESS, latency_ms=200.0)

        state = monitor.snapshot("local-llama")
        assert state.rolling_latency_ms == pytest.approx(200.0)
        assert state.error_rate == pytest.approx(0.25)
        assert state.sample_count == 4

    def test_samples_evicted_by_time(self, monitor, clock):
        """Old samples leave the window by age."""
        monitor.record("local-llama", AttemptOutcome.SUCCESS, latency_ms=1000.0)
        clock.advance(45)
        monitor.record("local-llama", AttemptOutcome.SUCCESS, latency_ms=100.0)
        clock.advance(20)

        state = monitor.snapshot("local-llama")
        assert state.sample_count == 1
        assert state.rolling_latency_ms == pytest.approx(100.0)

    def test_queue_depth_tracks_in_flight(self, monitor, local_provider):
        """Admissions raise queue depth, recorded outcomes lower it."""
        monitor.try_admit(local_provider)
        monitor.try_admit(local_provider)
        assert monitor.snapshot(local_provider.provider_id).queue_depth == 2

        monitor.record(local_provider.provider_id, AttemptOutcome.SUCCESS, latency_ms=10.0)
        assert monitor.snapshot(local_provider.provider_id).queue_depth == 1

    def test_statistics(self, monitor):
        """get_statistics reports totals per provider."""
        monitor.record("local-llama", AttemptOutcome.SUCCESS, latency_ms=10.0, tokens=42)
        fail(monitor, "local-llama")

        stats = monitor.get_statistics()
        provider = stats["providers"]["local-llama"]
        assert provider["total_calls"] == 2
        assert provider["total_failures"] == 1
        assert provider["total_tokens"] == 42
        assert stats["failure_threshold"] == 3


class TestQuota:
    """rpm/tpm admission."""

    def test_rpm_quota_blocks_without_opening_circuit(self, monitor, clock, make_provider):
        """An exhausted rpm quota refuses admission but the circuit stays closed."""
        provider = make_provider("cloud-gpt", rpm_limit=2)

        assert monitor.try_admit(provider)
        assert monitor.try_admit(provider)
        assert monitor.try_admit(provider).admitted is False

        state = monitor.snapshot(provider.provider_id)
        assert state.circuit_state == CircuitState.CLOSED
        assert quota_block_reason(provider, state) is not None

        clock.advance(61)
        assert monitor.try_admit(provider)

    def test_tpm_quota_counts_tokens(self, monitor, make_provider):
        """tpm admission counts the tokens claimed by each call."""
        provider = make_provider("cloud-gpt", tpm_limit=100)

        assert monitor.try_admit(provider, tokens=60)
        assert monitor.try_admit(provider, tokens=60).admitted is False
        assert monitor.try_admit(provider, tokens=40)

    def test_no_limits_never_block(self, make_provider):
        """Providers without quotas are never quota-blocked."""
        provider = make_provider("local-llama")
        state = ProviderState(provider_id="local-llama", requests_in_window=10 ** 6, tokens_in_window=10 ** 9)

        assert quota_block_reason(provider, state, tokens=10 ** 6) is None
