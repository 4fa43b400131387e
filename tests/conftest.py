"""
Pytest configuration and fixtures for Prime Router tests.
"""

from typing import Callable, List, Optional, Union

import pytest

from prime_router.core.capacity_monitor import CapacityMonitor
from prime_router.core.provider_adapters import AdapterRegistry, CallableAdapter
from prime_router.core.quality_gate import QualityGate, QualityThreshold, StaticScorer
from prime_router.core.request_orchestrator import RequestOrchestrator
from prime_router.core.router_config import MonitorConfig, ProviderRegistry
from prime_router.core.router_models import ProviderDescriptor, ProviderKind, ProviderResponse
from prime_router.core.router_telemetry import InMemorySink, TelemetryEmitter


# ============= Clock =============

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# ============= Telemetry =============

@pytest.fixture
def sink():
    return InMemorySink()


@pytest.fixture
def emitter(sink):
    return TelemetryEmitter([sink])


# ============= Providers =============

def _make_provider(
    provider_id: str,
    kind: ProviderKind = ProviderKind.LOCAL,
    adapter: str = "scripted",
    **kwargs,
) -> ProviderDescriptor:
    return ProviderDescriptor(provider_id=provider_id, kind=kind, adapter=adapter, **kwargs)


@pytest.fixture
def make_provider():
    return _make_provider


@pytest.fixture
def local_provider():
    return _make_provider("local-llama", ProviderKind.LOCAL, priority=10)


@pytest.fixture
def cloud_provider():
    return _make_provider("cloud-claude", ProviderKind.CLOUD, priority=50, max_context_tokens=200000)


@pytest.fixture
def monitor(clock, emitter):
    return CapacityMonitor(
        MonitorConfig(window_seconds=60, failure_threshold=3, cooldown_seconds=30),
        emitter=emitter,
        clock=clock,
    )


# ============= Scripted backend =============

class ScriptedBackend:
    """
    Async backend replaying a script per provider.

    Each script entry is a response text, a ProviderResponse, or an
    exception instance to raise. The last entry repeats once the script runs
    out.
    """

    def __init__(self, scripts: Optional[dict] = None, default: Union[str, Exception] = "ok"):
        self.scripts = {k: list(v) for k, v in (scripts or {}).items()}
        self.default = default
        self.calls: List[str] = []

    async def __call__(self, request, descriptor):
        self.calls.append(descriptor.provider_id)
        script = self.scripts.get(descriptor.provider_id)
        item = self.default
        if script:
            item = script.pop(0) if len(script) > 1 else script[0]

        if isinstance(item, BaseException):
            raise item
        if isinstance(item, ProviderResponse):
            return item
        return ProviderResponse(text=item, provider_id=descriptor.provider_id, completion_tokens=len(item.split()))


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def build_orchestrator(monitor, emitter, backend) -> Callable[..., RequestOrchestrator]:
    """Factory building an orchestrator over scripted providers."""

    def _build(
        providers: List[ProviderDescriptor],
        score: float = 1.0,
        min_score: float = 0.5,
        escalation_cap: int = 2,
    ) -> RequestOrchestrator:
        adapters = AdapterRegistry(monitor)
        adapters.register("scripted", CallableAdapter(monitor, backend))
        return RequestOrchestrator(
            registry=ProviderRegistry(providers),
            adapters=adapters,
            monitor=monitor,
            gate=QualityGate(StaticScorer(score), QualityThreshold(min_score, escalation_cap)),
            emitter=emitter,
        )

    return _build
