"""
Prime Router Core - Hybrid Inference Routing
============================================

Core components for routing inference requests between local runtimes and
cloud providers:
- Complexity classification
- Capacity monitoring with per-provider circuit breakers
- Provider ranking, fallback chains and escalation
- Quality gating
- Per-request orchestration state machine
"""

from prime_router.core.router_models import (
    Admission,
    ComplexityLevel,
    ComplexityProfile,
    ErrorEnvelope,
    InferenceAttempt,
    InferenceRequest,
    OrchestratorState,
    ProviderDescriptor,
    ProviderKind,
    ProviderResponse,
    ProviderSet,
    ProviderState,
    QualityVerdict,
    RouterResult,
    RoutingDecision,
)
from prime_router.core.router_errors import (
    ConfigError,
    InvalidRequest,
    NoEligibleProvider,
    ProviderError,
    ProviderErrorKind,
    QualityUnattainable,
    RouterError,
)
from prime_router.core.router_config import (
    ConfigManager,
    ProviderRegistry,
    RouterConfig,
    SecretResolver,
    load_config,
)
from prime_router.core.complexity_classifier import ComplexityClassifier
from prime_router.core.capacity_monitor import CapacityMonitor
from prime_router.core.provider_adapters import (
    AdapterRegistry,
    AnthropicMessagesAdapter,
    CallableAdapter,
    OpenAICompatibleAdapter,
    ProviderAdapter,
)
from prime_router.core.routing_engine import RankingPolicy, RoutingEngine, WeightedRankingPolicy
from prime_router.core.quality_gate import QualityGate, QualityScorer, QualityThreshold, build_scorer
from prime_router.core.request_orchestrator import RequestOrchestrator
from prime_router.core.router_telemetry import InMemorySink, RouterEvent, TelemetryEmitter

__all__ = [
    # Models
    "Admission",
    "ComplexityLevel",
    "ComplexityProfile",
    "ErrorEnvelope",
    "InferenceAttempt",
    "InferenceRequest",
    "OrchestratorState",
    "ProviderDescriptor",
    "ProviderKind",
    "ProviderResponse",
    "ProviderSet",
    "ProviderState",
    "QualityVerdict",
    "RouterResult",
    "RoutingDecision",
    # Errors
    "ConfigError",
    "InvalidRequest",
    "NoEligibleProvider",
    "ProviderError",
    "ProviderErrorKind",
    "QualityUnattainable",
    "RouterError",
    # Config
    "ConfigManager",
    "ProviderRegistry",
    "RouterConfig",
    "SecretResolver",
    "load_config",
    # Components
    "ComplexityClassifier",
    "CapacityMonitor",
    "AdapterRegistry",
    "AnthropicMessagesAdapter",
    "CallableAdapter",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "RankingPolicy",
    "RoutingEngine",
    "WeightedRankingPolicy",
    "QualityGate",
    "QualityScorer",
    "QualityThreshold",
    "build_scorer",
    "RequestOrchestrator",
    # Telemetry
    "InMemorySink",
    "RouterEvent",
    "TelemetryEmitter",
]
