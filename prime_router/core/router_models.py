"""
Router Models - Shared Data Model for Hybrid Inference Routing
==============================================================

Immutable records that flow between the classifier, capacity monitor,
routing engine, provider adapters, quality gate and request orchestrator.

Ownership:
- InferenceRequest: created at ingress, never mutated
- ComplexityProfile: computed once per request by the classifier
- ProviderDescriptor / ProviderSet: configuration, replaced wholesale on reload
- ProviderState: point-in-time snapshot produced by the capacity monitor
- RoutingDecision / InferenceAttempt / QualityVerdict: appended to the
  request's processing record, never mutated after creation
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from prime_router.core.router_errors import ProviderError, RouterError


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


# =============================================================================
# ENUMS
# =============================================================================

class ProviderKind(Enum):
    """Where a provider runs."""
    LOCAL = "local"     # On-box GPU/CPU runtime (llama.cpp, vLLM, MLX)
    CLOUD = "cloud"     # Hosted API (Anthropic, OpenAI, ...)


class ComplexityLevel(Enum):
    """Coarse complexity bucket used to bias routing."""
    SIMPLE = "simple"
    COMPLEX = "complex"


class TaskClass(Enum):
    """Task type detected from the prompt."""
    CHAT = "chat"
    CODE = "code"
    SUMMARIZE = "summarize"
    FORMAT = "format"
    REASON = "reason"
    ANALYZE = "analyze"
    CREATIVE = "creative"
    SEARCH = "search"
    UNKNOWN = "unknown"


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"       # Normal operation
    OPEN = "open"           # Failing, reject calls
    HALF_OPEN = "half_open" # Probing recovery


class DecisionReason(Enum):
    """Why the routing engine picked its primary provider."""
    RANKED = "ranked"
    AFFINITY = "affinity"
    FALLBACK_CHAIN = "fallback_chain"
    RETRY_SAME_PROVIDER = "retry_same_provider"


class AttemptOutcome(Enum):
    """Outcome of a single provider call."""
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class VerdictDecision(Enum):
    """Quality gate decision."""
    ACCEPT = "accept"
    ESCALATE = "escalate"


class OrchestratorState(Enum):
    """Per-request lifecycle states."""
    VALIDATING = "validating"
    CLASSIFYING = "classifying"
    ROUTING = "routing"
    INVOKING = "invoking"
    EVALUATING = "evaluating"
    ESCALATING = "escalating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OrchestratorState.COMPLETED, OrchestratorState.FAILED)


# =============================================================================
# REQUEST
# =============================================================================

@dataclass(frozen=True)
class InferenceRequest:
    """
    Immutable inbound request.

    Construction never raises; call validate() to get the list of problems.
    The orchestrator rejects requests with problems as InvalidRequest.
    """
    prompt: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    session_id: Optional[str] = None

    # Declared constraints
    privacy_sensitive: bool = False
    max_latency_ms: Optional[float] = None
    context_tokens: Optional[int] = None
    max_output_tokens: int = 512
    expected_output_tokens: Optional[int] = None

    # Routing hints
    domain_tags: Tuple[str, ...] = ()
    required_capabilities: FrozenSet[str] = frozenset()

    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "domain_tags", tuple(self.domain_tags or ()))
        object.__setattr__(self, "required_capabilities", frozenset(self.required_capabilities or ()))
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    def validate(self) -> List[str]:
        """Return a list of validation problems (empty when well formed)."""
        problems: List[str] = []

        if not isinstance(self.prompt, str):
            problems.append("prompt must be a string")
        elif not self.prompt.strip():
            problems.append("prompt must not be empty")

        if not isinstance(self.request_id, str) or not self.request_id:
            problems.append("request_id must be a non-empty string")

        if self.max_latency_ms is not None and not _positive(self.max_latency_ms):
            problems.append("max_latency_ms must be positive")

        if self.context_tokens is not None and not _positive_int(self.context_tokens):
            problems.append("context_tokens must be a positive integer")

        if not _positive_int(self.max_output_tokens):
            problems.append("max_output_tokens must be a positive integer")

        if self.expected_output_tokens is not None and not _positive_int(self.expected_output_tokens):
            problems.append("expected_output_tokens must be a positive integer")

        return problems

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "session_id": self.session_id,
            "prompt_chars": len(self.prompt) if isinstance(self.prompt, str) else None,
            "privacy_sensitive": self.privacy_sensitive,
            "max_latency_ms": self.max_latency_ms,
            "context_tokens": self.context_tokens,
            "max_output_tokens": self.max_output_tokens,
            "domain_tags": list(self.domain_tags),
            "required_capabilities": sorted(self.required_capabilities),
        }


def _positive(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


@dataclass(frozen=True)
class ComplexityProfile:
    """Read-only summary of a request, computed once by the classifier."""
    complexity: ComplexityLevel
    estimated_tokens: int
    privacy_sensitive: bool
    task_class: TaskClass
    affinity_key: str
    domain_tags: Tuple[str, ...] = ()
    signals: Tuple[str, ...] = ()
    required_capabilities: FrozenSet[str] = frozenset()
    max_output_tokens: int = 512
    max_latency_ms: Optional[float] = None
    confidence: float = 1.0
    low_confidence: bool = False

    @property
    def is_complex(self) -> bool:
        return self.complexity == ComplexityLevel.COMPLEX

    def to_dict(self) -> Dict[str, Any]:
        return {
            "complexity": self.complexity.value,
            "estimated_tokens": self.estimated_tokens,
            "privacy_sensitive": self.privacy_sensitive,
            "task_class": self.task_class.value,
            "affinity_key": self.affinity_key,
            "domain_tags": list(self.domain_tags),
            "signals": list(self.signals),
            "confidence": round(self.confidence, 3),
            "low_confidence": self.low_confidence,
        }


# =============================================================================
# PROVIDERS
# =============================================================================

@dataclass(frozen=True)
class ProviderDescriptor:
    """Configuration for one inference backend."""
    provider_id: str
    kind: ProviderKind
    endpoint: str = ""
    adapter: str = "openai"
    model: Optional[str] = None

    # Opaque reference resolved by the secret store (env:NAME, file:/path)
    credentials_ref: Optional[str] = None

    # Capability limits
    max_context_tokens: int = 8192
    rpm_limit: Optional[int] = None
    tpm_limit: Optional[int] = None
    capabilities: FrozenSet[str] = frozenset()

    # Ordering
    priority: int = 100
    timeout_seconds: float = 30.0
    cost_per_1k_tokens: float = 0.0
    enabled: bool = True

    def __post_init__(self):
        object.__setattr__(self, "capabilities", frozenset(self.capabilities or ()))

    @property
    def is_local(self) -> bool:
        return self.kind == ProviderKind.LOCAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "kind": self.kind.value,
            "endpoint": self.endpoint,
            "adapter": self.adapter,
            "model": self.model,
            "credentials_ref": self.credentials_ref,
            "max_context_tokens": self.max_context_tokens,
            "rpm_limit": self.rpm_limit,
            "tpm_limit": self.tpm_limit,
            "capabilities": sorted(self.capabilities),
            "priority": self.priority,
            "timeout_seconds": self.timeout_seconds,
            "cost_per_1k_tokens": self.cost_per_1k_tokens,
            "enabled": self.enabled,
        }


@dataclass(frozen=True)
class ProviderSet:
    """Immutable snapshot of every configured provider."""
    descriptors: Tuple[ProviderDescriptor, ...] = ()
    version: int = 0
    loaded_at: float = field(default_factory=time.time)

    def __post_init__(self):
        object.__setattr__(self, "descriptors", tuple(self.descriptors))

    def get(self, provider_id: str) -> Optional[ProviderDescriptor]:
        for descriptor in self.descriptors:
            if descriptor.provider_id == provider_id:
                return descriptor
        return None

    @property
    def provider_ids(self) -> List[str]:
        return [d.provider_id for d in self.descriptors]

    def __len__(self) -> int:
        return len(self.descriptors)


@dataclass(frozen=True)
class ProviderState:
    """Point-in-time view of one provider's live metrics."""
    provider_id: str
    circuit_state: CircuitState = CircuitState.CLOSED
    available: bool = True
    consecutive_failures: int = 0
    queue_depth: int = 0
    rolling_latency_ms: Optional[float] = None
    error_rate: float = 0.0
    sample_count: int = 0
    requests_in_window: int = 0
    tokens_in_window: int = 0
    opened_at: Optional[float] = None
    probe_in_flight: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "circuit_state": self.circuit_state.value,
            "available": self.available,
            "consecutive_failures": self.consecutive_failures,
            "queue_depth": self.queue_depth,
            "rolling_latency_ms": (
                round(self.rolling_latency_ms, 1) if self.rolling_latency_ms is not None else None
            ),
            "error_rate": round(self.error_rate, 3),
            "sample_count": self.sample_count,
            "requests_in_window": self.requests_in_window,
            "tokens_in_window": self.tokens_in_window,
            "probe_in_flight": self.probe_in_flight,
        }


@dataclass(frozen=True)
class Admission:
    """
    Result of CapacityMonitor.try_admit().

    Truthy when admitted. probe_id is set when the admission claimed the
    half-open probe slot; only a record() carrying the same probe_id frees
    that slot.
    """
    admitted: bool
    provider_id: str
    probe_id: Optional[int] = None
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.admitted


# =============================================================================
# DECISIONS, ATTEMPTS, VERDICTS
# =============================================================================

@dataclass(frozen=True)
class RoutingDecision:
    """Primary provider pick plus the ordered fallback chain."""
    provider: ProviderDescriptor
    reason: DecisionReason
    fallback_chain: Tuple[ProviderDescriptor, ...] = ()
    excluded: Mapping[str, str] = field(default_factory=dict)
    scores: Mapping[str, float] = field(default_factory=dict)
    round_index: int = 0
    decided_at: float = field(default_factory=time.time, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "fallback_chain", tuple(self.fallback_chain))
        object.__setattr__(self, "excluded", _freeze(self.excluded))
        object.__setattr__(self, "scores", _freeze(self.scores))

    @property
    def provider_id(self) -> str:
        return self.provider.provider_id

    @property
    def fallback_ids(self) -> List[str]:
        return [d.provider_id for d in self.fallback_chain]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "reason": self.reason.value,
            "fallback_chain": self.fallback_ids,
            "excluded": dict(self.excluded),
            "scores": {k: round(v, 4) for k, v in self.scores.items()},
            "round_index": self.round_index,
        }


@dataclass(frozen=True)
class ProviderResponse:
    """Normalized provider completion."""
    text: str
    provider_id: str
    model: Optional[str] = None
    confidence: Optional[float] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "raw", _freeze(self.raw))

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "provider_id": self.provider_id,
            "model": self.model,
            "confidence": self.confidence,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "finish_reason": self.finish_reason,
        }


@dataclass(frozen=True)
class InferenceAttempt:
    """One call to one provider. Carries either a response or an error."""
    request_id: str
    provider_id: str
    provider_kind: ProviderKind
    started_at: float
    finished_at: float
    outcome: AttemptOutcome
    response: Optional[ProviderResponse] = None
    error: Optional["ProviderError"] = None

    @property
    def ok(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCESS and self.response is not None

    @property
    def latency_ms(self) -> float:
        return max(self.finished_at - self.started_at, 0.0) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "provider_id": self.provider_id,
            "provider_kind": self.provider_kind.value,
            "outcome": self.outcome.value,
            "latency_ms": round(self.latency_ms, 1),
            "response": self.response.to_dict() if self.response else None,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass(frozen=True)
class QualityVerdict:
    """Quality gate outcome for one attempt."""
    decision: VerdictDecision
    threshold: float
    score: Optional[float] = None
    scorer: str = ""
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.decision == VerdictDecision.ACCEPT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "score": round(self.score, 4) if self.score is not None else None,
            "threshold": self.threshold,
            "scorer": self.scorer,
            "reason": self.reason,
        }


# =============================================================================
# RESULT ENVELOPES
# =============================================================================

@dataclass(frozen=True)
class RouterResult:
    """Successful outcome of handle()."""
    request_id: str
    response: ProviderResponse
    verdict: QualityVerdict
    profile: ComplexityProfile
    decisions: Tuple[RoutingDecision, ...] = ()
    attempts: Tuple[InferenceAttempt, ...] = ()
    verdicts: Tuple[QualityVerdict, ...] = ()
    states: Tuple[OrchestratorState, ...] = ()

    ok = True

    @property
    def provider_id(self) -> str:
        return self.response.provider_id

    @property
    def text(self) -> str:
        return self.response.text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "request_id": self.request_id,
            "provider_id": self.provider_id,
            "response": self.response.to_dict(),
            "verdict": self.verdict.to_dict(),
            "profile": self.profile.to_dict(),
            "decisions": [d.to_dict() for d in self.decisions],
            "attempts": [a.to_dict() for a in self.attempts],
            "verdicts": [v.to_dict() for v in self.verdicts],
            "states": [s.value for s in self.states],
        }


@dataclass(frozen=True)
class ErrorEnvelope:
    """Failed outcome of handle()."""
    request_id: str
    error: "RouterError"
    profile: Optional[ComplexityProfile] = None
    best_attempt: Optional[InferenceAttempt] = None
    decisions: Tuple[RoutingDecision, ...] = ()
    attempts: Tuple[InferenceAttempt, ...] = ()
    verdicts: Tuple[QualityVerdict, ...] = ()
    states: Tuple[OrchestratorState, ...] = ()

    ok = False

    @property
    def error_type(self) -> str:
        return self.error.error_type

    @property
    def message(self) -> str:
        return self.error.message

    def raise_for_error(self) -> None:
        raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "request_id": self.request_id,
            "error": self.error.to_dict(),
            "profile": self.profile.to_dict() if self.profile else None,
            "best_attempt": self.best_attempt.to_dict() if self.best_attempt else None,
            "decisions": [d.to_dict() for d in self.decisions],
            "attempts": [a.to_dict() for a in self.attempts],
            "verdicts": [v.to_dict() for v in self.verdicts],
            "states": [s.value for s in self.states],
        }
