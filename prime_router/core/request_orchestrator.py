"""
Request Orchestrator - Per-Request Routing State Machine
========================================================

Sequences classifier, routing engine, provider adapters and quality gate for
each request and returns a RouterResult or an ErrorEnvelope.

State machine (one RequestLifecycle per request):

    VALIDATING ─► CLASSIFYING ─► ROUTING ─► INVOKING ─► EVALUATING ─► COMPLETED
        │                          │   ▲                    │
        ▼                          ▼   └──── ESCALATING ◄───┤
      FAILED                     FAILED                     ▼
                                                          FAILED

- VALIDATING: malformed request -> FAILED(InvalidRequest)
- CLASSIFYING: cannot fail (classifier faults degrade to SIMPLE)
- ROUTING: NoEligibleProvider -> FAILED(NoEligibleProvider)
- INVOKING -> EVALUATING on every attempt outcome
- EVALUATING: accept -> COMPLETED; escalate verdict or provider error
  consumes one unit of the escalation budget -> ESCALATING -> ROUTING;
  budget exhausted -> FAILED(QualityUnattainable), or FAILED(ProviderError)
  when no attempt produced a response at all

Routing rounds per request are bounded by escalation_cap + 1. Provider
admission (quota, half-open probe slot) is claimed just before invoking; a
refusal moves to the next entry of the same decision's fallback chain
without consuming budget.

Each lifecycle captures the provider set when it starts, so a configuration
reload never changes the providers an in-flight request is routed across.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Dict, List, Optional, Tuple, Union

from prime_router.core.capacity_monitor import CapacityMonitor
from prime_router.core.complexity_classifier import ComplexityClassifier
from prime_router.core.provider_adapters import AdapterRegistry
from prime_router.core.quality_gate import QualityGate, QualityThreshold, build_scorer
from prime_router.core.router_config import (
    ClassifierConfig,
    ConfigManager,
    MonitorConfig,
    ProviderRegistry,
    QualityConfig,
    RouterConfig,
    RoutingConfig,
    SecretResolver,
    TelemetryConfig,
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
from prime_router.core.router_models import (
    Admission,
    AttemptOutcome,
    ComplexityProfile,
    DecisionReason,
    ErrorEnvelope,
    InferenceAttempt,
    InferenceRequest,
    OrchestratorState,
    ProviderDescriptor,
    ProviderSet,
    QualityVerdict,
    RouterResult,
    RoutingDecision,
)
from prime_router.core.router_telemetry import EventType, RouterEvent, TelemetryEmitter, tracer
from prime_router.core.routing_engine import RoutingEngine, build_ranking_policy

logger = logging.getLogger(__name__)

RouterOutcome = Union[RouterResult, ErrorEnvelope]


ALLOWED_TRANSITIONS = {
    OrchestratorState.VALIDATING: {OrchestratorState.CLASSIFYING, OrchestratorState.FAILED},
    OrchestratorState.CLASSIFYING: {OrchestratorState.ROUTING},
    OrchestratorState.ROUTING: {OrchestratorState.INVOKING, OrchestratorState.FAILED},
    OrchestratorState.INVOKING: {OrchestratorState.EVALUATING},
    OrchestratorState.EVALUATING: {
        OrchestratorState.COMPLETED,
        OrchestratorState.ESCALATING,
        OrchestratorState.FAILED,
    },
    OrchestratorState.ESCALATING: {OrchestratorState.ROUTING},
    OrchestratorState.COMPLETED: set(),
    OrchestratorState.FAILED: set(),
}


# =============================================================================
# REQUEST LIFECYCLE
# =============================================================================

class RequestLifecycle:
    """
    State machine for one request.

    Owns the request's processing record (states, decisions, attempts,
    verdicts) and is the only place that advances state.
    """

    def __init__(self, orchestrator: "RequestOrchestrator", request: InferenceRequest):
        self._orch = orchestrator
        self.request = request
        self.request_id = getattr(request, "request_id", None) or "unknown"

        # Hot reload never affects this request past this point
        self.provider_set = orchestrator.registry.snapshot()
        self.threshold = orchestrator.gate.threshold

        self.state: Optional[OrchestratorState] = None
        self.states: List[OrchestratorState] = []
        self.profile: Optional[ComplexityProfile] = None
        self.decisions: List[RoutingDecision] = []
        self.attempts: List[InferenceAttempt] = []
        self.verdicts: List[QualityVerdict] = []

        self._best: Optional[Tuple[float, InferenceAttempt]] = None
        self._last_error: Optional[ProviderError] = None

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _advance(self, new_state: OrchestratorState, **event_fields: Any) -> None:
        old_state = self.state
        if old_state is not None and new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise RuntimeError(f"Illegal transition {old_state.value} -> {new_state.value}")

        self.state = new_state
        self.states.append(new_state)

        self._orch.emitter.emit(RouterEvent(
            event_type=EventType.REQUEST_STATE,
            request_id=self.request_id,
            state=new_state.value,
            from_state=old_state.value if old_state else None,
            **event_fields,
        ))

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self) -> RouterOutcome:
        self._advance(OrchestratorState.VALIDATING)

        problems = self._validate()
        if problems:
            return self._fail(InvalidRequest(problems))

        self._advance(OrchestratorState.CLASSIFYING)
        self.profile = self._orch.classifier.classify(self.request)

        candidates = self._candidates()
        budget = self.threshold.escalation_cap
        previous: Optional[RoutingDecision] = None

        while True:
            self._advance(OrchestratorState.ROUTING)
            try:
                decision = self._orch.engine.route(self.profile, candidates, self.attempts, previous)
                decision, admission = self._admit(decision)
            except NoEligibleProvider as e:
                return self._fail(e)

            self.decisions.append(decision)
            self._advance(
                OrchestratorState.INVOKING,
                provider_id=decision.provider_id,
                reason=decision.reason.value,
            )

            attempt = await self._invoke(decision.provider, admission)
            self.attempts.append(attempt)

            self._advance(
                OrchestratorState.EVALUATING,
                provider_id=attempt.provider_id,
                latency_ms=attempt.latency_ms,
                error_type=attempt.error.kind.value if attempt.error else None,
            )
            verdict = self._evaluate(attempt)
            self.verdicts.append(verdict)

            if verdict.accepted:
                return self._complete(attempt, verdict)

            if budget <= 0:
                return self._fail(self._exhausted_error())

            budget -= 1
            self._orch._count("escalations")
            self._advance(
                OrchestratorState.ESCALATING,
                provider_id=attempt.provider_id,
                verdict=verdict.decision.value,
                score=verdict.score,
                reason=verdict.reason,
            )
            previous = decision

    def _validate(self) -> List[str]:
        if not isinstance(self.request, InferenceRequest):
            return [f"expected InferenceRequest, got {type(self.request).__name__}"]
        return self.request.validate()

    def _candidates(self) -> List[ProviderDescriptor]:
        candidates = []
        for descriptor in self.provider_set.descriptors:
            if self._orch.adapters.supports(descriptor.adapter):
                candidates.append(descriptor)
            else:
                logger.warning(
                    f"Provider {descriptor.provider_id} uses unknown adapter "
                    f"'{descriptor.adapter}', skipping"
                )
        return candidates

    def _admit(self, decision: RoutingDecision) -> Tuple[RoutingDecision, Admission]:
        """Claim capacity on the primary pick, or the first fallback that admits."""
        tokens = self.profile.estimated_tokens + self.profile.max_output_tokens
        chain = [decision.provider] + list(decision.fallback_chain)
        refused: Dict[str, str] = {}

        for index, descriptor in enumerate(chain):
            admission = self._orch.monitor.try_admit(descriptor, tokens)
            if not admission:
                refused[descriptor.provider_id] = (
                    f"admission refused: {admission.reason}" if admission.reason else "admission refused"
                )
                continue

            if index == 0:
                return decision, admission

            logger.debug(f"{self.request_id}: admission refused by {list(refused)}, using {descriptor.provider_id}")
            return RoutingDecision(
                provider=descriptor,
                reason=DecisionReason.FALLBACK_CHAIN,
                fallback_chain=tuple(chain[index + 1:]),
                excluded={**decision.excluded, **refused},
                scores=decision.scores,
                round_index=decision.round_index,
            ), admission

        raise NoEligibleProvider(
            "Every routed provider refused admission",
            {**decision.excluded, **refused},
        )

    async def _invoke(self, descriptor: ProviderDescriptor, admission: Admission) -> InferenceAttempt:
        timeout = descriptor.timeout_seconds
        if self.request.max_latency_ms is not None:
            timeout = min(timeout, self.request.max_latency_ms / 1000)

        try:
            adapter = self._orch.adapters.for_descriptor(descriptor)
        except ConfigError as e:
            # admission already claimed a slot; release it
            self._orch.monitor.record(
                descriptor.provider_id, AttemptOutcome.ERROR, 0.0, probe_id=admission.probe_id,
            )
            now = time.time()
            return InferenceAttempt(
                request_id=self.request_id,
                provider_id=descriptor.provider_id,
                provider_kind=descriptor.kind,
                started_at=now,
                finished_at=now,
                outcome=AttemptOutcome.ERROR,
                error=ProviderError(ProviderErrorKind.REJECTED, e.message, provider_id=descriptor.provider_id),
            )

        return await adapter.invoke(self.request, descriptor, timeout, admission)

    def _evaluate(self, attempt: InferenceAttempt) -> QualityVerdict:
        gate = self._orch.gate
        if not attempt.ok:
            self._last_error = attempt.error
            return gate.verdict_for_error(attempt.error, self.threshold)

        verdict = gate.evaluate(attempt.response, self.threshold, self.request)
        score = verdict.score if verdict.score is not None else -1.0
        if self._best is None or score > self._best[0]:
            self._best = (score, attempt)
        return verdict

    # -------------------------------------------------------------------------
    # Terminal states
    # -------------------------------------------------------------------------

    @property
    def best_attempt(self) -> Optional[InferenceAttempt]:
        return self._best[1] if self._best else None

    def _exhausted_error(self) -> RouterError:
        if self._best is None:
            if self._last_error is not None:
                return self._last_error
            return ProviderError(ProviderErrorKind.UNKNOWN, "No attempt produced a response")

        best_score = self._best[0] if self._best[0] >= 0 else None
        return QualityUnattainable(
            f"No response met threshold {self.threshold.min_score} "
            f"after {len(self.attempts)} attempts",
            best_attempt=self.best_attempt,
            best_score=best_score,
        )

    def _complete(self, attempt: InferenceAttempt, verdict: QualityVerdict) -> RouterResult:
        self._orch.engine.remember_affinity(self.profile.affinity_key, attempt.provider_id)
        self._advance(
            OrchestratorState.COMPLETED,
            provider_id=attempt.provider_id,
            latency_ms=attempt.latency_ms,
            verdict=verdict.decision.value,
            score=verdict.score,
        )
        return RouterResult(
            request_id=self.request_id,
            response=attempt.response,
            verdict=verdict,
            profile=self.profile,
            decisions=tuple(self.decisions),
            attempts=tuple(self.attempts),
            verdicts=tuple(self.verdicts),
            states=tuple(self.states),
        )

    def _fail(self, error: RouterError) -> ErrorEnvelope:
        self._advance(
            OrchestratorState.FAILED,
            error_type=error.error_type,
            reason=error.message,
        )
        return ErrorEnvelope(
            request_id=self.request_id,
            error=error,
            profile=self.profile,
            best_attempt=self.best_attempt,
            decisions=tuple(self.decisions),
            attempts=tuple(self.attempts),
            verdicts=tuple(self.verdicts),
            states=tuple(self.states),
        )


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class RequestOrchestrator:
    """
    Entry point for routed inference.

    Usage:
        manager = load_config("providers.yaml")
        async with RequestOrchestrator.from_config(manager.config, manager.registry) as router:
            outcome = await router.handle(InferenceRequest(prompt="Summarize this"))
            if outcome.ok:
                print(outcome.provider_id, outcome.text)
            else:
                print(outcome.error_type, outcome.message)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        adapters: AdapterRegistry,
        monitor: CapacityMonitor,
        classifier: Optional[ComplexityClassifier] = None,
        engine: Optional[RoutingEngine] = None,
        gate: Optional[QualityGate] = None,
        emitter: Optional[TelemetryEmitter] = None,
    ):
        self.registry = registry
        self.adapters = adapters
        self.monitor = monitor
        self.classifier = classifier or ComplexityClassifier()
        self.engine = engine or RoutingEngine(monitor)
        self.gate = gate or QualityGate()
        self.emitter = emitter or TelemetryEmitter()

        self._stats_lock = threading.Lock()
        self._stats: Dict[str, int] = {
            "requests": 0,
            "completed": 0,
            "failed": 0,
            "escalations": 0,
        }
        self._failed_by_type: Dict[str, int] = {}
        self._selections: Dict[str, int] = {}

        registry.on_publish(self._on_providers_published)

        logger.info(f"RequestOrchestrator initialized ({len(registry.snapshot())} providers)")

    @classmethod
    def from_config(
        cls,
        config: RouterConfig,
        registry: Optional[ProviderRegistry] = None,
        emitter: Optional[TelemetryEmitter] = None,
        secrets: Optional[SecretResolver] = None,
    ) -> "RequestOrchestrator":
        """Build every component from a RouterConfig."""
        emitter = emitter or TelemetryEmitter.from_config(config.telemetry)
        monitor = CapacityMonitor(config.monitor, emitter=emitter)

        return cls(
            registry=registry or ProviderRegistry(config.providers),
            adapters=AdapterRegistry(monitor, secrets),
            monitor=monitor,
            classifier=ComplexityClassifier(config.classifier),
            engine=RoutingEngine(monitor, config.routing),
            gate=QualityGate(build_scorer(config.quality), QualityThreshold.from_config(config.quality)),
            emitter=emitter,
        )

    # =========================================================================
    # HANDLE
    # =========================================================================

    async def handle(self, request: InferenceRequest) -> RouterOutcome:
        """Route one request to completion."""
        lifecycle = RequestLifecycle(self, request)

        with tracer.start_as_current_span("prime_router.handle") as span:
            span.set_attribute("prime_router.request_id", lifecycle.request_id)
            span.set_attribute("prime_router.provider_set_version", lifecycle.provider_set.version)

            outcome = await lifecycle.run()

            span.set_attribute("prime_router.final_state", lifecycle.state.value)
            span.set_attribute("prime_router.attempts", len(lifecycle.attempts))
            if outcome.ok:
                span.set_attribute("prime_router.provider_id", outcome.provider_id)
            else:
                span.set_attribute("prime_router.error_type", outcome.error_type)

        self._record_outcome(outcome)
        return outcome

    def handle_sync(self, request: InferenceRequest) -> RouterOutcome:
        """Blocking wrapper for callers without an event loop."""
        return asyncio.run(self.handle(request))

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        await self.adapters.start()

    async def close(self) -> None:
        await self.adapters.close()
        self.emitter.close()

    async def __aenter__(self) -> "RequestOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def bind_config(self, manager: ConfigManager) -> None:
        """
        Follow section changes from a ConfigManager reload.

        Quality, routing, monitor and classifier sections apply to the next
        request. Telemetry sinks are built once, so a changed telemetry
        section only takes effect after a restart.
        """

        @manager.on_change("classifier")
        def _on_classifier_change(section: ClassifierConfig) -> None:
            self.classifier = ComplexityClassifier(section)
            logger.info(f"Classifier updated: token_threshold={section.token_threshold}")

        @manager.on_change("monitor")
        def _on_monitor_change(section: MonitorConfig) -> None:
            self.monitor.config = section
            logger.info(
                f"Capacity monitor updated: failure_threshold={section.failure_threshold} "
                f"cooldown={section.cooldown_seconds}s"
            )

        @manager.on_change("routing")
        def _on_routing_change(section: RoutingConfig) -> None:
            policy = build_ranking_policy(section)
            self.engine.config = section
            self.engine.policy = policy
            logger.info(f"Routing engine updated: policy={policy.name}")

        @manager.on_change("telemetry")
        def _on_telemetry_change(section: TelemetryConfig) -> None:
            logger.warning("Telemetry configuration changed; restart to apply it")

        @manager.on_change("quality")
        def _on_quality_change(section: QualityConfig) -> None:
            self.gate.scorer = build_scorer(section)
            self.gate.threshold = QualityThreshold.from_config(section)
            logger.info(
                f"Quality gate updated: scorer={section.scorer} "
                f"min_score={section.min_score} cap={section.escalation_cap}"
            )

    def _on_providers_published(self, provider_set: ProviderSet) -> None:
        self.emitter.emit(RouterEvent(
            event_type=EventType.PROVIDERS_PUBLISHED,
            state=f"v{provider_set.version}",
            attributes={"provider_ids": provider_set.provider_ids},
        ))

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def _count(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] = self._stats.get(key, 0) + amount

    def _record_outcome(self, outcome: RouterOutcome) -> None:
        with self._stats_lock:
            self._stats["requests"] += 1
            if outcome.ok:
                self._stats["completed"] += 1
                self._selections[outcome.provider_id] = self._selections.get(outcome.provider_id, 0) + 1
            else:
                self._stats["failed"] += 1
                self._failed_by_type[outcome.error_type] = self._failed_by_type.get(outcome.error_type, 0) + 1

        if outcome.ok:
            logger.debug(f"Request {outcome.request_id} completed on {outcome.provider_id}")
        else:
            logger.info(f"Request {outcome.request_id} failed: {outcome.error}")

    def get_statistics(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats: Dict[str, Any] = dict(self._stats)
            stats["failed_by_type"] = dict(self._failed_by_type)
            stats["selections"] = dict(self._selections)

        stats["provider_set_version"] = self.registry.version
        stats["routing"] = self.engine.get_statistics()
        stats["quality"] = self.gate.get_statistics()
        stats["capacity"] = self.monitor.get_statistics()
        stats["telemetry"] = self.emitter.get_statistics()
        return stats
