"""
Routing Engine - Provider Selection and Fallback Chains
=======================================================

Combines a request's ComplexityProfile with live ProviderState snapshots to
pick one provider plus an ordered fallback chain.

Decision policy, in order:
1. Privacy-sensitive requests are restricted to LOCAL providers. With no
   local provider configured the request fails with NoEligibleProvider;
   private data is never sent to a cloud provider as a default.
2. Filter: enabled, circuit available, rpm/tpm quota not exhausted, context
   fits, required capabilities present, rolling latency within the
   request's latency budget. Every filtered provider is recorded in
   RoutingDecision.excluded and never appears in the fallback chain.
3. Rank survivors with a pluggable RankingPolicy. Ties break on provider_id.
4. Fallback chain = remaining ranked survivors.

Escalation rounds (non-empty attempt history) prefer the next untried entry
of the previous decision's fallback chain, then untried providers by rank,
then a re-ranked retry of an already-tried provider.

route() is synchronous, does no I/O, and is deterministic for identical
profiles, candidates, histories and snapshots.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from prime_router.core.capacity_monitor import CapacityMonitor, quota_block_reason
from prime_router.core.router_config import RoutingConfig
from prime_router.core.router_errors import ConfigError, NoEligibleProvider
from prime_router.core.router_models import (
    ComplexityLevel,
    ComplexityProfile,
    DecisionReason,
    InferenceAttempt,
    ProviderDescriptor,
    ProviderKind,
    ProviderState,
    RoutingDecision,
)

logger = logging.getLogger(__name__)


# =============================================================================
# RANKING POLICIES
# =============================================================================

class RankingPolicy(ABC):
    """Scores one eligible provider for one request. Higher is better."""

    name = "base"

    @abstractmethod
    def score(
        self,
        descriptor: ProviderDescriptor,
        state: ProviderState,
        profile: ComplexityProfile,
        affinity_provider: Optional[str],
    ) -> float:
        ...


class WeightedRankingPolicy(RankingPolicy):
    """
    Weighted sum of four components, each in [0, 1]:

    - affinity: 1 when this provider served the same affinity key before
      (keeps sessions and repeated prompts on a warm cache)
    - load: fewer in-flight calls and lower rolling latency score higher
    - priority: static configured priority, lower value scores higher
    - tier: SIMPLE prefers LOCAL, COMPLEX prefers CLOUD
    """

    name = "weighted"

    # Latency above this scores zero on the latency factor
    LATENCY_CEILING_MS = 10000.0

    def __init__(self, config: Optional[RoutingConfig] = None):
        self.config = config or RoutingConfig()

    def score(
        self,
        descriptor: ProviderDescriptor,
        state: ProviderState,
        profile: ComplexityProfile,
        affinity_provider: Optional[str],
    ) -> float:
        affinity = 1.0 if affinity_provider == descriptor.provider_id else 0.0

        latency_factor = 1.0
        if state.rolling_latency_ms is not None:
            latency_factor = 1.0 - min(state.rolling_latency_ms / self.LATENCY_CEILING_MS, 1.0)
        load = latency_factor / (1 + max(state.queue_depth, 0))

        priority = 1.0 / (1 + max(descriptor.priority, 0))

        preferred_kind = ProviderKind.CLOUD if profile.complexity == ComplexityLevel.COMPLEX else ProviderKind.LOCAL
        tier = 1.0 if descriptor.kind == preferred_kind else 0.0

        return (
            self.config.affinity_weight * affinity
            + self.config.load_weight * load
            + self.config.priority_weight * priority
            + self.config.tier_weight * tier
        )


class PriorityRankingPolicy(RankingPolicy):
    """Static priority only. Useful for fixed local-first deployments."""

    name = "priority"

    def __init__(self, config: Optional[RoutingConfig] = None):
        self.config = config or RoutingConfig()

    def score(self, descriptor, state, profile, affinity_provider) -> float:
        return 1.0 / (1 + max(descriptor.priority, 0))


RANKING_POLICIES = {
    WeightedRankingPolicy.name: WeightedRankingPolicy,
    PriorityRankingPolicy.name: PriorityRankingPolicy,
}


def build_ranking_policy(config: RoutingConfig) -> RankingPolicy:
    """Instantiate the ranking policy named in config."""
    policy_cls = RANKING_POLICIES.get(config.ranking_policy)
    if policy_cls is None:
        raise ConfigError(
            f"Unknown ranking policy '{config.ranking_policy}' "
            f"(available: {', '.join(sorted(RANKING_POLICIES))})"
        )
    return policy_cls(config)


# =============================================================================
# ROUTING ENGINE
# =============================================================================

class RoutingEngine:
    """
    Selects a provider and fallback chain for each routing round.

    Usage:
        engine = RoutingEngine(monitor, RoutingConfig())
        decision = engine.route(profile, provider_set.descriptors, attempts)

        print(decision.provider_id, decision.fallback_ids, decision.excluded)
    """

    def __init__(
        self,
        monitor: CapacityMonitor,
        config: Optional[RoutingConfig] = None,
        policy: Optional[RankingPolicy] = None,
    ):
        self.config = config or RoutingConfig()
        self.policy = policy or build_ranking_policy(self.config)
        self._monitor = monitor

        # affinity_key -> provider_id, least recently used first
        self._affinity: "OrderedDict[str, str]" = OrderedDict()
        self._affinity_lock = threading.Lock()

        self._stats_lock = threading.Lock()
        self._decisions = 0
        self._no_eligible = 0
        self._by_reason: Dict[str, int] = {}

    # =========================================================================
    # ROUTE
    # =========================================================================

    def route(
        self,
        profile: ComplexityProfile,
        candidates: Sequence[ProviderDescriptor],
        attempt_history: Sequence[InferenceAttempt] = (),
        previous_decision: Optional[RoutingDecision] = None,
        states: Optional[Mapping[str, ProviderState]] = None,
    ) -> RoutingDecision:
        """
        Produce a RoutingDecision or raise NoEligibleProvider.

        states may supply pre-captured snapshots; missing ones are read from
        the capacity monitor.
        """
        snapshots: Dict[str, ProviderState] = dict(states or {})
        for descriptor in candidates:
            if descriptor.provider_id not in snapshots:
                snapshots[descriptor.provider_id] = self._monitor.snapshot(descriptor.provider_id)

        excluded: Dict[str, str] = {}

        # 1. Privacy restriction
        pool = list(candidates)
        if profile.privacy_sensitive:
            for descriptor in pool:
                if not descriptor.is_local:
                    excluded[descriptor.provider_id] = "privacy: cloud provider"
            pool = [d for d in pool if d.is_local]
            if not pool:
                self._count_no_eligible()
                raise NoEligibleProvider(
                    "Privacy-sensitive request and no local provider is configured",
                    excluded,
                )

        # 2. Eligibility filter
        eligible: List[ProviderDescriptor] = []
        for descriptor in pool:
            reason = self._exclusion_reason(descriptor, snapshots[descriptor.provider_id], profile)
            if reason:
                excluded[descriptor.provider_id] = reason
            else:
                eligible.append(descriptor)

        if not eligible:
            self._count_no_eligible()
            raise NoEligibleProvider(
                f"No eligible provider among {len(candidates)} candidates",
                excluded,
            )

        # 3. Rank
        affinity_provider = self.affinity_for(profile.affinity_key)
        scores = {
            d.provider_id: self.policy.score(d, snapshots[d.provider_id], profile, affinity_provider)
            for d in eligible
        }
        ranked = sorted(eligible, key=lambda d: (-scores[d.provider_id], d.provider_id))

        # 4. Primary and fallback chain
        tried = {a.provider_id for a in attempt_history}
        primary, reason = self._pick_primary(ranked, tried, previous_decision, affinity_provider)

        rest = [d for d in ranked if d.provider_id != primary.provider_id]
        if tried:
            # untried providers first, rank order kept within each group
            rest.sort(key=lambda d: d.provider_id in tried)

        decision = RoutingDecision(
            provider=primary,
            reason=reason,
            fallback_chain=tuple(rest[:self.config.max_fallback_chain]),
            excluded=excluded,
            scores=scores,
            round_index=len(attempt_history),
        )

        with self._stats_lock:
            self._decisions += 1
            self._by_reason[reason.value] = self._by_reason.get(reason.value, 0) + 1

        logger.debug(
            f"Routed ({profile.complexity.value}, round {decision.round_index}) -> "
            f"{decision.provider_id} [{reason.value}] fallback={decision.fallback_ids} "
            f"excluded={sorted(excluded)}"
        )
        return decision

    def _pick_primary(
        self,
        ranked: List[ProviderDescriptor],
        tried: set,
        previous_decision: Optional[RoutingDecision],
        affinity_provider: Optional[str],
    ) -> Tuple[ProviderDescriptor, DecisionReason]:
        if not tried:
            primary = ranked[0]
            if affinity_provider == primary.provider_id:
                return primary, DecisionReason.AFFINITY
            return primary, DecisionReason.RANKED

        by_id = {d.provider_id: d for d in ranked}

        if previous_decision is not None:
            for fallback in previous_decision.fallback_chain:
                if fallback.provider_id in by_id and fallback.provider_id not in tried:
                    return by_id[fallback.provider_id], DecisionReason.FALLBACK_CHAIN

        for descriptor in ranked:
            if descriptor.provider_id not in tried:
                return descriptor, DecisionReason.RANKED

        return ranked[0], DecisionReason.RETRY_SAME_PROVIDER

    def _exclusion_reason(
        self,
        descriptor: ProviderDescriptor,
        state: ProviderState,
        profile: ComplexityProfile,
    ) -> Optional[str]:
        """Why a provider cannot serve this request, or None if it can."""
        if not descriptor.enabled:
            return "disabled"

        if not state.available:
            if state.probe_in_flight:
                return "circuit half_open: probe in flight"
            return f"circuit {state.circuit_state.value}"

        tokens = profile.estimated_tokens + profile.max_output_tokens
        quota = quota_block_reason(descriptor, state, tokens)
        if quota:
            return quota

        if tokens > descriptor.max_context_tokens:
            return f"context {tokens} exceeds max_context_tokens {descriptor.max_context_tokens}"

        missing = profile.required_capabilities - descriptor.capabilities
        if missing:
            return f"missing capabilities: {', '.join(sorted(missing))}"

        if (
            profile.max_latency_ms is not None
            and state.rolling_latency_ms is not None
            and state.rolling_latency_ms > profile.max_latency_ms
        ):
            return (
                f"rolling latency {state.rolling_latency_ms:.0f}ms exceeds "
                f"budget {profile.max_latency_ms:.0f}ms"
            )

        return None

    # =========================================================================
    # AFFINITY
    # =========================================================================

    def remember_affinity(self, affinity_key: str, provider_id: str) -> None:
        """Record which provider served an affinity key."""
        if not affinity_key or self.config.affinity_capacity <= 0:
            return

        with self._affinity_lock:
            self._affinity[affinity_key] = provider_id
            self._affinity.move_to_end(affinity_key)
            while len(self._affinity) > self.config.affinity_capacity:
                self._affinity.popitem(last=False)

    def affinity_for(self, affinity_key: str) -> Optional[str]:
        with self._affinity_lock:
            return self._affinity.get(affinity_key)

    def clear_affinity(self) -> None:
        with self._affinity_lock:
            self._affinity.clear()

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def _count_no_eligible(self) -> None:
        with self._stats_lock:
            self._no_eligible += 1

    def get_statistics(self) -> Dict[str, Any]:
        with self._stats_lock:
            by_reason = dict(self._by_reason)
            decisions = self._decisions
            no_eligible = self._no_eligible

        with self._affinity_lock:
            affinity_entries = len(self._affinity)

        return {
            "ranking_policy": self.policy.name,
            "decisions": decisions,
            "no_eligible_provider": no_eligible,
            "by_reason": by_reason,
            "affinity_entries": affinity_entries,
        }
