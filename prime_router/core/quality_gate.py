"""
Quality Gate - Accept or Escalate Completed Responses
=====================================================

The gate compares a score against a configured threshold and emits ACCEPT or
ESCALATE. Scoring itself lives in swappable QualityScorer strategies:

- confidence: provider-reported confidence (explicit field or mean token
  probability), no score when the provider reports none
- length: completion length against the expected length
- composite: confidence when present, otherwise length
- static: fixed score (always-accept / always-escalate deployments, tests)

Provider errors never reach a scorer; verdict_for_error() escalates them
directly so the orchestrator can advance the fallback chain.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from prime_router.core.router_config import QualityConfig
from prime_router.core.router_errors import ConfigError, ProviderError
from prime_router.core.router_models import (
    InferenceRequest,
    ProviderResponse,
    QualityVerdict,
    VerdictDecision,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QualityThreshold:
    """Acceptance threshold and escalation bound."""
    min_score: float = 0.5
    escalation_cap: int = 2

    @classmethod
    def from_config(cls, config: QualityConfig) -> "QualityThreshold":
        return cls(min_score=config.min_score, escalation_cap=config.escalation_cap)


# =============================================================================
# SCORERS
# =============================================================================

class QualityScorer(ABC):
    """Scores one response in [0, 1]. None means no score is available."""

    name = "base"

    @abstractmethod
    def score(self, response: ProviderResponse, request: Optional[InferenceRequest] = None) -> Optional[float]:
        ...


class ProviderConfidenceScorer(QualityScorer):
    name = "confidence"

    def score(self, response, request=None) -> Optional[float]:
        if response.confidence is None:
            return None
        return min(max(float(response.confidence), 0.0), 1.0)


class LengthRatioScorer(QualityScorer):
    """
    Ratio of produced to expected tokens, capped at 1.0.

    Expected length comes from request.expected_output_tokens when set.
    Truncated completions (finish_reason "length"/"max_tokens") are
    penalized.
    """

    name = "length"

    TRUNCATION_PENALTY = 0.8

    def __init__(self, default_expected_tokens: int = 64):
        self.default_expected_tokens = max(default_expected_tokens, 1)

    def score(self, response, request=None) -> Optional[float]:
        if not response.text.strip():
            return 0.0

        expected = self.default_expected_tokens
        if request is not None and request.expected_output_tokens:
            expected = request.expected_output_tokens

        produced = response.completion_tokens or len(response.text.split())
        score = min(produced / expected, 1.0)

        if response.finish_reason in ("length", "max_tokens"):
            score *= self.TRUNCATION_PENALTY

        return score


class CompositeScorer(QualityScorer):
    """Provider confidence when available, else the length heuristic."""

    name = "composite"

    def __init__(self, primary: QualityScorer, fallback: QualityScorer):
        self.primary = primary
        self.fallback = fallback

    def score(self, response, request=None) -> Optional[float]:
        value = self.primary.score(response, request)
        if value is not None:
            return value
        return self.fallback.score(response, request)


class StaticScorer(QualityScorer):
    name = "static"

    def __init__(self, value: float = 1.0):
        self.value = value

    def score(self, response, request=None) -> Optional[float]:
        return self.value


def build_scorer(config: QualityConfig) -> QualityScorer:
    """Instantiate the scorer named in config."""
    name = config.scorer
    if name == "confidence":
        return ProviderConfidenceScorer()
    if name == "length":
        return LengthRatioScorer(config.default_expected_tokens)
    if name == "composite":
        return CompositeScorer(
            ProviderConfidenceScorer(),
            LengthRatioScorer(config.default_expected_tokens),
        )
    if name == "static":
        return StaticScorer(config.static_score)
    raise ConfigError(f"Unknown quality scorer '{name}' (available: composite, confidence, length, static)")


# =============================================================================
# GATE
# =============================================================================

class QualityGate:
    """
    Threshold comparison over a pluggable scorer.

    Usage:
        gate = QualityGate(build_scorer(config.quality), QualityThreshold(min_score=0.6))
        verdict = gate.evaluate(attempt.response, request=request)
        if not verdict.accepted:
            ...  # escalate
    """

    def __init__(self, scorer: Optional[QualityScorer] = None, threshold: Optional[QualityThreshold] = None):
        self.scorer = scorer or build_scorer(QualityConfig())
        self.threshold = threshold or QualityThreshold()

        self._lock = threading.Lock()
        self._evaluated = 0
        self._accepted = 0
        self._escalated = 0
        self._provider_errors = 0

    def evaluate(
        self,
        response: ProviderResponse,
        threshold_config: Optional[QualityThreshold] = None,
        request: Optional[InferenceRequest] = None,
    ) -> QualityVerdict:
        threshold = threshold_config or self.threshold

        try:
            score = self.scorer.score(response, request)
        except Exception as e:
            logger.warning(f"Scorer {self.scorer.name} failed on {response.provider_id}: {e}")
            return self._count(QualityVerdict(
                decision=VerdictDecision.ESCALATE,
                threshold=threshold.min_score,
                scorer=self.scorer.name,
                reason=f"scorer fault: {e}",
            ))

        if score is None:
            return self._count(QualityVerdict(
                decision=VerdictDecision.ESCALATE,
                threshold=threshold.min_score,
                scorer=self.scorer.name,
                reason="no score available",
            ))

        accepted = score >= threshold.min_score
        return self._count(QualityVerdict(
            decision=VerdictDecision.ACCEPT if accepted else VerdictDecision.ESCALATE,
            threshold=threshold.min_score,
            score=score,
            scorer=self.scorer.name,
            reason="meets threshold" if accepted else "below threshold",
        ))

    def verdict_for_error(
        self,
        error: ProviderError,
        threshold_config: Optional[QualityThreshold] = None,
    ) -> QualityVerdict:
        """Escalate a failed attempt without scoring it."""
        threshold = threshold_config or self.threshold
        with self._lock:
            self._provider_errors += 1
        return self._count(QualityVerdict(
            decision=VerdictDecision.ESCALATE,
            threshold=threshold.min_score,
            scorer=self.scorer.name,
            reason=f"provider error: {error.kind.value}",
        ))

    def _count(self, verdict: QualityVerdict) -> QualityVerdict:
        with self._lock:
            self._evaluated += 1
            if verdict.accepted:
                self._accepted += 1
            else:
                self._escalated += 1
        return verdict

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "scorer": self.scorer.name,
                "min_score": self.threshold.min_score,
                "escalation_cap": self.threshold.escalation_cap,
                "evaluated": self._evaluated,
                "accepted": self._accepted,
                "escalated": self._escalated,
                "provider_errors": self._provider_errors,
                "acceptance_rate": self._accepted / self._evaluated if self._evaluated else 0.0,
            }
