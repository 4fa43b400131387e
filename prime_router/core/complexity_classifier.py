"""
Complexity Classifier - Cheap Request Profiling
===============================================

Produces a ComplexityProfile for each request using heuristic rules only:
no I/O, no shared state, identical input gives identical output.

A request is COMPLEX when any one of these holds:
- estimated token length above the configured threshold
- privacy flag set (declared, or PII detected in the prompt)
- a domain tag (declared or keyword-detected) in the configured complex set

Otherwise it is SIMPLE. Empty prompts and internal faults classify as
SIMPLE with a low-confidence marker; classify() never raises.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from typing import Dict, List, Optional, Pattern, Tuple

from prime_router.core.router_config import ClassifierConfig
from prime_router.core.router_models import (
    ComplexityLevel,
    ComplexityProfile,
    InferenceRequest,
    TaskClass,
)

logger = logging.getLogger(__name__)


class ComplexityClassifier:
    """
    Heuristic request classifier.

    Usage:
        classifier = ComplexityClassifier(ClassifierConfig(token_threshold=1500))
        profile = classifier.classify(request)

        if profile.privacy_sensitive:
            ...  # routing will restrict to local providers
    """

    REASONING_PATTERNS = [
        r"\banalyze\b", r"\bcompare\b", r"\bexplain\s+why\b", r"\bevaluate\b",
        r"\bcritique\b", r"\bsynthesiz\w*\b", r"\binfer\b", r"\bdeduc\w*\b",
        r"\bhypothesi[sz]\w*\b", r"\breason\s+through\b", r"\bthink\s+step\s+by\s+step\b",
    ]

    MULTI_STEP_PATTERNS = [
        r"\bfirst\b.*\bthen\b", r"\bstep\s+\d+\b", r"\bnext\b.*\bfinally\b",
        r"\bafter\s+that\b", r"\bsequentially\b",
    ]

    SEARCH_PATTERNS = [
        r"\bsearch\s+for\b", r"\blook\s+up\b", r"\bfind\s+information\b", r"\blatest\b",
    ]

    CODE_PATTERNS = [
        r"```\w*\n", r"def\s+\w+\(", r"class\s+\w+", r"function\s+\w+",
        r"import\s+\w+", r"from\s+\w+\s+import", r"const\s+\w+\s*=",
    ]

    DOMAIN_KEYWORDS: Dict[str, List[str]] = {
        "medical": ["diagnosis", "symptom", "treatment", "medication", "patient"],
        "legal": ["contract", "statute", "liability", "jurisdiction", "clause"],
        "financial": ["derivative", "portfolio", "hedge", "arbitrage", "yield"],
        "scientific": ["hypothesis", "methodology", "empirical", "correlation"],
    }

    PII_PATTERNS: Dict[str, List[str]] = {
        "email": [r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"],
        "ssn": [r"\b\d{3}-\d{2}-\d{4}\b"],
        "credit_card": [
            r"\b(?:4[0-9]{12}(?:[0-9]{3})?|5[1-5][0-9]{14}|3[47][0-9]{13})\b",
            r"\b\d{4}[-\s]\d{4}[-\s]\d{4}[-\s]\d{4}\b",
        ],
        "api_key": [
            r"\bsk-[a-zA-Z0-9]{20,}\b",
            r"\bAIza[a-zA-Z0-9_-]{35}\b",
            r"\bghp_[a-zA-Z0-9]{36}\b",
        ],
        "password": [r"(?:password|passwd|pwd)\s*[:=]\s*\S{4,}"],
    }

    def __init__(self, config: Optional[ClassifierConfig] = None):
        self.config = config or ClassifierConfig()
        self._complex_domains = frozenset(d.lower() for d in self.config.complex_domains)

        self._reasoning = [re.compile(p) for p in self.REASONING_PATTERNS]
        self._multi_step = [re.compile(p, re.DOTALL) for p in self.MULTI_STEP_PATTERNS]
        self._search = [re.compile(p) for p in self.SEARCH_PATTERNS]
        self._code = [re.compile(p) for p in self.CODE_PATTERNS]
        self._pii: Dict[str, List[Pattern]] = {
            name: [re.compile(p, re.IGNORECASE) for p in patterns]
            for name, patterns in self.PII_PATTERNS.items()
        }

    def classify(self, request: InferenceRequest) -> ComplexityProfile:
        """Classify a request. Never raises."""
        try:
            return self._classify(request)
        except Exception as e:
            logger.warning(f"Classifier fault for request {getattr(request, 'request_id', '?')}: {e}")
            return self._fallback_profile(request)

    def _classify(self, request: InferenceRequest) -> ComplexityProfile:
        prompt = request.prompt if isinstance(request.prompt, str) else ""

        if not prompt.strip():
            return self._fallback_profile(request)

        prompt_lower = prompt.lower()
        signals: List[str] = []

        estimated_tokens = self.estimate_tokens(prompt)
        if request.context_tokens:
            estimated_tokens = max(estimated_tokens, request.context_tokens)
        if estimated_tokens > self.config.token_threshold:
            signals.append("long_prompt")

        privacy = bool(request.privacy_sensitive)
        if privacy:
            signals.append("privacy_declared")
        elif self.config.detect_pii:
            found = self.detect_pii(prompt)
            if found:
                privacy = True
                signals.append("pii:" + ",".join(found))

        domain_tags = self._domain_tags(request, prompt_lower)
        complex_tags = [t for t in domain_tags if t in self._complex_domains]
        if complex_tags:
            signals.append("complex_domain:" + ",".join(complex_tags))

        complexity = ComplexityLevel.COMPLEX if signals else ComplexityLevel.SIMPLE

        return ComplexityProfile(
            complexity=complexity,
            estimated_tokens=estimated_tokens,
            privacy_sensitive=privacy,
            task_class=self._detect_task_class(prompt, prompt_lower),
            affinity_key=self.affinity_key(request),
            domain_tags=domain_tags,
            signals=tuple(signals),
            required_capabilities=request.required_capabilities,
            max_output_tokens=request.max_output_tokens,
            max_latency_ms=request.max_latency_ms,
            confidence=0.9 if signals else 0.8,
        )

    def _fallback_profile(self, request: InferenceRequest) -> ComplexityProfile:
        """SIMPLE, low-confidence profile used for empty input and faults.

        A declared privacy flag is still honored so that routing keeps the
        request on local providers.
        """
        privacy = bool(getattr(request, "privacy_sensitive", False))
        return ComplexityProfile(
            complexity=ComplexityLevel.SIMPLE,
            estimated_tokens=0,
            privacy_sensitive=privacy,
            task_class=TaskClass.UNKNOWN,
            affinity_key=self.affinity_key(request),
            signals=("privacy_declared",) if privacy else (),
            required_capabilities=frozenset(getattr(request, "required_capabilities", None) or ()),
            max_output_tokens=getattr(request, "max_output_tokens", 512),
            max_latency_ms=getattr(request, "max_latency_ms", None),
            confidence=0.2,
            low_confidence=True,
        )

    # -------------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------------

    def estimate_tokens(self, text: str) -> int:
        """Rough token estimate: the larger of word count and chars/ratio."""
        words = len(text.split())
        by_chars = math.ceil(len(text) / max(self.config.chars_per_token, 1.0))
        return max(words, by_chars)

    def detect_pii(self, text: str) -> List[str]:
        """Return the PII types found in text, in a stable order."""
        return [
            name for name, patterns in self._pii.items()
            if any(p.search(text) for p in patterns)
        ]

    def _domain_tags(self, request: InferenceRequest, prompt_lower: str) -> Tuple[str, ...]:
        tags = {t.lower() for t in request.domain_tags}
        for domain, keywords in self.DOMAIN_KEYWORDS.items():
            if sum(1 for kw in keywords if kw in prompt_lower) >= 2:
                tags.add(domain)
        return tuple(sorted(tags))

    def _detect_task_class(self, prompt: str, prompt_lower: str) -> TaskClass:
        if any(p.search(prompt) for p in self._code):
            return TaskClass.CODE

        if any(kw in prompt_lower for kw in ("summarize", "summary", "tldr")):
            return TaskClass.SUMMARIZE

        if any(kw in prompt_lower for kw in ("format", "convert", "template", "restructure")):
            return TaskClass.FORMAT

        if sum(1 for p in self._reasoning if p.search(prompt_lower)) >= 2:
            return TaskClass.REASON

        if any(p.search(prompt_lower) for p in self._multi_step):
            return TaskClass.ANALYZE

        if any(p.search(prompt_lower) for p in self._search):
            return TaskClass.SEARCH

        if any(kw in prompt_lower for kw in ("write a", "compose", "story", "poem")):
            return TaskClass.CREATIVE

        return TaskClass.CHAT

    @staticmethod
    def affinity_key(request: InferenceRequest) -> str:
        """Session id when present, otherwise a stable prompt hash."""
        session_id = getattr(request, "session_id", None)
        if session_id:
            return f"session:{session_id}"

        prompt = getattr(request, "prompt", "")
        if not isinstance(prompt, str):
            prompt = repr(prompt)
        return "prompt:" + hashlib.md5(prompt.strip().lower().encode()).hexdigest()[:12]
