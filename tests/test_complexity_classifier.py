"""Tests for the complexity classifier."""

import pytest

from prime_router.core.complexity_classifier import ComplexityClassifier
from prime_router.core.router_config import ClassifierConfig
from prime_router.core.router_models import ComplexityLevel, InferenceRequest, TaskClass


@pytest.fixture
def classifier():
    return ComplexityClassifier(ClassifierConfig(token_threshold=200))


class TestComplexitySignals:
    """Each rule is independently sufficient for COMPLEX."""

    def test_short_plain_prompt_is_simple(self, classifier):
        """No signals means SIMPLE."""
        profile = classifier.classify(InferenceRequest(prompt="What is the capital of France?"))

        assert profile.complexity == ComplexityLevel.SIMPLE
        assert profile.signals == ()
        assert profile.privacy_sensitive is False
        assert profile.low_confidence is False

    def test_long_prompt_is_complex(self, classifier):
        """Estimated tokens above the threshold mark COMPLEX."""
        profile = classifier.classify(InferenceRequest(prompt="word " * 400))

        assert profile.complexity == ComplexityLevel.COMPLEX
        assert "long_prompt" in profile.signals
        assert profile.estimated_tokens >= 400

    def test_declared_context_raises_estimate(self, classifier):
        """A declared context size larger than the prompt wins."""
        profile = classifier.classify(InferenceRequest(prompt="hello", context_tokens=5000))

        assert profile.estimated_tokens == 5000
        assert profile.is_complex

    def test_privacy_flag_is_complex(self, classifier):
        """A declared privacy flag marks COMPLEX and privacy-sensitive."""
        profile = classifier.classify(InferenceRequest(prompt="hello there", privacy_sensitive=True))

        assert profile.complexity == ComplexityLevel.COMPLEX
        assert profile.privacy_sensitive is True
        assert "privacy_declared" in profile.signals

    def test_detected_pii_sets_privacy(self, classifier):
        """PII in the prompt is treated like a declared privacy flag."""
        profile = classifier.classify(InferenceRequest(prompt="Email jane.doe@example.com about the invoice"))

        assert profile.privacy_sensitive is True
        assert any(s.startswith("pii:") for s in profile.signals)

    def test_pii_detection_can_be_disabled(self):
        """detect_pii=False leaves undeclared requests non-private."""
        classifier = ComplexityClassifier(ClassifierConfig(detect_pii=False))
        profile = classifier.classify(InferenceRequest(prompt="Email jane.doe@example.com"))

        assert profile.privacy_sensitive is False

    def test_declared_complex_domain(self, classifier):
        """A declared domain tag in the complex set marks COMPLEX."""
        profile = classifier.classify(InferenceRequest(prompt="Quick question", domain_tags=("Legal",)))

        assert profile.complexity == ComplexityLevel.COMPLEX
        assert profile.domain_tags == ("legal",)

    def test_keyword_detected_domain(self, classifier):
        """Two or more domain keywords add the domain tag."""
        profile = classifier.classify(
            InferenceRequest(prompt="What treatment fits this diagnosis for the patient?")
        )

        assert "medical" in profile.domain_tags
        assert profile.is_complex

    def test_non_complex_domain_tag_stays_simple(self, classifier):
        """Domain tags outside the complex set do not mark COMPLEX."""
        profile = classifier.classify(InferenceRequest(prompt="Tell me a joke", domain_tags=("humor",)))

        assert profile.complexity == ComplexityLevel.SIMPLE


class TestClassifierRobustness:
    """Never fails, deterministic."""

    def test_empty_prompt_is_simple_low_confidence(self, classifier):
        """Empty input classifies as SIMPLE with a low-confidence marker."""
        profile = classifier.classify(InferenceRequest(prompt="   "))

        assert profile.complexity == ComplexityLevel.SIMPLE
        assert profile.low_confidence is True

    def test_non_string_prompt_does_not_raise(self, classifier):
        """Garbage input degrades instead of raising."""
        profile = classifier.classify(InferenceRequest(prompt=None))

        assert profile.complexity == ComplexityLevel.SIMPLE
        assert profile.low_confidence is True

    def test_internal_fault_keeps_privacy(self, classifier, monkeypatch):
        """A classifier fault degrades to SIMPLE but keeps a declared privacy flag."""

        def boom(text):
            raise RuntimeError("regex engine exploded")

        monkeypatch.setattr(classifier, "estimate_tokens", boom)
        profile = classifier.classify(InferenceRequest(prompt="secret stuff", privacy_sensitive=True))

        assert profile.complexity == ComplexityLevel.SIMPLE
        assert profile.low_confidence is True
        assert profile.privacy_sensitive is True

    def test_deterministic(self, classifier):
        """Identical requests give identical profiles."""
        request = InferenceRequest(prompt="Analyze and compare these two contracts", request_id="r1")

        assert classifier.classify(request) == classifier.classify(request)


class TestTaskClassAndAffinity:
    """Task class detection and affinity keys."""

    @pytest.mark.parametrize("prompt,expected", [
        ("def parse(x):\n    return x", TaskClass.CODE),
        ("Summarize this article for me", TaskClass.SUMMARIZE),
        ("Analyze the data and evaluate the hypothesis", TaskClass.REASON),
        ("Write a poem about autumn", TaskClass.CREATIVE),
        ("hi!", TaskClass.CHAT),
    ])
    def test_task_class(self, classifier, prompt, expected):
        """Task class is derived from prompt patterns."""
        assert classifier.classify(InferenceRequest(prompt=prompt)).task_class == expected

    def test_session_affinity_key(self, classifier):
        """Session id drives the affinity key."""
        profile = classifier.classify(InferenceRequest(prompt="hello", session_id="abc"))
        assert profile.affinity_key == "session:abc"

    def test_prompt_affinity_key_is_stable(self, classifier):
        """Without a session, equal prompts share an affinity key."""
        a = classifier.classify(InferenceRequest(prompt="Hello World"))
        b = classifier.classify(InferenceRequest(prompt="  hello world "))

        assert a.affinity_key == b.affinity_key
        assert a.affinity_key.startswith("prompt:")
