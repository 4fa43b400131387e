"""
Provider Adapters - Uniform Interface over Local and Cloud Backends
===================================================================

Every backend is wrapped by a ProviderAdapter whose invoke() returns an
InferenceAttempt carrying either a normalized ProviderResponse or a typed
ProviderError. Adapters never raise for provider failures and never retry;
retry/fallback policy belongs to the orchestrator.

Each invoke():
- honors the timeout by cancelling the underlying call (asyncio.wait_for)
- translates native errors into ProviderErrorKind via ErrorClassifier
- reports to the CapacityMonitor exactly once (success, error, timeout or
  cancellation); this is the only telemetry path out of an adapter

Adapters:
- OpenAICompatibleAdapter: /v1/chat/completions (llama.cpp server, vLLM,
  LM Studio, OpenAI)
- AnthropicMessagesAdapter: /v1/messages
- CallableAdapter: in-process async callable (embedded runtimes, tests)
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

import aiohttp

from prime_router.core.capacity_monitor import CapacityMonitor
from prime_router.core.router_config import SecretResolver
from prime_router.core.router_errors import (
    ConfigError,
    ErrorClassifier,
    ProviderError,
    ProviderErrorKind,
)
from prime_router.core.router_models import (
    Admission,
    AttemptOutcome,
    InferenceAttempt,
    InferenceRequest,
    ProviderDescriptor,
    ProviderResponse,
)
from prime_router.core.router_telemetry import tracer

logger = logging.getLogger(__name__)


# =============================================================================
# BASE ADAPTER
# =============================================================================

class ProviderAdapter(ABC):
    """Base class for provider adapters."""

    name = "base"

    def __init__(self, monitor: CapacityMonitor, secrets: Optional[SecretResolver] = None):
        self._monitor = monitor
        self._secrets = secrets or SecretResolver()

    @abstractmethod
    async def _call(self, request: InferenceRequest, descriptor: ProviderDescriptor) -> ProviderResponse:
        """Perform the provider call. May raise any exception."""
        ...

    async def invoke(
        self,
        request: InferenceRequest,
        descriptor: ProviderDescriptor,
        timeout: Optional[float] = None,
        admission: Optional[Admission] = None,
    ) -> InferenceAttempt:
        """
        Call the provider once and return the attempt record.

        admission is the capacity claim made for this call, if any; its probe
        id is handed back to the monitor with the outcome.
        """
        timeout = timeout if timeout is not None else descriptor.timeout_seconds
        provider_id = descriptor.provider_id

        started_at = time.time()
        start = time.perf_counter()
        outcome = AttemptOutcome.ERROR
        response: Optional[ProviderResponse] = None
        error: Optional[ProviderError] = None

        with tracer.start_as_current_span("prime_router.provider_call") as span:
            span.set_attribute("prime_router.provider_id", provider_id)
            span.set_attribute("prime_router.provider_kind", descriptor.kind.value)
            span.set_attribute("prime_router.request_id", request.request_id)

            try:
                response = await asyncio.wait_for(self._call(request, descriptor), timeout=timeout)
                outcome = AttemptOutcome.SUCCESS

            except asyncio.CancelledError:
                outcome = AttemptOutcome.CANCELLED
                raise

            except asyncio.TimeoutError:
                outcome = AttemptOutcome.TIMEOUT
                error = ProviderError(
                    ProviderErrorKind.TIMEOUT,
                    f"no response within {timeout:.2f}s",
                    provider_id=provider_id,
                )

            except ConfigError as e:
                error = ProviderError(ProviderErrorKind.AUTH, e.message, provider_id=provider_id)

            except Exception as e:
                error = ErrorClassifier.classify(e, provider_id=provider_id)
                if error.kind == ProviderErrorKind.TIMEOUT:
                    outcome = AttemptOutcome.TIMEOUT

            finally:
                latency_ms = (time.perf_counter() - start) * 1000
                self._monitor.record(
                    provider_id,
                    outcome,
                    latency_ms,
                    tokens=response.total_tokens if response else 0,
                    probe_id=admission.probe_id if admission is not None else None,
                )

            span.set_attribute("prime_router.outcome", outcome.value)
            span.set_attribute("prime_router.latency_ms", latency_ms)

        if error is not None:
            logger.debug(f"Provider {provider_id} failed for {request.request_id}: {error}")

        return InferenceAttempt(
            request_id=request.request_id,
            provider_id=provider_id,
            provider_kind=descriptor.kind,
            started_at=started_at,
            finished_at=started_at + latency_ms / 1000,
            outcome=outcome,
            response=response,
            error=error,
        )

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass


# =============================================================================
# HTTP ADAPTERS
# =============================================================================

class HttpProviderAdapter(ProviderAdapter):
    """Shared session handling for HTTP JSON providers."""

    def __init__(
        self,
        monitor: CapacityMonitor,
        secrets: Optional[SecretResolver] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__(monitor, secrets)
        self._session = session
        self._owns_session = session is None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post_json(
        self,
        descriptor: ProviderDescriptor,
        payload: Dict[str, Any],
        headers: Dict[str, str],
    ) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()

        async with self._session.post(descriptor.endpoint, json=payload, headers=headers) as response:
            if response.status != 200:
                body = await response.text()
                raise ProviderError(
                    ErrorClassifier.from_status(response.status),
                    f"HTTP {response.status}: {body[:500]}",
                    provider_id=descriptor.provider_id,
                    status=response.status,
                )
            data = await response.json()

        if not isinstance(data, dict):
            raise ProviderError(
                ProviderErrorKind.MALFORMED,
                "response body is not a JSON object",
                provider_id=descriptor.provider_id,
            )
        return data


class OpenAICompatibleAdapter(HttpProviderAdapter):
    """Adapter for OpenAI-style chat completion endpoints."""

    name = "openai"

    async def _call(self, request: InferenceRequest, descriptor: ProviderDescriptor) -> ProviderResponse:
        headers = {"Content-Type": "application/json"}
        api_key = self._secrets.resolve(descriptor.credentials_ref)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        payload = {
            "model": descriptor.model or "default",
            "messages": [{"role": "user", "content": request.prompt}],
            "max_tokens": request.max_output_tokens,
        }

        data = await self._post_json(descriptor, payload, headers)

        try:
            choice = data["choices"][0]
            text = choice["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(
                ProviderErrorKind.MALFORMED,
                f"unexpected completion shape: {e}",
                provider_id=descriptor.provider_id,
            ) from e

        usage = data.get("usage") or {}
        return ProviderResponse(
            text=text,
            provider_id=descriptor.provider_id,
            model=data.get("model", descriptor.model),
            confidence=self._extract_confidence(data, choice),
            prompt_tokens=int(usage.get("prompt_tokens", 0) or 0),
            completion_tokens=int(usage.get("completion_tokens", 0) or 0),
            finish_reason=choice.get("finish_reason"),
            raw=data,
        )

    @staticmethod
    def _extract_confidence(data: Mapping[str, Any], choice: Mapping[str, Any]) -> Optional[float]:
        """Explicit confidence field if present, else mean token probability."""
        for source in (choice, data):
            value = source.get("confidence")
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return min(max(float(value), 0.0), 1.0)

        logprobs = (choice.get("logprobs") or {}).get("content") if isinstance(choice.get("logprobs"), dict) else None
        if logprobs:
            values = [t.get("logprob") for t in logprobs if isinstance(t, dict) and t.get("logprob") is not None]
            if values:
                return math.exp(sum(values) / len(values))

        return None


class AnthropicMessagesAdapter(HttpProviderAdapter):
    """Adapter for the Anthropic Messages API."""

    name = "anthropic"

    API_VERSION = "2023-06-01"

    async def _call(self, request: InferenceRequest, descriptor: ProviderDescriptor) -> ProviderResponse:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": self.API_VERSION,
        }
        api_key = self._secrets.resolve(descriptor.credentials_ref)
        if api_key:
            headers["x-api-key"] = api_key

        payload = {
            "model": descriptor.model,
            "max_tokens": request.max_output_tokens,
            "messages": [{"role": "user", "content": request.prompt}],
        }

        data = await self._post_json(descriptor, payload, headers)

        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProviderError(
                ProviderErrorKind.MALFORMED,
                "missing content blocks",
                provider_id=descriptor.provider_id,
            )

        text = "".join(
            b.get("text", "") for b in blocks
            if isinstance(b, dict) and b.get("type") == "text"
        )
        usage = data.get("usage") or {}

        return ProviderResponse(
            text=text,
            provider_id=descriptor.provider_id,
            model=data.get("model", descriptor.model),
            prompt_tokens=int(usage.get("input_tokens", 0) or 0),
            completion_tokens=int(usage.get("output_tokens", 0) or 0),
            finish_reason=data.get("stop_reason"),
            raw=data,
        )


# =============================================================================
# IN-PROCESS ADAPTER
# =============================================================================

CallableBackend = Callable[[InferenceRequest, ProviderDescriptor], Awaitable[Union[ProviderResponse, str]]]


class CallableAdapter(ProviderAdapter):
    """
    Wraps an async callable as a provider.

    Usage:
        async def local_runtime(request, descriptor):
            return await llama.generate(request.prompt)

        registry.register("embedded", CallableAdapter(monitor, local_runtime))
    """

    name = "callable"

    def __init__(
        self,
        monitor: CapacityMonitor,
        backend: CallableBackend,
        secrets: Optional[SecretResolver] = None,
    ):
        super().__init__(monitor, secrets)
        self._backend = backend

    async def _call(self, request: InferenceRequest, descriptor: ProviderDescriptor) -> ProviderResponse:
        result = await self._backend(request, descriptor)
        if isinstance(result, ProviderResponse):
            return result
        if isinstance(result, str):
            return ProviderResponse(text=result, provider_id=descriptor.provider_id, model=descriptor.model)
        raise ProviderError(
            ProviderErrorKind.MALFORMED,
            f"backend returned {type(result).__name__}",
            provider_id=descriptor.provider_id,
        )


# =============================================================================
# REGISTRY
# =============================================================================

class AdapterRegistry:
    """
    Maps ProviderDescriptor.adapter names to adapter instances.

    HTTP adapters are created on demand and share one aiohttp session opened
    by start().
    """

    FACTORIES = {
        OpenAICompatibleAdapter.name: OpenAICompatibleAdapter,
        AnthropicMessagesAdapter.name: AnthropicMessagesAdapter,
    }

    def __init__(self, monitor: CapacityMonitor, secrets: Optional[SecretResolver] = None):
        self._monitor = monitor
        self._secrets = secrets or SecretResolver()
        self._adapters: Dict[str, ProviderAdapter] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    def register(self, name: str, adapter: ProviderAdapter) -> None:
        self._adapters[name] = adapter
        logger.debug(f"Registered adapter: {name}")

    def supports(self, name: str) -> bool:
        return name in self._adapters or name in self.FACTORIES

    def get(self, name: str) -> ProviderAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            factory = self.FACTORIES.get(name)
            if factory is None:
                raise ConfigError(f"No adapter registered for '{name}'")
            adapter = factory(self._monitor, self._secrets, session=self._session)
            self._adapters[name] = adapter
        return adapter

    def for_descriptor(self, descriptor: ProviderDescriptor) -> ProviderAdapter:
        return self.get(descriptor.adapter)

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()

    async def close(self) -> None:
        for adapter in self._adapters.values():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"Failed to close adapter {adapter.name}: {e}")

        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
