"""
Provider capability contracts.

This module defines the interface every provider adapter exposes to the
routing engine, together with the two other collaborators the router talks
to: the credential store and the usage sink. Adapters are plain classes that
satisfy the ProviderAdapter protocol; the router selects them by provider id.
"""

import logging
from typing import Dict, Any, Optional, List, AsyncIterator, Protocol, runtime_checkable

from core.data_models import ChatRequest, ChatResponse, StreamChunk, ModelInfo, ProviderStatus, UsageRecord

logger = logging.getLogger(__name__)


@runtime_checkable
class ProviderAdapter(Protocol):
    """
    Capability interface of one external provider.

    All provider-specific wire formats are hidden behind these methods.
    Failures are reported with the exceptions from core.errors.
    """

    provider_id: str

    async def chat(self, request: ChatRequest, credential: str) -> ChatResponse:
        """
        Generate a response.

        Args:
            request: Standardized chat request (model already mapped)
            credential: Decrypted credential for this provider

        Returns:
            ChatResponse: Standardized response object

        Raises:
            AuthenticationError: When the credential is rejected
            RateLimitError: When rate limits are exceeded
            LLMProviderError: For any other provider failure
        """
        ...

    def chat_stream(self, request: ChatRequest, credential: str) -> AsyncIterator[StreamChunk]:
        """Stream a response chunk by chunk"""
        ...

    async def get_models(self) -> List[ModelInfo]:
        """List models offered by the provider"""
        ...

    async def validate_credential(self, credential: str) -> bool:
        """Return True if the provider accepts the credential"""
        ...

    async def health_check(self) -> ProviderStatus:
        """Report current provider health"""
        ...

    async def estimate_cost(self, request: ChatRequest) -> float:
        """Estimate the cost in dollars of serving the request"""
        ...


@runtime_checkable
class CredentialProvider(Protocol):
    """Yields the decrypted credential of a user for a provider"""

    async def resolve(self, user_id: str, provider_id: str) -> Optional[str]:
        ...


@runtime_checkable
class UsageSink(Protocol):
    """Receives one usage record per completed request"""

    async def record(self, usage: UsageRecord) -> None:
        ...


class StaticCredentialProvider:
    """
    Credential provider backed by a fixed mapping.

    Keys may be either a provider id (shared by every user) or a
    (user_id, provider_id) tuple.
    """

    def __init__(self, credentials: Optional[Dict[Any, str]] = None):
        self._credentials: Dict[Any, str] = dict(credentials or {})

    def set_credential(self, provider_id: str, credential: str, user_id: Optional[str] = None) -> None:
        key = (user_id, provider_id) if user_id else provider_id
        self._credentials[key] = credential

    async def resolve(self, user_id: str, provider_id: str) -> Optional[str]:
        credential = self._credentials.get((user_id, provider_id))
        if credential is None:
            credential = self._credentials.get(provider_id)
        return credential or None


class LoggingUsageSink:
    """Usage sink that writes every record to the log"""

    async def record(self, usage: UsageRecord) -> None:
        logger.info(
            f"Usage user={usage.user_id} provider={usage.provider} model={usage.model} "
            f"tokens={usage.total_tokens} cost={usage.cost:.6f} latency_ms={usage.latency_ms:.1f} "
            f"success={usage.success} streaming={usage.streaming}"
        )


class InMemoryUsageSink:
    """Usage sink that keeps the records, for inspection and tests"""

    def __init__(self, max_records: int = 10000):
        self.max_records = max_records
        self.records: List[UsageRecord] = []

    async def record(self, usage: UsageRecord) -> None:
        self.records.append(usage)
        if len(self.records) > self.max_records:
            del self.records[:len(self.records) - self.max_records]

    def total_cost(self) -> float:
        return sum(r.cost for r in self.records)
