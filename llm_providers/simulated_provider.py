"""
Simulated provider adapter.

Stands in for a vendor adapter: it honours the ProviderAdapter contract,
prices requests from a model catalog and simulates latency, failures and
response text so the engine can run end to end without network access.
"""

import asyncio
import logging
import math
import time
import uuid
from typing import Dict, Any, Optional, List, AsyncIterator

import numpy as np

from core.config import SimulatedProviderConfig
from core.data_models import (
    ChatRequest, ChatResponse, ChatMessage, Choice, Usage, StreamChunk, ModelInfo, ProviderStatus
)
from core.errors import AuthenticationError, InvalidRequestError, ServerError, RateLimitError, NetworkError

logger = logging.getLogger(__name__)

DEFAULT_COMPLETION_TOKENS = 256


def estimate_tokens(text: str) -> int:
    """Rough token estimate: four characters per token"""
    return max(1, math.ceil(len(text) / 4)) if text else 0


class SimulatedProvider:
    """Provider adapter with simulated behaviour"""

    FAILURE_TYPES = (ServerError, RateLimitError, NetworkError)

    def __init__(self, provider_id: str, models: List[ModelInfo],
                 config: Optional[SimulatedProviderConfig] = None,
                 time_scale: float = 1.0, seed: Optional[int] = None):
        """
        Initialize the simulated provider.

        Args:
            provider_id: Provider id this adapter answers for
            models: Catalog of models the provider offers
            config: Latency, error rate and quality settings
            time_scale: Multiplier applied to simulated latency (0 disables sleeping)
            seed: Seed for the random generator
        """
        if not models:
            raise ValueError(f"Simulated provider {provider_id} needs at least one model")
        self.provider_id = provider_id
        self.models: Dict[str, ModelInfo] = {m.id: m for m in models}
        self.config = config or SimulatedProviderConfig()
        self.time_scale = time_scale
        self._rng = np.random.default_rng(seed)
        self._request_count = 0
        self._error_count = 0
        self._total_cost = 0.0

    @property
    def default_model(self) -> str:
        return next(iter(self.models))

    def _model_info(self, model: str) -> ModelInfo:
        info = self.models.get(model)
        if info is None:
            raise InvalidRequestError(
                f"Model {model} not supported. Available: {list(self.models.keys())}",
                provider=self.provider_id
            )
        return info

    def _price(self, info: ModelInfo, prompt_tokens: int, completion_tokens: int) -> float:
        cost = (prompt_tokens * info.input_cost_per_1k + completion_tokens * info.output_cost_per_1k) / 1000
        return cost * self.config.price_multiplier

    async def estimate_cost(self, request: ChatRequest) -> float:
        info = self._model_info(request.model)
        prompt_tokens = estimate_tokens(request.text_content)
        completion_tokens = request.max_tokens or DEFAULT_COMPLETION_TOKENS
        return self._price(info, prompt_tokens, completion_tokens)

    async def get_models(self) -> List[ModelInfo]:
        return list(self.models.values())

    async def validate_credential(self, credential: str) -> bool:
        return bool(credential and credential.strip())

    async def health_check(self) -> ProviderStatus:
        error_rate = self._error_count / self._request_count if self._request_count else self.config.error_rate
        issues = []
        if error_rate >= 0.5:
            issues.append(f"High error rate: {error_rate:.0%}")
        return ProviderStatus(
            provider=self.provider_id,
            is_healthy=not issues,
            latency=self.config.base_latency_ms,
            error_rate=error_rate,
            last_check=time.time(),
            issues=issues,
        )

    async def _simulate_call(self, request: ChatRequest, credential: str) -> ModelInfo:
        if not await self.validate_credential(credential):
            raise AuthenticationError(f"Invalid credential for {self.provider_id}", provider=self.provider_id)
        info = self._model_info(request.model)

        base = self.config.base_latency_ms
        latency_ms = base + self._rng.exponential(0.3 * base) if base > 0 else 0.0
        if self.time_scale > 0:
            await asyncio.sleep(latency_ms * self.time_scale / 1000)

        self._request_count += 1
        if self._rng.random() < self.config.error_rate:
            self._error_count += 1
            error_class = self.FAILURE_TYPES[int(self._rng.integers(len(self.FAILURE_TYPES)))]
            raise error_class(f"Simulated failure from {self.provider_id}", provider=self.provider_id)
        return info

    def _compose_reply(self, request: ChatRequest) -> str:
        prompt = request.user_text or request.text_content
        templates = [
            f"Here is a response from {request.model}. You asked about: {prompt[:80]}.",
            f"{request.model} processed your request. Summary of the question: {prompt[:60]}.",
            f"Response from {request.model}: analyzing '{prompt[:50]}' yields the following answer.",
        ]
        return templates[int(self._rng.integers(len(templates)))]

    async def chat(self, request: ChatRequest, credential: str) -> ChatResponse:
        info = await self._simulate_call(request, credential)
        content = self._compose_reply(request)

        prompt_tokens = estimate_tokens(request.text_content)
        completion_tokens = estimate_tokens(content) + int(self._rng.integers(10, 100))
        if request.max_tokens:
            completion_tokens = min(completion_tokens, request.max_tokens)
        cost = self._price(info, prompt_tokens, completion_tokens)
        self._total_cost += cost

        return ChatResponse(
            provider=self.provider_id,
            model=request.model,
            choices=[Choice(message=ChatMessage(role="assistant", content=content), finish_reason="stop")],
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
                cost=cost,
            ),
            metadata={"quality_hint": self.config.quality_factor},
        )

    async def chat_stream(self, request: ChatRequest, credential: str) -> AsyncIterator[StreamChunk]:
        info = await self._simulate_call(request, credential)
        content = self._compose_reply(request)
        stream_id = f"stream_{uuid.uuid4().hex[:12]}"
        words = content.split(" ")

        for i, word in enumerate(words):
            last = i == len(words) - 1
            usage = None
            if last:
                prompt_tokens = estimate_tokens(request.text_content)
                completion_tokens = estimate_tokens(content)
                cost = self._price(info, prompt_tokens, completion_tokens)
                self._total_cost += cost
                usage = Usage(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens, cost)
            yield StreamChunk(
                id=stream_id,
                provider=self.provider_id,
                model=request.model,
                delta=word if i == 0 else f" {word}",
                finish_reason="stop" if last else None,
                usage=usage,
            )
            await asyncio.sleep(0)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get usage statistics for this provider instance.

        Returns:
            Dict[str, Any]: Statistics including request count, errors, cost
        """
        return {
            "provider": self.provider_id,
            "request_count": self._request_count,
            "error_count": self._error_count,
            "total_cost": self._total_cost,
            "avg_cost_per_request": (
                self._total_cost / self._request_count
                if self._request_count > 0 else 0
            ),
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"provider_id='{self.provider_id}', "
            f"models={list(self.models)}, "
            f"requests={self._request_count}"
            f")"
        )
