"""Shared fixtures: a scripted provider adapter and a controllable clock."""

import asyncio
from datetime import datetime, timezone
from typing import List, Optional

import pytest

from core.config import AppConfig
from core.errors import NetworkError
from core.data_models import (
    ChatRequest, ChatResponse, ChatMessage, Choice, Usage, StreamChunk, ModelInfo, ProviderStatus,
)
from llm_providers import ProviderRegistry, StaticCredentialProvider, InMemoryUsageSink
from ml import FeatureExtractor, ExtractionContext, RequestFeatures
from resilience import ResilienceManager
from routers import RequestRouter


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAdapter:
    """Provider adapter with a fixed cost and a queue of scripted failures"""

    def __init__(self, provider_id: str, cost: float = 0.0001, models: Optional[List[ModelInfo]] = None,
                 content: str = "Here is a clear answer to your question about the topic you raised."):
        self.provider_id = provider_id
        self.cost = cost
        self.content = content
        self.models = models or [
            ModelInfo(id=f"{provider_id}-model", provider=provider_id,
                      input_cost_per_1k=0.001, output_cost_per_1k=0.002, supports_tools=True),
        ]
        self.failures: List[BaseException] = []
        self.stream_failure_after: Optional[int] = None
        self.chunk_delay = 0.0
        self.calls: List[str] = []
        self.healthy = True

    def fail_next(self, *errors: BaseException) -> None:
        self.failures.extend(errors)

    async def chat(self, request: ChatRequest, credential: str) -> ChatResponse:
        self.calls.append(request.model)
        if self.failures:
            raise self.failures.pop(0)
        return ChatResponse(
            provider=self.provider_id,
            model=request.model,
            choices=[Choice(message=ChatMessage(role="assistant", content=self.content))],
            usage=Usage(prompt_tokens=10, completion_tokens=20, total_tokens=30, cost=self.cost),
        )

    async def chat_stream(self, request: ChatRequest, credential: str):
        self.calls.append(request.model)
        if self.failures:
            raise self.failures.pop(0)
        words = self.content.split(" ")
        for i, word in enumerate(words):
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            if self.stream_failure_after is not None and i == self.stream_failure_after:
                raise NetworkError("stream dropped", provider=self.provider_id)
            last = i == len(words) - 1
            yield StreamChunk(
                provider=self.provider_id,
                model=request.model,
                delta=word,
                id="stream_1",
                finish_reason="stop" if last else None,
                usage=Usage(10, 20, 30, self.cost) if last else None,
            )

    async def get_models(self) -> List[ModelInfo]:
        return list(self.models)

    async def validate_credential(self, credential: str) -> bool:
        return bool(credential)

    async def health_check(self) -> ProviderStatus:
        return ProviderStatus(provider=self.provider_id, is_healthy=self.healthy, latency=10.0)

    async def estimate_cost(self, request: ChatRequest) -> float:
        return self.cost


async def no_sleep(seconds: float) -> None:
    return None


def make_request(content: str = "hi", model: str = "chat-small", **kwargs) -> ChatRequest:
    return ChatRequest.from_dict({"model": model, "messages": [{"role": "user", "content": content}], **kwargs})


def make_response(content: str = "Here is the answer.", provider: str = "openai",
                  model: str = "gpt-3.5-turbo", cost: float = 0.001) -> ChatResponse:
    return ChatResponse(
        provider=provider,
        model=model,
        choices=[Choice(message=ChatMessage(role="assistant", content=content))],
        usage=Usage(prompt_tokens=10, completion_tokens=20, total_tokens=30, cost=cost),
    )


WEDNESDAY_10AM = datetime(2024, 3, 13, 10, 0, tzinfo=timezone.utc)


def make_features(content: str = "hi", now: datetime = WEDNESDAY_10AM, **user_context) -> RequestFeatures:
    context = ExtractionContext(now=now, user_context=user_context)
    return FeatureExtractor().extract(make_request(content), context)


def build_router(adapters: List[FakeAdapter], clock: Optional[FakeClock] = None,
                 app_config: Optional[AppConfig] = None, credentials=None,
                 usage_sink: Optional[InMemoryUsageSink] = None) -> RequestRouter:
    clock = clock or FakeClock()
    app_config = app_config or AppConfig()
    registry = ProviderRegistry({a.provider_id: a for a in adapters})
    if credentials is None:
        credentials = {a.provider_id: f"key-{a.provider_id}" for a in adapters}
    resilience = ResilienceManager(
        retry_config=app_config.retry_config(),
        circuit_config=app_config.circuit_breaker_config(),
        graceful_degradation=app_config.resilience.graceful_degradation,
        fallback_enabled=app_config.router.fallback_enabled,
        clock=clock,
        sleep=no_sleep,
        seed=7,
    )
    return RequestRouter(
        registry,
        app_config=app_config,
        credential_provider=StaticCredentialProvider(credentials),
        usage_sink=usage_sink or InMemoryUsageSink(),
        resilience=resilience,
        clock=clock,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def usage_sink():
    return InMemoryUsageSink()
