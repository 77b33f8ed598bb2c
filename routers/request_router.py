"""
Request Router.

Selects the provider/model for each chat request by blending observed
performance, estimated cost and expected quality, executes it through the
resilience layer and feeds the outcome back into the cache, the quality
history and the learned models.
"""

import asyncio
import functools
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, AsyncIterator, Callable

from core.config import AppConfig
from core.constants import (
    PERFORMANCE_TARGETS, COST_THRESHOLDS, DEGRADED_MODELS,
    find_equivalent_model, static_quality_score,
)
from core.data_models import (
    ChatRequest, ChatResponse, StreamChunk, ProviderStatus, FallbackOption,
    RouteDecision, CostAnalysis, CostRecommendation, UsageRecord,
)
from core.errors import (
    RouterError, MLError, AuthenticationError, InvalidRequestError, ServerError,
    CircuitOpenError, NoAvailableProviders, RecoveryExhaustedError, ConfigurationError,
    InsufficientTrainingData, ProviderTimeoutError,
)
from llm_providers import (
    ProviderRegistry, CredentialProvider, UsageSink, StaticCredentialProvider,
    LoggingUsageSink, create_provider_registry,
)
from caching import ResponseCache
from resilience import ResilienceManager, RecoveryContext
from ml import (
    FeatureExtractor, ExtractionContext, RequestFeatures, QualityScorer,
    TrainingDataCollector, TrainingExample, PredictionEngine, EnsemblePrediction, was_optimal,
)

logger = logging.getLogger(__name__)

METRICS_ALPHA = 0.1
SCORE_EPSILON = 1e-9
MAX_FALLBACKS = 3

REASON_DESCRIPTIONS = {
    "cheapest": "Lowest cost option at {cost}",
    "best_value": "Best balance of cost ({cost}) and quality",
    "highest_quality": "Premium quality option at {cost}",
    "fastest": "Fastest response time at {cost}",
}


@dataclass
class RouteOptions:
    """Per-request routing options"""
    preferred_provider: Optional[str] = None
    max_cost: Optional[float] = None
    require_tools: bool = False
    user_context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderMetrics:
    """Rolling request metrics of one provider (exponential moving averages)"""
    total_requests: int = 0
    successful_requests: int = 0
    avg_latency: float = 0.0
    avg_cost: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 1.0
        return self.successful_requests / self.total_requests

    def record(self, latency_ms: float, cost: float, success: bool) -> None:
        self.total_requests += 1
        if success:
            self.successful_requests += 1
        self.avg_latency = self.avg_latency * (1 - METRICS_ALPHA) + latency_ms * METRICS_ALPHA
        self.avg_cost = self.avg_cost * (1 - METRICS_ALPHA) + cost * METRICS_ALPHA

    def performance_score(self) -> float:
        latency_score = max(0.0, 1 - self.avg_latency / PERFORMANCE_TARGETS["MAX_RESPONSE_TIME"])
        return self.success_rate * 0.7 + latency_score * 0.3


@dataclass
class Candidate:
    provider: str
    model: str
    cost: float
    quality: float = 0.0
    score: float = 0.0


@dataclass
class RouteSelection:
    """A decision plus what executing it needs"""
    decision: RouteDecision
    credentials: Dict[str, str]
    ensemble: Optional[EnsemblePrediction] = None
    degradation: List[FallbackOption] = field(default_factory=list)


class RequestRouter:
    """Cost, performance and quality aware router over a provider registry"""

    def __init__(
        self,
        registry: ProviderRegistry,
        app_config: Optional[AppConfig] = None,
        credential_provider: Optional[CredentialProvider] = None,
        usage_sink: Optional[UsageSink] = None,
        cache: Optional[ResponseCache] = None,
        resilience: Optional[ResilienceManager] = None,
        feature_extractor: Optional[FeatureExtractor] = None,
        quality_scorer: Optional[QualityScorer] = None,
        prediction_engine: Optional[PredictionEngine] = None,
        collector: Optional[TrainingDataCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the router.

        Args:
            registry: Provider adapters keyed by provider id
            app_config: Application configuration (defaults when omitted)
            credential_provider: Resolves a credential per user and provider
            usage_sink: Receives one usage record per completed request
            cache: Response cache
            resilience: Recovery manager, also the owner of circuit state
            feature_extractor: Request feature extractor
            quality_scorer: Response quality scorer
            prediction_engine: Learned cost/latency/quality models
            collector: Training data collector
            clock: Time source
        """
        self.app_config = app_config or AppConfig()
        self.config = self.app_config.router
        self.registry = registry
        self.credentials = credential_provider or StaticCredentialProvider(self.app_config.credentials)
        self.usage_sink = usage_sink or LoggingUsageSink()
        self._clock = clock

        self.cache = cache or ResponseCache(self.app_config.cache, clock=clock)
        self.resilience = resilience or ResilienceManager(
            retry_config=self.app_config.retry_config(),
            circuit_config=self.app_config.circuit_breaker_config(),
            graceful_degradation=self.app_config.resilience.graceful_degradation,
            fallback_enabled=self.config.fallback_enabled,
            call_timeout=self.config.request_timeout_seconds,
            clock=clock,
        )
        self.breakers = self.resilience.breakers

        self.feature_extractor = feature_extractor or FeatureExtractor()
        self.quality_scorer = quality_scorer or QualityScorer(clock=clock)
        self.prediction_engine = prediction_engine or PredictionEngine(self.app_config.ml, clock=clock)
        self.collector = collector or TrainingDataCollector(clock=clock)

        self.metrics: Dict[str, ProviderMetrics] = {p: ProviderMetrics() for p in registry.provider_ids()}
        self._statuses: Dict[str, ProviderStatus] = {
            p: ProviderStatus(provider=p) for p in registry.provider_ids()
        }
        self._status_checked: Dict[str, float] = {p: 0.0 for p in registry.provider_ids()}

        self.request_count = 0
        self.cache_hits = 0
        self.failed_requests = 0
        self._tasks: List[asyncio.Task] = []

        logger.info(f"Initialized RequestRouter with {len(registry)} providers: {registry.provider_ids()}")

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def route(self, request: ChatRequest, user_id: str = "anonymous",
                    options: Optional[RouteOptions] = None) -> ChatResponse:
        """
        Route a chat request to the best available provider.

        Args:
            request: Chat request
            user_id: Caller identity, used for credentials and usage records
            options: Routing options

        Returns:
            ChatResponse: provider response, annotated with the route decision

        Raises:
            NoAvailableProviders: No candidate is available or credentialed
            RecoveryExhaustedError: Every recovery strategy failed
            AuthenticationError, InvalidRequestError: Rejected by the primary
        """
        options = options or RouteOptions()
        request_id = f"req_{uuid.uuid4().hex[:12]}"
        start = self._clock()
        self.request_count += 1

        if not request.stream and self.cache.is_worth_caching(request):
            cached = await self.cache.get(request)
            if cached is not None:
                self.cache_hits += 1
                return cached.with_metadata(request_id=request_id)

        features = self._extract_features(request, user_id, options)
        selection = await self._select_route(request, user_id, options, features)
        decision = selection.decision
        self._collect_decision(request_id, user_id, features, selection)

        context = RecoveryContext(
            user_id=user_id,
            provider=decision.selected_provider,
            model=decision.selected_model,
            request_id=request_id,
        )
        candidates = [
            FallbackOption(decision.selected_provider, decision.selected_model, decision.estimated_cost),
            *decision.fallback_options,
        ]
        result = await self.resilience.execute_with_recovery(
            context, candidates, self._executor(request, user_id, selection.credentials),
            degradation_candidates=selection.degradation,
        )
        latency_ms = (self._clock() - start) * 1000

        if not result.success:
            self.failed_requests += 1
            self.collector.collect_outcome(request_id, cost=0.0, latency_ms=latency_ms, quality=0.0, success=False)
            await self._emit_usage(UsageRecord(
                user_id=user_id,
                provider=decision.selected_provider,
                model=decision.selected_model,
                request_id=request_id,
                total_tokens=0,
                cost=0.0,
                latency_ms=latency_ms,
                success=False,
                original_model=request.model,
                timestamp=self._clock(),
            ))
            if result.recovery_strategy == "non_retryable_error" and result.last_error is not None:
                raise result.last_error
            raise RecoveryExhaustedError(
                f"All recovery strategies failed for request {request_id}",
                strategy=result.recovery_strategy,
                root_cause=result.last_error,
                provider=decision.selected_provider,
                attempts=result.total_attempts,
            )

        response = result.response
        assessment = self.quality_scorer.assess_quality(request, response, features)
        await self.quality_scorer.update_quality_model(
            result.final_provider, result.final_model, assessment, topic=features.content.topic
        )

        cache_key = None
        if self.cache.is_worth_caching(request):
            cache_key = await self.cache.set(request, response)

        cost = response.usage.cost
        self.collector.collect_outcome(
            request_id, cost=cost, latency_ms=latency_ms, quality=assessment.overall_score, success=True,
            provider=result.final_provider, model=result.final_model,
        )
        self.prediction_engine.update_online(TrainingExample(
            request_id=request_id,
            user_id=user_id,
            features=features,
            provider=result.final_provider,
            model=result.final_model,
            cost=cost,
            latency_ms=latency_ms,
            quality=assessment.overall_score,
            was_optimal=was_optimal(assessment.overall_score, cost, latency_ms),
            timestamp=self._clock(),
        ))

        await self._emit_usage(UsageRecord(
            user_id=user_id,
            provider=result.final_provider,
            model=result.final_model,
            request_id=request_id,
            total_tokens=response.usage.total_tokens,
            cost=cost,
            latency_ms=latency_ms,
            success=True,
            original_model=request.model,
            timestamp=self._clock(),
        ))

        return response.with_metadata(
            request_id=request_id,
            from_cache=False,
            cache_key=cache_key,
            route_decision=decision.to_dict(),
            recovery_strategy=result.recovery_strategy,
            attempts=result.total_attempts,
            quality_score=assessment.overall_score,
            latency_ms=latency_ms,
            original_model=request.model,
        )

    async def route_stream(self, request: ChatRequest, user_id: str = "anonymous",
                           options: Optional[RouteOptions] = None) -> AsyncIterator[StreamChunk]:
        """
        Route a streaming request. Bypasses the cache and quality scoring.

        A failure before the first chunk moves on to the next fallback; a
        failure after chunks were yielded is raised to the caller.
        """
        options = options or RouteOptions()
        request_id = f"req_{uuid.uuid4().hex[:12]}"
        start = self._clock()
        self.request_count += 1

        features = self._extract_features(request, user_id, options)
        selection = await self._select_route(request, user_id, options, features)
        decision = selection.decision
        context = RecoveryContext(user_id, decision.selected_provider, decision.selected_model, request_id)
        attempts = [
            FallbackOption(decision.selected_provider, decision.selected_model, decision.estimated_cost),
            *(decision.fallback_options if self.config.fallback_enabled else ()),
        ]

        last_error: Optional[BaseException] = None
        for option in attempts:
            adapter = self.registry.get(option.provider)
            credential = selection.credentials.get(option.provider)
            if adapter is None or not credential:
                continue
            try:
                await self.breakers.before_call(option.provider)
            except CircuitOpenError as e:
                last_error = e
                continue

            chunk_index = 0
            cost = 0.0
            tokens = 0
            attempt_start = self._clock()
            timeout = self.config.request_timeout_seconds
            stream = adapter.chat_stream(request.with_model(option.model), credential).__aiter__()
            try:
                while True:
                    try:
                        chunk = await asyncio.wait_for(stream.__anext__(), timeout)
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError as e:
                        raise ProviderTimeoutError(
                            f"Stream from {option.provider} stalled for {timeout}s", provider=option.provider
                        ) from e
                    if chunk.usage is not None:
                        cost += chunk.usage.cost
                        tokens += chunk.usage.total_tokens
                    yield replace(chunk, metadata={
                        **chunk.metadata,
                        "request_id": request_id,
                        "route_decision": decision.to_dict(),
                        "chunk_index": chunk_index,
                    })
                    chunk_index += 1
            except (asyncio.CancelledError, GeneratorExit):
                # Consumer went away mid-stream; no awaiting past this point
                self.breakers.record_failure_nowait(option.provider)
                self._record_metrics(option.provider, (self._clock() - attempt_start) * 1000, 0.0, False)
                self.failed_requests += 1
                logger.warning(f"Stream from {option.provider} aborted after {chunk_index} chunks")
                raise
            except Exception as e:
                error = e if isinstance(e, RouterError) else ServerError(str(e), provider=option.provider)
                await self.breakers.record_failure(option.provider)
                self._record_metrics(option.provider, (self._clock() - attempt_start) * 1000, 0.0, False)
                self.resilience.record_error(error, option.provider, context)
                if chunk_index:
                    self.failed_requests += 1
                    raise error
                last_error = error
                continue

            await self.breakers.record_success(option.provider)
            latency_ms = (self._clock() - start) * 1000
            self._record_metrics(option.provider, (self._clock() - attempt_start) * 1000, cost, True)
            await self._emit_usage(UsageRecord(
                user_id=user_id,
                provider=option.provider,
                model=option.model,
                request_id=request_id,
                total_tokens=tokens,
                cost=cost,
                latency_ms=latency_ms,
                success=True,
                streaming=True,
                original_model=request.model,
                timestamp=self._clock(),
            ))
            return

        self.failed_requests += 1
        raise RecoveryExhaustedError(
            f"Streaming failed on every candidate for request {request_id}",
            strategy="fallback",
            root_cause=last_error,
            provider=decision.selected_provider,
            attempts=len(attempts),
        )

    def _executor(self, request: ChatRequest, user_id: str, credentials: Dict[str, str]):
        async def execute(provider: str, model: str) -> ChatResponse:
            adapter = self.registry.get(provider)
            if adapter is None:
                raise InvalidRequestError(f"Provider {provider} is not registered", provider=provider)
            credential = credentials.get(provider)
            if credential is None:
                credential = credentials[provider] = await self.credentials.resolve(user_id, provider)
            if not credential:
                raise AuthenticationError(f"No credential available for {provider}", provider=provider)

            started = self._clock()
            response = None
            try:
                response = await adapter.chat(request.with_model(model), credential)
                return response
            finally:
                latency_ms = (self._clock() - started) * 1000
                if response is not None:
                    self._record_metrics(provider, latency_ms, response.usage.cost, True)
                else:
                    self._record_metrics(provider, latency_ms, 0.0, False)

        return execute

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _extract_features(self, request: ChatRequest, user_id: str, options: RouteOptions) -> RequestFeatures:
        system_state = {
            provider: {
                "latency": self.metrics[provider].avg_latency,
                "available": self._is_available(provider),
            }
            for provider in self.registry.provider_ids()
            if provider in self.metrics
        }
        context = ExtractionContext(
            user_id=user_id,
            now=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
            user_context=options.user_context,
            system_state=system_state,
        )
        return self.feature_extractor.extract(request, context)

    def _is_available(self, provider: str) -> bool:
        status = self._statuses.get(provider)
        healthy = status.is_healthy if status is not None else True
        return healthy and self.breakers.is_available(provider)

    async def _resolve_model(self, provider: str, requested: str) -> Optional[str]:
        """The provider's equivalent of the requested model, else its default model"""
        equivalent = find_equivalent_model(requested, provider)
        if equivalent:
            return equivalent
        models = await self.registry.get(provider).get_models()
        if any(m.id == requested for m in models):
            return requested
        return models[0].id if models else None

    async def _gather_candidates(self, request: ChatRequest, options: RouteOptions) -> List[Candidate]:
        candidates = []
        for provider, adapter in self.registry.items():
            if not self._is_available(provider):
                logger.debug(f"Skipping {provider}: unavailable")
                continue
            model = await self._resolve_model(provider, request.model)
            if model is None:
                continue
            if options.require_tools:
                models = {m.id: m for m in await adapter.get_models()}
                if model not in models or not models[model].supports_tools:
                    continue
            try:
                cost = await adapter.estimate_cost(request.with_model(model))
            except RouterError as e:
                logger.warning(f"Cost estimate failed for {provider}/{model}: {e}")
                continue
            if options.max_cost is not None and cost > options.max_cost:
                continue
            candidates.append(Candidate(provider=provider, model=model, cost=cost))
        return candidates

    def _ensemble(self, features: RequestFeatures, candidates: List[Candidate]) -> Optional[EnsemblePrediction]:
        if not self.config.ml_routing_enabled or not self.prediction_engine.is_trained:
            return None
        try:
            return self.prediction_engine.get_ensemble_prediction(
                features, [FallbackOption(c.provider, c.model, c.cost) for c in candidates]
            )
        except MLError as e:
            logger.debug(f"ML prediction unavailable, using rules: {e}")
            return None

    def _score(self, candidates: List[Candidate], ensemble: Optional[EnsemblePrediction]) -> None:
        weight = self.config.performance_weighting
        max_cost = max(c.cost for c in candidates)
        use_ml = ensemble is not None and ensemble.recommended_action == "use_ml"
        for c in candidates:
            quality = static_quality_score(c.provider, c.model)
            if use_ml:
                prediction = ensemble.prediction_for(c.provider, c.model)
                if prediction is not None:
                    quality = prediction.expected_quality
            cost_score = 1 - c.cost / max_cost if max_cost > 0 else 1.0
            metrics = self.metrics.setdefault(c.provider, ProviderMetrics())
            c.quality = quality
            c.score = weight * metrics.performance_score() + (1 - weight) * cost_score + 0.1 * quality

    def _priority(self, provider: str) -> int:
        order = list(self.config.fallback_order)
        return order.index(provider) if provider in order else len(order)

    def _compare(self, a: Candidate, b: Candidate) -> int:
        if abs(a.score - b.score) > SCORE_EPSILON:
            return -1 if a.score > b.score else 1
        if a.cost != b.cost:
            return -1 if a.cost < b.cost else 1
        return self._priority(a.provider) - self._priority(b.provider)

    def rank_candidates(self, candidates: List[Candidate]) -> List[Candidate]:
        """Sort by composite score; near-equal scores by cost, then provider priority"""
        return sorted(candidates, key=functools.cmp_to_key(self._compare))

    async def _select_route(self, request: ChatRequest, user_id: str, options: RouteOptions,
                            features: RequestFeatures) -> RouteSelection:
        candidates = await self._gather_candidates(request, options)
        if not candidates:
            raise NoAvailableProviders("No providers available that meet the requirements")

        credentials = {}
        for c in candidates:
            credential = await self.credentials.resolve(user_id, c.provider)
            if credential:
                credentials[c.provider] = credential
        candidates = [c for c in candidates if c.provider in credentials]
        if not candidates:
            raise NoAvailableProviders(f"No provider credentials available for user {user_id}")

        ensemble = self._ensemble(features, candidates)
        self._score(candidates, ensemble)
        ranked = self.rank_candidates(candidates)

        reasoning = []
        preferred = next((c for c in ranked if c.provider == options.preferred_provider), None)
        if preferred is not None:
            primary = preferred
            reasoning.append("user preferred provider")
        else:
            if options.preferred_provider:
                logger.info(f"Preferred provider {options.preferred_provider} unavailable, routing by score")
            primary = ranked[0]
        if primary is ranked[0]:
            reasoning.append("highest overall score")
        if primary.cost == min(c.cost for c in ranked):
            reasoning.append("lowest cost")
        if ensemble is not None:
            reasoning.append(f"ML recommendation: {ensemble.recommended_action}")

        fallbacks = tuple(
            FallbackOption(c.provider, c.model, c.cost)
            for c in ranked
            if c is not primary and self.breakers.is_available(c.provider)
        )[:MAX_FALLBACKS]

        decision = RouteDecision(
            selected_provider=primary.provider,
            selected_model=primary.model,
            estimated_cost=primary.cost,
            fallback_options=fallbacks,
            reasoning=tuple(reasoning),
            ml_recommendation=ensemble.recommended_action if ensemble is not None else "rules_only",
            scores=tuple((f"{c.provider}/{c.model}", c.score) for c in ranked),
        )
        logger.debug(f"Route decision: {decision.reasoning_text}")
        return RouteSelection(
            decision=decision,
            credentials=credentials,
            ensemble=ensemble,
            degradation=await self._degradation_candidates(ranked),
        )

    async def _degradation_candidates(self, ranked: List[Candidate]) -> List[FallbackOption]:
        """Cheap models of every candidate provider, in rank order"""
        options = []
        for c in ranked:
            models = await self.registry.get(c.provider).get_models()
            cheap = [m for m in models if m.id in DEGRADED_MODELS]
            if not cheap and models:
                cheap = [min(models, key=lambda m: m.input_cost_per_1k + m.output_cost_per_1k)]
            options.extend(FallbackOption(c.provider, m.id, 0.0) for m in cheap)
        return options

    def _collect_decision(self, request_id: str, user_id: str, features: RequestFeatures,
                          selection: RouteSelection) -> None:
        decision = selection.decision
        confidence = selection.ensemble.consensus.confidence if selection.ensemble else 0.0
        self.collector.collect_routing_decision(
            request_id, user_id, features, decision.selected_provider, decision.selected_model,
            reasoning=decision.reasoning_text, confidence=confidence,
        )

    def _record_metrics(self, provider: str, latency_ms: float, cost: float, success: bool) -> None:
        self.metrics.setdefault(provider, ProviderMetrics()).record(latency_ms, cost, success)

    async def _emit_usage(self, record: UsageRecord) -> None:
        try:
            await self.usage_sink.record(record)
        except Exception as e:
            logger.error(f"Failed to record usage for request {record.request_id}: {e}")

    # ------------------------------------------------------------------
    # Cost analysis
    # ------------------------------------------------------------------

    async def analyze_costs(self, request: ChatRequest) -> CostAnalysis:
        """
        Compare the cost of a request across healthy providers.

        Returns:
            CostAnalysis: lowest cost, cheapest provider, per-provider costs and
            recommendations sorted by quality per unit cost
        """
        recommendations = []
        cost_by_provider = {}
        lowest = float("inf")
        cheapest = None

        for provider, adapter in self.registry.items():
            status = self._statuses.get(provider)
            if status is not None and not status.is_healthy:
                continue
            model = await self._resolve_model(provider, request.model)
            if model is None:
                continue
            try:
                cost = await adapter.estimate_cost(request.with_model(model))
            except RouterError as e:
                logger.warning(f"Cost estimate failed for {provider}/{model}: {e}")
                continue

            cost_by_provider[provider] = cost
            quality = static_quality_score(provider, model)
            if cost < lowest:
                lowest = cost
                cheapest = provider

            if cost == lowest:
                reason = "cheapest"
            elif cost < COST_THRESHOLDS["CHEAP_REQUEST"]:
                reason = "best_value"
            elif quality > 0.8:
                reason = "highest_quality"
            else:
                reason = "fastest"

            recommendations.append(CostRecommendation(
                provider=provider,
                model=model,
                estimated_cost=cost,
                quality_score=quality,
                reason_code=reason,
                description=REASON_DESCRIPTIONS[reason].format(cost=f"${cost:.4f}"),
            ))

        recommendations.sort(key=lambda r: r.quality_score / (r.estimated_cost + 0.001), reverse=True)
        return CostAnalysis(
            estimated_cost=lowest if cheapest is not None else 0.0,
            cheapest_provider=cheapest,
            cost_by_provider=cost_by_provider,
            recommendations=recommendations,
        )

    # ------------------------------------------------------------------
    # Health and metrics
    # ------------------------------------------------------------------

    async def refresh_provider_statuses(self, force: bool = False) -> None:
        """Run health checks for providers whose status is stale"""
        now = self._clock()
        for provider, adapter in self.registry.items():
            if not force and now - self._status_checked.get(provider, 0.0) <= self.config.status_refresh_seconds:
                continue
            try:
                status = await adapter.health_check()
            except Exception as e:
                logger.error(f"Health check failed for {provider}: {e}")
                continue
            self._statuses[provider] = status
            self._status_checked[provider] = self._clock()

    async def get_provider_statuses(self) -> List[ProviderStatus]:
        """Current status of every provider, refreshed when stale"""
        await self.refresh_provider_statuses()
        statuses = []
        for provider in self.registry.provider_ids():
            status = self._statuses.get(provider) or ProviderStatus(provider=provider)
            statuses.append(replace(status, circuit_state=self.breakers.get_state(provider).value))
        return statuses

    def get_performance_metrics(self) -> Dict[str, Dict[str, float]]:
        return {
            provider: {
                "total_requests": m.total_requests,
                "success_rate": m.success_rate,
                "avg_latency": m.avg_latency,
                "avg_cost": m.avg_cost,
            }
            for provider, m in self.metrics.items()
        }

    def update_config(self, **changes: Any) -> Dict[str, Any]:
        """
        Update router settings at runtime.

        Raises:
            ConfigurationError: Unknown setting or out of range value
        """
        for key in changes:
            if not hasattr(self.config, key):
                raise ConfigurationError(f"Unknown router setting: {key}")
        weight = changes.get("performance_weighting", self.config.performance_weighting)
        if not 0.0 <= weight <= 1.0:
            raise ConfigurationError("performance_weighting must be between 0 and 1")

        for key, value in changes.items():
            setattr(self.config, key, value)

        self.resilience.fallback_enabled = self.config.fallback_enabled
        self.resilience.call_timeout = self.config.request_timeout_seconds
        self.resilience.retry_config.max_retries = self.config.max_retries
        self.resilience.retry_config.base_delay_ms = self.config.retry_delay_ms
        self.breakers.config.failure_threshold = self.config.circuit_breaker_threshold

        logger.info(f"Router configuration updated: {changes}")
        return vars(self.config).copy()

    # ------------------------------------------------------------------
    # ML
    # ------------------------------------------------------------------

    async def train_models(self) -> Dict[str, Any]:
        """
        Retrain the prediction models from collected examples.

        Raises:
            InsufficientTrainingData: Fewer examples than min_training_examples
        """
        examples = self.collector.get_training_examples()
        return await self.prediction_engine.train_models(examples)

    def get_ml_insights(self) -> Dict[str, Any]:
        model_metrics = self.prediction_engine.get_model_metrics()
        return {
            "ml_routing_enabled": self.config.ml_routing_enabled,
            "training_data_size": len(self.collector.get_training_examples()),
            "model_metrics": model_metrics,
            "feature_importance": model_metrics["feature_importance"],
            "quality_insights": self.quality_scorer.get_quality_insights(),
            "collector": self.collector.get_summary(),
        }

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        """Get current router statistics"""
        errors = self.resilience.get_error_statistics()
        stats = {
            "router": {
                "total_requests": self.request_count,
                "cache_hits": self.cache_hits,
                "failed_requests": self.failed_requests,
                "error_counts": errors["errors_by_provider"],
                "performance_summary": {},
            },
            "cache": self.cache.get_stats(),
            "resilience": {
                "circuit_breakers": self.resilience.get_circuit_breaker_statuses(),
                "errors": errors,
            },
            "ml": self.prediction_engine.get_model_metrics(),
            "providers": self.registry.get_stats_all(),
        }

        for provider, m in self.metrics.items():
            stats["router"]["performance_summary"][provider] = {
                "total_requests": m.total_requests,
                "success_rate": m.success_rate,
                "avg_latency": m.avg_latency,
                "avg_cost": m.avg_cost,
                "performance_score": m.performance_score(),
                "average_quality": self._average_quality(provider),
            }
        return stats

    def _average_quality(self, provider: str) -> float:
        scores = [m.average_quality for m in self.quality_scorer.models.values() if m.provider == provider]
        return sum(scores) / len(scores) if scores else 0.0

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _periodic(self, name: str, interval: float, job) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Background task {name} failed: {e}")

    async def _retrain(self) -> None:
        removed = self.collector.cleanup_old_data(self.app_config.ml.training_data_retention_days)
        logger.debug(f"Pruned {removed} expired training records")
        examples = self.collector.get_training_examples()
        if len(examples) < self.app_config.ml.min_training_examples:
            logger.debug(f"Skipping retraining: {len(examples)} examples collected")
            return
        try:
            await self.prediction_engine.train_models(examples)
        except InsufficientTrainingData as e:
            logger.debug(f"Skipping retraining: {e}")

    def start(self) -> None:
        """Start health polling, cache maintenance and model retraining"""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._periodic(
                "health", self.config.health_check_interval_seconds,
                lambda: self.refresh_provider_statuses(force=True),
            )),
            asyncio.create_task(self._periodic(
                "retrain", self.app_config.ml.model_update_interval_minutes * 60, self._retrain,
            )),
        ]
        self.cache.start_maintenance()
        logger.info("Router background tasks started")

    async def stop(self) -> None:
        """Cancel background tasks and wait for them to finish"""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.cache.stop_maintenance()
        if tasks:
            logger.info("Router background tasks stopped")


def create_router(app_config: Optional[AppConfig] = None, time_scale: float = 1.0,
                  seed: Optional[int] = None, usage_sink: Optional[UsageSink] = None) -> RequestRouter:
    """
    Build a router over simulated providers from configuration.

    Providers without a configured credential get a placeholder one so the
    simulated adapters accept requests.
    """
    app_config = app_config or AppConfig()
    registry = create_provider_registry(app_config, time_scale=time_scale, seed=seed)

    credentials = dict(app_config.credentials)
    for provider in registry.provider_ids():
        if provider not in credentials:
            logger.info(f"No credential configured for {provider}, using simulated key")
            credentials[provider] = f"sim-{provider}-key"

    return RequestRouter(
        registry,
        app_config=app_config,
        credential_provider=StaticCredentialProvider(credentials),
        usage_sink=usage_sink,
    )
