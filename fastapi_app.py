#!/usr/bin/env python3
"""
FastAPI Application for LLM Router Service

This FastAPI application exposes the cost and performance aware request
router as REST APIs for easy integration with other services.

Endpoints:
- POST /v1/chat/completions: Route a chat request (server-sent chunks when stream=true)
- POST /v1/costs/analyze: Compare the cost of a request across providers
- GET /providers/status: Provider health and circuit state
- GET /stats: Router, cache, resilience and ML statistics
- GET /cache/stats, POST /cache/clear, POST /cache/optimize: Cache management
- GET /ml/insights, POST /ml/train: Learned routing models
- GET /config, PATCH /config: Router configuration
- GET /health: Health check endpoint
"""

import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
import uvicorn

from core.config import load_config_or_default
from core.data_models import ChatRequest
from core.errors import (
    RouterError, NoAvailableProviders, RecoveryExhaustedError, InvalidRequestError,
    AuthenticationError, InsufficientTrainingData, ConfigurationError,
)
from routers import RequestRouter, RouteOptions, create_router

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Global router instance
router_instance: Optional[RequestRouter] = None

ERROR_STATUS_CODES = (
    (NoAvailableProviders, 503),
    (RecoveryExhaustedError, 502),
    (InvalidRequestError, 400),
    (AuthenticationError, 401),
    (ConfigurationError, 400),
)


# Pydantic Models for API Request/Response
class MessageModel(BaseModel):
    """One chat message"""
    role: str = Field(..., description="Message role: system, user or assistant")
    content: str = Field(..., description="Message text")
    name: Optional[str] = None


class ToolModel(BaseModel):
    """A tool the model may call"""
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ChatCompletionRequest(BaseModel):
    """Request model for chat completions"""
    model: str = Field(..., description="Model id or equivalence class, e.g. chat-small", min_length=1)
    messages: List[MessageModel] = Field(..., min_length=1)
    max_tokens: Optional[int] = Field(None, ge=1, le=128000)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    top_p: Optional[float] = Field(None, ge=0.0, le=1.0)
    stream: bool = False
    tools: List[ToolModel] = Field(default_factory=list)
    user_id: str = Field("anonymous", description="Caller identity for credentials and usage")
    preferred_provider: Optional[str] = Field(None, description="Provider to use when available")
    max_cost: Optional[float] = Field(None, ge=0.0, description="Maximum estimated cost in USD")
    require_tools: bool = False
    user_context: Dict[str, Any] = Field(default_factory=dict, description="Tier, session length, preferences")

    def to_chat_request(self) -> ChatRequest:
        return ChatRequest.from_dict({
            "model": self.model,
            "messages": [m.model_dump(exclude_none=True) for m in self.messages],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "stream": self.stream,
            "tools": [t.model_dump() for t in self.tools],
        })

    def to_route_options(self) -> RouteOptions:
        return RouteOptions(
            preferred_provider=self.preferred_provider,
            max_cost=self.max_cost,
            require_tools=self.require_tools,
            user_context=self.user_context,
        )


class ChatCompletionResponse(BaseModel):
    """Response model for chat completions"""
    id: str
    provider: str
    model: str
    choices: List[Dict[str, Any]]
    usage: Dict[str, Any]
    created: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProviderStatusModel(BaseModel):
    """Health of one provider"""
    provider: str
    is_healthy: bool
    latency: float
    error_rate: float
    last_check: float
    issues: List[str]
    circuit_state: Optional[str] = None


class ConfigUpdateRequest(BaseModel):
    """Router settings that can change at runtime"""
    fallback_enabled: Optional[bool] = None
    fallback_order: Optional[List[str]] = None
    cost_optimization_enabled: Optional[bool] = None
    performance_weighting: Optional[float] = Field(None, ge=0.0, le=1.0)
    max_retries: Optional[int] = Field(None, ge=0)
    retry_delay_ms: Optional[float] = Field(None, ge=0.0)
    circuit_breaker_threshold: Optional[int] = Field(None, ge=1)
    ml_routing_enabled: Optional[bool] = None
    request_timeout_seconds: Optional[float] = Field(None, gt=0.0)


class HealthResponse(BaseModel):
    """Response model for health endpoint"""
    status: str
    timestamp: str
    version: str = "1.0.0"
    router_initialized: bool
    providers: List[str] = Field(default_factory=list)


def create_router_from_env() -> RequestRouter:
    """Build the router from ROUTER_CONFIG (default config.ini)"""
    config_file = os.getenv("ROUTER_CONFIG", "config.ini")
    time_scale = float(os.getenv("SIMULATION_TIME_SCALE", "1.0"))
    app_config = load_config_or_default(config_file)
    return create_router(app_config, time_scale=time_scale)


# Application lifecycle management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown"""
    global router_instance
    logger.info("Starting LLM Router FastAPI service...")

    # Startup
    if router_instance is None:
        try:
            router_instance = create_router_from_env()
        except RouterError as e:
            logger.error(f"Failed to initialize router on startup: {e}")
    if router_instance is not None:
        router_instance.start()
        logger.info("LLM Router service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down LLM Router service...")
    if router_instance is not None:
        await router_instance.stop()


# FastAPI app instance
app = FastAPI(
    title="LLM Router API",
    description="Cost, performance and quality aware routing across LLM providers",
    version="1.0.0",
    lifespan=lifespan
)

# Store app start time for uptime calculation
app_start_time = time.time()


def get_router() -> RequestRouter:
    if router_instance is None:
        raise HTTPException(status_code=503, detail="Router not initialized")
    return router_instance


def to_http_error(error: RouterError) -> HTTPException:
    """Map a routing error to an HTTP status code"""
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return HTTPException(status_code=status_code, detail=error.to_dict())
    return HTTPException(status_code=500, detail=error.to_dict())


# API Endpoints

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(
        status="healthy" if router_instance is not None else "degraded",
        timestamp=time.strftime("%Y-%m-%d %H:%M:%S UTC", time.gmtime()),
        router_initialized=router_instance is not None,
        providers=router_instance.registry.provider_ids() if router_instance is not None else [],
    )


@app.post("/v1/chat/completions", response_model=ChatCompletionResponse)
async def chat_completions(request: ChatCompletionRequest):
    """Route a chat request through the router"""
    router = get_router()
    chat_request = request.to_chat_request()
    logger.info(f"Chat request received: model={request.model} user={request.user_id} stream={request.stream}")

    if request.stream:
        return await _stream_response(router, chat_request, request)

    try:
        response = await router.route(chat_request, request.user_id, request.to_route_options())
    except RouterError as e:
        logger.error(f"Chat request failed: {e}")
        raise to_http_error(e)
    return ChatCompletionResponse(**response.to_dict())


async def _stream_response(router: RequestRouter, chat_request: ChatRequest,
                           request: ChatCompletionRequest) -> StreamingResponse:
    stream = router.route_stream(chat_request, request.user_id, request.to_route_options())

    # Pull the first chunk eagerly so routing errors become HTTP errors
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        first = None
    except RouterError as e:
        logger.error(f"Streaming request failed: {e}")
        raise to_http_error(e)

    async def events():
        if first is None:
            yield "data: [DONE]\n\n"
            return
        yield f"data: {json.dumps(_chunk_payload(first), default=str)}\n\n"
        try:
            async for chunk in stream:
                yield f"data: {json.dumps(_chunk_payload(chunk), default=str)}\n\n"
        except RouterError as e:
            logger.error(f"Stream interrupted: {e}")
            yield f"event: error\ndata: {json.dumps(e.to_dict())}\n\n"
        yield "data: [DONE]\n\n"

    return StreamingResponse(events(), media_type="text/event-stream")


def _chunk_payload(chunk) -> Dict[str, Any]:
    return {
        "id": chunk.id,
        "provider": chunk.provider,
        "model": chunk.model,
        "delta": chunk.delta,
        "finish_reason": chunk.finish_reason,
        "usage": vars(chunk.usage) if chunk.usage is not None else None,
        "metadata": chunk.metadata,
    }


@app.post("/v1/costs/analyze")
async def analyze_costs(request: ChatCompletionRequest):
    """Compare the estimated cost of a request across providers"""
    router = get_router()
    try:
        analysis = await router.analyze_costs(request.to_chat_request())
    except RouterError as e:
        raise to_http_error(e)
    return analysis.to_dict()


@app.get("/providers/status", response_model=List[ProviderStatusModel])
async def provider_status():
    """Health and circuit state of every provider"""
    router = get_router()
    statuses = await router.get_provider_statuses()
    return [ProviderStatusModel(**s.to_dict()) for s in statuses]


@app.get("/stats")
async def get_system_stats():
    """Get current router, cache, resilience and ML statistics"""
    router = get_router()
    stats = router.get_stats()
    stats["uptime_seconds"] = time.time() - app_start_time
    stats["performance_metrics"] = router.get_performance_metrics()
    return stats


@app.get("/cache/stats")
async def cache_stats():
    return get_router().cache.get_stats()


@app.post("/cache/clear")
async def clear_cache():
    await get_router().cache.clear()
    return {"success": True, "message": "Cache cleared"}


@app.post("/cache/optimize")
async def optimize_cache():
    return await get_router().cache.optimize()


@app.get("/ml/insights")
async def ml_insights():
    return get_router().get_ml_insights()


@app.post("/ml/train")
async def train_models():
    """Retrain the routing models from collected outcomes"""
    router = get_router()
    try:
        metrics = await router.train_models()
    except InsufficientTrainingData as e:
        raise HTTPException(status_code=409, detail=e.to_dict())
    return {"success": True, "metrics": metrics}


@app.get("/config")
async def get_configuration():
    """Get current router configuration (without sensitive data)"""
    return get_router().app_config.to_dict()


@app.patch("/config")
async def update_configuration(update: ConfigUpdateRequest):
    """Update router settings at runtime"""
    router = get_router()
    changes = update.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No configuration changes given")
    try:
        return router.update_config(**changes)
    except ConfigurationError as e:
        raise to_http_error(e)


if __name__ == "__main__":
    debug_mode = os.getenv("DEBUG", "false").lower() == "true"

    if debug_mode:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug mode enabled")

    # Run with uvicorn for development
    uvicorn.run(
        "fastapi_app:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="debug" if debug_mode else "info",
        access_log=True
    )
