"""
Data models for the routing engine.

This module contains the request, response and decision structures shared by
the cache, the resilience layer, the ML layer and the router.
"""

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Any, Optional, List, Tuple


class ProviderType(str, Enum):
    """Enumeration of the providers the engine knows by name"""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


class CircuitState(str, Enum):
    """Circuit breaker states"""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class ChatMessage:
    """One message of a chat conversation"""
    role: str
    content: str
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"role": self.role, "content": self.content}
        if self.name:
            data["name"] = self.name
        return data


@dataclass(frozen=True)
class ToolDefinition:
    """A tool the model may call"""
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class ChatRequest:
    """Immutable chat request routed to one provider/model"""
    model: str
    messages: Tuple[ChatMessage, ...]
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stream: bool = False
    tools: Tuple[ToolDefinition, ...] = ()

    def __post_init__(self):
        messages = tuple(
            m if isinstance(m, ChatMessage) else ChatMessage(**m)
            for m in self.messages
        )
        tools = tuple(
            t if isinstance(t, ToolDefinition) else ToolDefinition(**t)
            for t in (self.tools or ())
        )
        object.__setattr__(self, "messages", messages)
        object.__setattr__(self, "tools", tools)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatRequest":
        """Build a request from a plain dictionary (API payloads, tests)"""
        return cls(
            model=data["model"],
            messages=tuple(data.get("messages", ())),
            max_tokens=data.get("max_tokens"),
            temperature=data.get("temperature"),
            top_p=data.get("top_p"),
            stream=bool(data.get("stream", False)),
            tools=tuple(data.get("tools") or ()),
        )

    def with_model(self, model: str) -> "ChatRequest":
        """Return a copy of this request targeting another model"""
        return replace(self, model=model)

    @property
    def text_content(self) -> str:
        return " ".join(m.content for m in self.messages)

    @property
    def user_text(self) -> str:
        return " ".join(m.content for m in self.messages if m.role == "user")

    @property
    def has_system_message(self) -> bool:
        return any(m.role == "system" for m in self.messages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "stream": self.stream,
            "tools": [t.name for t in self.tools],
        }


@dataclass
class Usage:
    """Token usage and cost of one response"""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0


@dataclass
class Choice:
    """One completion choice"""
    message: ChatMessage
    finish_reason: Optional[str] = "stop"
    index: int = 0
    tool_calls: Optional[List[Dict[str, Any]]] = None


@dataclass
class ChatResponse:
    """Standardized response returned by every provider adapter"""
    provider: str
    model: str
    choices: List[Choice]
    usage: Usage = field(default_factory=Usage)
    id: str = field(default_factory=lambda: f"resp_{uuid.uuid4().hex[:12]}")
    created: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def content(self) -> str:
        """Text of the first choice, empty when there is none"""
        if not self.choices:
            return ""
        return self.choices[0].message.content or ""

    def with_metadata(self, **metadata: Any) -> "ChatResponse":
        """Return a copy with extra metadata merged in"""
        merged = dict(self.metadata)
        merged.update(metadata)
        return replace(self, metadata=merged)

    def to_dict(self) -> Dict[str, Any]:
        """Convert response to dictionary format"""
        return {
            "id": self.id,
            "provider": self.provider,
            "model": self.model,
            "choices": [
                {
                    "index": c.index,
                    "message": c.message.to_dict(),
                    "finish_reason": c.finish_reason,
                    "tool_calls": c.tool_calls,
                }
                for c in self.choices
            ],
            "usage": {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
                "total_tokens": self.usage.total_tokens,
                "cost": self.usage.cost,
            },
            "created": self.created,
            "metadata": self.metadata,
        }


@dataclass
class StreamChunk:
    """One chunk of a streamed response"""
    provider: str
    model: str
    delta: str
    id: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelInfo:
    """Information about a specific model offered by a provider"""
    id: str
    provider: str
    input_cost_per_1k: float
    output_cost_per_1k: float
    context_window: int = 8192
    supports_streaming: bool = True
    supports_tools: bool = False
    description: str = ""


@dataclass
class ProviderStatus:
    """Health snapshot of one provider"""
    provider: str
    is_healthy: bool = True
    latency: float = 0.0
    error_rate: float = 0.0
    last_check: float = 0.0
    issues: List[str] = field(default_factory=list)
    circuit_state: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "is_healthy": self.is_healthy,
            "latency": self.latency,
            "error_rate": self.error_rate,
            "last_check": self.last_check,
            "issues": list(self.issues),
            "circuit_state": self.circuit_state,
        }


@dataclass(frozen=True)
class FallbackOption:
    """A ranked alternative provider/model"""
    provider: str
    model: str
    cost: float


@dataclass(frozen=True)
class RouteDecision:
    """The router's choice for one request; never mutated after creation"""
    selected_provider: str
    selected_model: str
    estimated_cost: float
    fallback_options: Tuple[FallbackOption, ...] = ()
    reasoning: Tuple[str, ...] = ()
    ml_recommendation: str = "rules_only"
    scores: Tuple[Tuple[str, float], ...] = ()

    @property
    def reasoning_text(self) -> str:
        return f"Selected {self.selected_provider} ({', '.join(self.reasoning)})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected_provider": self.selected_provider,
            "selected_model": self.selected_model,
            "estimated_cost": self.estimated_cost,
            "fallback_options": [
                {"provider": f.provider, "model": f.model, "cost": f.cost}
                for f in self.fallback_options
            ],
            "reasoning": list(self.reasoning),
            "ml_recommendation": self.ml_recommendation,
            "scores": dict(self.scores),
        }


@dataclass
class CostRecommendation:
    """One provider option produced by cost analysis"""
    provider: str
    model: str
    estimated_cost: float
    quality_score: float
    reason_code: str
    description: str


@dataclass
class CostAnalysis:
    """Cost comparison of a request across providers"""
    estimated_cost: float
    cheapest_provider: Optional[str]
    cost_by_provider: Dict[str, float]
    recommendations: List[CostRecommendation]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "estimated_cost": self.estimated_cost,
            "cheapest_provider": self.cheapest_provider,
            "cost_by_provider": dict(self.cost_by_provider),
            "recommendations": [vars(r).copy() for r in self.recommendations],
        }


@dataclass
class UsageRecord:
    """One completed request, emitted to the usage sink"""
    user_id: str
    provider: str
    model: str
    request_id: str
    total_tokens: int
    cost: float
    latency_ms: float
    success: bool
    streaming: bool = False
    original_model: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
