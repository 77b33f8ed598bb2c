"""
Feature extraction for context-aware routing.

FeatureExtractor turns a chat request and its ambient context (user, system
state, time) into content, user, system and temporal features plus a fixed
13-dimension numeric vector. Extraction is a pure function of its inputs.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Tuple

import numpy as np

from core.data_models import ChatRequest

logger = logging.getLogger(__name__)

TOPIC_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "technical": ("code", "api", "function", "algorithm", "debug", "error", "implementation"),
    "creative": ("write", "story", "poem", "creative", "imagine", "design", "art"),
    "analytical": ("analyze", "data", "statistics", "research", "study", "compare", "evaluate"),
    "conversational": ("hello", "how", "what", "tell", "explain", "help", "please"),
    "educational": ("learn", "teach", "explain", "understand", "study", "lesson", "tutorial"),
}

POSITIVE_WORDS = frozenset(("good", "great", "excellent", "amazing", "wonderful", "fantastic", "love", "best"))
NEGATIVE_WORDS = frozenset(("bad", "terrible", "awful", "horrible", "worst", "hate", "problem", "error", "wrong"))
URGENT_WORDS = frozenset(("urgent", "asap", "immediately", "quickly", "fast", "emergency", "rush", "critical"))

FORMAL_PATTERNS = (
    re.compile(r"\b(therefore|furthermore|however|nevertheless|consequently)\b", re.I),
    re.compile(r"\b(pursuant|regarding|aforementioned|heretofore)\b", re.I),
    re.compile(r"\b(shall|ought|must|should)\b", re.I),
)
INFORMAL_PATTERNS = (
    re.compile(r"\b(gonna|wanna|gotta|yeah|nope|ok|hey)\b", re.I),
    re.compile(r"!{2,}"),
    re.compile(r"\?{2,}"),
)

INSTRUCTION_PATTERNS = (
    re.compile(r"^(please|can you|could you|would you|help me)", re.I),
    re.compile(r"\b(create|generate|make|write|build|develop|implement)\b", re.I),
    re.compile(r"\b(step by step|instructions|how to|guide|tutorial)\b", re.I),
)

TECHNICAL_TERMS = frozenset((
    "api", "database", "algorithm", "function", "variable", "array", "object",
    "server", "client", "http", "json", "xml", "sql", "nosql", "rest",
    "microservice", "container", "kubernetes", "docker", "aws", "cloud",
    "ai", "model", "training",
))
TECHNICAL_PHRASES = ("machine learning", "neural network")

MULTI_STEP_PATTERNS = (
    re.compile(r"\b(first|second|third|fourth|then|next|after|finally)\b", re.I),
    re.compile(r"\b(step \d+|stage \d+|phase \d+)\b", re.I),
    re.compile(r"\b(because|since|therefore|thus|consequently|as a result)\b", re.I),
)

CREATIVE_WORDS = frozenset((
    "creative", "original", "unique", "innovative", "artistic", "imaginative",
    "story", "poem", "song", "design", "brainstorm", "idea",
))
PRECISION_WORDS = frozenset((
    "exact", "precise", "accurate", "specific", "detailed", "comprehensive",
    "calculate", "measure", "analyze", "data", "statistics", "research",
))

CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
INLINE_CODE_RE = re.compile(r"`[^`\n]+`")
BULLET_LIST_RE = re.compile(r"^\s*[-*•]\s", re.M)
NUMBERED_LIST_RE = re.compile(r"^\d+\.\s", re.M)

FEATURE_NAMES: Tuple[str, ...] = (
    "text_length",
    "vocabulary_richness",
    "readability",
    "sentiment",
    "formality",
    "has_code",
    "question_count",
    "technical_terms",
    "session_length",
    "quality_tolerance",
    "cost_sensitivity",
    "hour_of_day",
    "is_business_hours",
)

DEFAULT_USER_CONTEXT: Dict[str, Any] = {
    "tier": "pro",
    "session_length": 0,
    "request_frequency": 1,
    "avg_response_time": 30,
    "quality_tolerance": 0.8,
    "cost_sensitivity": 0.5,
    "preferred_providers": [],
    "avg_message_length": 100,
    "geography": "US",
    "timezone": "UTC",
    "device": "api",
}


@dataclass
class ExtractionContext:
    """Ambient inputs of a feature extraction"""
    user_id: str = "anonymous"
    now: Optional[datetime] = None
    user_context: Dict[str, Any] = field(default_factory=dict)
    system_state: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class ContentFeatures:
    total_length: int
    word_count: int
    sentence_count: int
    avg_sentence_length: float
    vocabulary_richness: float
    readability: float
    topic: str
    topic_categories: Tuple[str, ...]
    language: str
    sentiment: float
    formality: float
    urgency_indicators: Tuple[str, ...]
    message_types: Dict[str, int]
    has_code: bool
    has_lists: bool
    question_count: int
    instruction_count: int
    technical_terms: int
    multi_step_reasoning: bool
    requires_creativity: bool
    requires_precision: bool

    @property
    def has_instructions(self) -> bool:
        return self.instruction_count > 0


@dataclass(frozen=True)
class UserFeatures:
    user_id: str
    tier: str
    session_length: float
    request_frequency: float
    avg_response_time: float
    quality_tolerance: float
    cost_sensitivity: float
    preferred_providers: Tuple[str, ...]
    interaction_style: str
    geography: str
    timezone: str
    device: str


@dataclass(frozen=True)
class SystemFeatures:
    provider_load: Dict[str, float]
    queue_length: Dict[str, int]
    latency: Dict[str, float]
    available: Dict[str, bool]

    @property
    def healthy_provider_count(self) -> int:
        return sum(1 for ok in self.available.values() if ok)


@dataclass(frozen=True)
class TemporalFeatures:
    hour: int
    weekday: int
    day_of_month: int
    month: int
    season: str
    is_business_hours: bool
    is_peak_hours: bool
    hourly_pattern: float
    weekly_pattern: float
    monthly_pattern: float


@dataclass(frozen=True, eq=False)
class FeatureVector:
    """Fixed-order numeric encoding of a request"""
    values: np.ndarray
    names: Tuple[str, ...] = FEATURE_NAMES
    feature_hash: str = ""

    def as_dict(self) -> Dict[str, float]:
        return {name: float(value) for name, value in zip(self.names, self.values)}

    def __len__(self) -> int:
        return len(self.values)


@dataclass(frozen=True, eq=False)
class RequestFeatures:
    content: ContentFeatures
    user: UserFeatures
    system: SystemFeatures
    temporal: TemporalFeatures
    vector: FeatureVector

    @property
    def feature_hash(self) -> str:
        return self.vector.feature_hash


def count_syllables(word: str) -> int:
    """Approximate syllable count of an English word"""
    word = word.lower()
    if len(word) <= 3:
        return 1
    syllables = len(re.findall(r"[aeiouy]+", word)) or 1
    if word.endswith("e"):
        syllables -= 1
    if "le" in word:
        syllables += 1
    return max(1, syllables)


def readability_score(sentences: List[str], words: List[str]) -> float:
    """Simplified Flesch reading ease scaled to [0, 1]"""
    if not sentences or not words:
        return 0.5
    words_per_sentence = len(words) / len(sentences)
    syllables_per_word = sum(count_syllables(w) for w in words) / len(words)
    score = 206.835 - 1.015 * words_per_sentence - 84.6 * syllables_per_word
    return float(np.clip(score / 100, 0.0, 1.0))


def get_season(month: int) -> str:
    if 3 <= month <= 5:
        return "spring"
    if 6 <= month <= 8:
        return "summer"
    if 9 <= month <= 11:
        return "fall"
    return "winter"


class FeatureExtractor:
    """Stateless request feature extractor"""

    def extract(self, request: ChatRequest, context: Optional[ExtractionContext] = None) -> RequestFeatures:
        """
        Extract every feature group and the numeric vector.

        Args:
            request: Chat request to describe
            context: User, system and time context (defaults when omitted)

        Returns:
            RequestFeatures: content, user, system, temporal and vector
        """
        context = context or ExtractionContext()
        content = self.extract_content_features(request)
        user = self.extract_user_features(context.user_id, context.user_context)
        system = self.extract_system_features(context.system_state)
        temporal = self.extract_temporal_features(context.now or datetime.now(timezone.utc))
        vector = self.to_vector(content, user, temporal)
        return RequestFeatures(content=content, user=user, system=system, temporal=temporal, vector=vector)

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def extract_content_features(self, request: ChatRequest) -> ContentFeatures:
        text = " ".join(m.content for m in request.messages)
        lower = text.lower()
        words = re.findall(r"\b\w+\b", lower)
        whitespace_words = lower.split()
        sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]

        message_types = {"system": 0, "user": 0, "assistant": 0}
        for message in request.messages:
            if message.role in message_types:
                message_types[message.role] += 1

        topic, topic_categories = self.classify_topic(words)

        return ContentFeatures(
            total_length=len(text),
            word_count=len(words),
            sentence_count=len(sentences),
            avg_sentence_length=sum(len(s) for s in sentences) / max(len(sentences), 1),
            vocabulary_richness=len(set(words)) / max(len(words), 1),
            readability=readability_score(sentences, words),
            topic=topic,
            topic_categories=topic_categories,
            language="en",
            sentiment=self.analyze_sentiment(whitespace_words),
            formality=self.analyze_formality(text),
            urgency_indicators=tuple(w for w in words if w in URGENT_WORDS),
            message_types=message_types,
            has_code=bool(CODE_BLOCK_RE.search(text) or INLINE_CODE_RE.search(text)),
            has_lists=bool(BULLET_LIST_RE.search(text) or NUMBERED_LIST_RE.search(text)),
            question_count=text.count("?"),
            instruction_count=sum(len(p.findall(text)) for p in INSTRUCTION_PATTERNS),
            technical_terms=(
                sum(1 for w in words if w in TECHNICAL_TERMS)
                + sum(lower.count(phrase) for phrase in TECHNICAL_PHRASES)
            ),
            multi_step_reasoning=any(len(p.findall(text)) > 1 for p in MULTI_STEP_PATTERNS),
            requires_creativity=any(w in CREATIVE_WORDS for w in whitespace_words),
            requires_precision=any(w in PRECISION_WORDS for w in whitespace_words),
        )

    @staticmethod
    def classify_topic(words: List[str]) -> Tuple[str, Tuple[str, ...]]:
        """Primary topic (first best keyword match) and every matching topic"""
        word_set = set(words)
        scores = {
            topic: sum(1 for keyword in keywords if keyword in word_set)
            for topic, keywords in TOPIC_KEYWORDS.items()
        }
        best = max(scores.values())
        if best == 0:
            return "conversational", ("conversational",)
        primary = next(topic for topic, score in scores.items() if score == best)
        matched = tuple(topic for topic, score in scores.items() if score > 0)
        return primary, matched

    @staticmethod
    def analyze_sentiment(words: List[str]) -> float:
        """Keyword sentiment in [0, 1]; 0.5 is neutral"""
        positive = sum(1 for w in words if w in POSITIVE_WORDS)
        negative = sum(1 for w in words if w in NEGATIVE_WORDS)
        raw = (positive - negative) / max(1, positive + negative)
        return (raw + 1) / 2

    @staticmethod
    def analyze_formality(text: str) -> float:
        formal = sum(len(p.findall(text)) for p in FORMAL_PATTERNS)
        informal = sum(len(p.findall(text)) for p in INFORMAL_PATTERNS)
        if formal + informal == 0:
            return 0.5
        return formal / (formal + informal)

    # ------------------------------------------------------------------
    # User / system / temporal
    # ------------------------------------------------------------------

    @staticmethod
    def extract_user_features(user_id: str, user_context: Dict[str, Any]) -> UserFeatures:
        values = dict(DEFAULT_USER_CONTEXT)
        values.update({k: v for k, v in (user_context or {}).items() if v is not None})

        avg_message_length = values["avg_message_length"]
        if avg_message_length < 50:
            style = "brief"
        elif avg_message_length > 200:
            style = "detailed"
        else:
            style = "balanced"

        return UserFeatures(
            user_id=user_id,
            tier=str(values["tier"]),
            session_length=float(values["session_length"]),
            request_frequency=float(values["request_frequency"]),
            avg_response_time=float(values["avg_response_time"]),
            quality_tolerance=float(values["quality_tolerance"]),
            cost_sensitivity=float(values["cost_sensitivity"]),
            preferred_providers=tuple(values["preferred_providers"]),
            interaction_style=style,
            geography=str(values["geography"]),
            timezone=str(values["timezone"]),
            device=str(values["device"]),
        )

    @staticmethod
    def extract_system_features(system_state: Dict[str, Dict[str, Any]]) -> SystemFeatures:
        system_state = system_state or {}
        return SystemFeatures(
            provider_load={p: float(s.get("load", 0.0)) for p, s in system_state.items()},
            queue_length={p: int(s.get("queue_length", 0)) for p, s in system_state.items()},
            latency={p: float(s.get("latency", 0.0)) for p, s in system_state.items()},
            available={p: bool(s.get("available", True)) for p, s in system_state.items()},
        )

    @staticmethod
    def extract_temporal_features(now: datetime) -> TemporalFeatures:
        hour = now.hour
        weekday = now.isoweekday()
        is_weekday = 1 <= weekday <= 5
        is_business_hours = is_weekday and 9 <= hour < 17
        is_evening = 19 <= hour < 22

        if 9 <= hour < 17:
            hourly = 0.9
        elif is_evening:
            hourly = 0.8
        elif 0 <= hour < 7:
            hourly = 0.2
        else:
            hourly = 0.55

        return TemporalFeatures(
            hour=hour,
            weekday=weekday,
            day_of_month=now.day,
            month=now.month,
            season=get_season(now.month),
            is_business_hours=is_business_hours,
            is_peak_hours=is_business_hours or is_evening,
            hourly_pattern=hourly,
            weekly_pattern=0.8 if is_weekday else 0.55,
            monthly_pattern=0.7 if (now.day <= 5 or now.day >= 25) else 0.6,
        )

    # ------------------------------------------------------------------
    # Vector and hash
    # ------------------------------------------------------------------

    @staticmethod
    def to_vector(content: ContentFeatures, user: UserFeatures, temporal: TemporalFeatures) -> FeatureVector:
        raw = np.array([
            content.total_length / 10000,
            content.vocabulary_richness,
            content.readability,
            content.sentiment,
            content.formality,
            1.0 if content.has_code else 0.0,
            content.question_count / 10,
            content.technical_terms / 20,
            user.session_length / 120,
            user.quality_tolerance,
            user.cost_sensitivity,
            temporal.hour / 24,
            1.0 if temporal.is_business_hours else 0.0,
        ], dtype=float)
        return FeatureVector(
            values=np.clip(raw, 0.0, 1.0),
            feature_hash=FeatureExtractor.feature_hash(content, user, temporal),
        )

    @staticmethod
    def feature_hash(content: ContentFeatures, user: UserFeatures, temporal: TemporalFeatures) -> str:
        """Coarse context key used for pattern tracking"""
        return "|".join([
            content.topic,
            "creative" if content.requires_creativity else "factual",
            user.tier,
            "business" if temporal.is_business_hours else "after-hours",
            str(content.total_length // 1000),
        ])
