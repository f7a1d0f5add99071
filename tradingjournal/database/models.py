"""
Record types and Supabase table schemas for the trading journal AI core
The schemas mirror the Supabase tables; the dataclasses convert rows to and from
the dicts returned by the PostgREST client.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Supabase table schemas (for reference)
SUPABASE_TABLES = {
    "trades": {
        "id": "uuid (auto-generated)",
        "user_id": "uuid",
        "date": "date",
        "entry_time": "timestamp with time zone",
        "exit_time": "timestamp with time zone",
        "duration_seconds": "integer",
        "ticker": "text",
        "direction": "text",  # 'long' or 'short'
        "contracts": "numeric",
        "profit_loss": "numeric",
        "commission_per_contract": "numeric",
        "net_profit": "numeric",
        "entry_price": "numeric",
        "stop_loss": "numeric",
        "target_price": "numeric",
        "timeframe": "text",
        "notes": "text",
        "snapshot_url": "text",
        "strategy_id": "uuid",
        "created_at": "timestamp with time zone",
    },
    "trading_plans": {
        "id": "uuid (auto-generated)",
        "user_id": "uuid",
        "date": "date",  # unique per user
        "market_bias": "text",
        "key_levels": "text[]",
        "economic_events": "jsonb",
        "news_impact": "text",
        "max_daily_loss": "numeric",
        "created_at": "timestamp with time zone",
        "updated_at": "timestamp with time zone",
    },
    "trade_plans": {
        "id": "uuid (auto-generated)",
        "trading_plan_id": "uuid",
        "trade_id": "uuid",
        "ticker": "text",
        "direction": "text",
        "entry_price": "numeric",
        "stop_loss": "numeric",
        "target_price": "numeric",
        "risk_amount": "numeric",
        "reward_amount": "numeric",
        "max_position_size": "numeric",
        "entry_criteria": "text",
        "exit_criteria": "text",
        "timeframe": "text",
        "created_at": "timestamp with time zone",
    },
    "ticker_point_values": {
        "id": "uuid (auto-generated)",
        "user_id": "uuid",  # null for system rows
        "ticker": "text",
        "point_value": "numeric",
        "is_system": "boolean",
    },
    "trade_embeddings": {
        "id": "uuid (auto-generated)",
        "user_id": "uuid",
        "trade_id": "uuid",  # unique per user
        "content": "text",
        "embedding": "vector(768)",
        "created_at": "timestamp with time zone",
        "updated_at": "timestamp with time zone",
    },
    "plan_embeddings": {
        "id": "uuid (auto-generated)",
        "user_id": "uuid",
        "trading_plan_id": "uuid",  # unique per user
        "content": "text",
        "embedding": "vector(768)",
        "created_at": "timestamp with time zone",
        "updated_at": "timestamp with time zone",
    },
    "trade_patterns": {
        "id": "uuid (auto-generated)",
        "user_id": "uuid",
        "pattern_key": "text",  # unique per user
        "pattern_type": "text",
        "setup_type": "text",
        "risk_category": "text",
        "pattern_data": "jsonb",
        "pattern_tags": "text[]",
        "risk_metrics": "jsonb",
        "volatility_metrics": "jsonb",
        "drawdown_metrics": "jsonb",
        "risk_score": "numeric",
        "confidence_score": "numeric",
        "success_rate": "numeric",
        "sample_size": "integer",
        "created_at": "timestamp with time zone",
        "updated_at": "timestamp with time zone",
    },
    "pattern_matches": {
        "id": "uuid (auto-generated)",
        "pattern_id": "uuid",
        "trade_id": "uuid",
        "match_score": "numeric",
        "created_at": "timestamp with time zone",
    },
    "pattern_recommendations": {
        "id": "uuid (auto-generated)",
        "pattern_id": "uuid",
        "user_id": "uuid",
        "ticker": "text",
        "direction": "text",
        "entry_zone": "jsonb",  # {lower, upper}
        "stop_loss": "numeric",
        "target_price": "numeric",
        "confidence_score": "numeric",
        "expiration": "timestamp with time zone",
        "status": "text",  # pending, triggered, expired, invalidated
        "created_at": "timestamp with time zone",
        "updated_at": "timestamp with time zone",
    },
    "ai_insights": {
        "id": "uuid (auto-generated)",
        "user_id": "uuid",
        "type": "text",  # performance, psychology, pattern, risk
        "content": "jsonb",
        "created_at": "timestamp with time zone",
    },
    "ai_chat_history": {
        "id": "uuid (auto-generated)",
        "user_id": "uuid",
        "conversation_id": "uuid",
        "message": "text",
        "response": "text",
        "context": "jsonb",
        "message_order": "integer",
        "created_at": "timestamp with time zone",
    },
    "user_ai_configs": {
        "id": "uuid (auto-generated)",
        "user_id": "uuid",
        "provider": "text",  # openai or groq
        "api_key": "text",
        "model": "text",
        "updated_at": "timestamp with time zone",
    },
    "system_logs": {
        "id": "bigint (auto-increment)",
        "event": "text",
        "details": "jsonb",
        "timestamp": "timestamp with time zone",
    },
}


class Direction(str, Enum):
    LONG = "long"
    SHORT = "short"


class SourceKind(str, Enum):
    """Entity kinds held in the similarity store"""

    TRADE = "trade"
    PLAN = "plan"

    @property
    def embedding_table(self) -> str:
        return "trade_embeddings" if self is SourceKind.TRADE else "plan_embeddings"

    @property
    def id_column(self) -> str:
        return "trade_id" if self is SourceKind.TRADE else "trading_plan_id"

    @property
    def source_table(self) -> str:
        return "trades" if self is SourceKind.TRADE else "trading_plans"

    @property
    def search_rpc(self) -> str:
        return "search_trade_embeddings" if self is SourceKind.TRADE else "search_plan_embeddings"


class PatternType(str, Enum):
    TIME_BASED = "time_based"
    SETUP = "setup"
    RISK = "risk"


class RiskCategory(str, Enum):
    POSITION_SIZE = "position_size"
    DRAWDOWN = "drawdown"
    VOLATILITY = "volatility"
    TIME_RISK = "time_risk"


class RecommendationStatus(str, Enum):
    PENDING = "pending"
    TRIGGERED = "triggered"
    EXPIRED = "expired"
    INVALIDATED = "invalidated"


class DegradedReason(str, Enum):
    """Why an optional capability (embeddings, retrieval) did not run"""

    DATABASE_UNAVAILABLE = "database_unavailable"
    NOT_CONFIGURED = "not_configured"
    MISSING_FIELDS = "missing_fields"
    EMBEDDING_FAILED = "embedding_failed"
    SEARCH_FAILED = "search_failed"
    HYDRATION_FAILED = "hydration_failed"
    WRITE_FAILED = "write_failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp string (Supabase format) into a datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _known_fields(cls, row: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in row.items() if k in names}


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class Trade:
    ticker: str
    id: Optional[str] = None
    user_id: Optional[str] = None
    date: Optional[str] = None
    entry_time: Optional[str] = None
    exit_time: Optional[str] = None
    duration_seconds: Optional[float] = None
    direction: str = Direction.LONG.value
    contracts: float = 0.0
    profit_loss: float = 0.0
    commission_per_contract: float = 0.0
    net_profit: Optional[float] = None
    entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    target_price: Optional[float] = None
    timeframe: Optional[str] = None
    notes: Optional[str] = None
    snapshot_url: Optional[str] = None
    strategy_id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Trade":
        data = _known_fields(cls, row)
        data.setdefault("ticker", "")
        for name in ("contracts", "profit_loss", "commission_per_contract"):
            data[name] = _to_float(data.get(name), 0.0)
        for name in ("net_profit", "duration_seconds", "entry_price", "stop_loss", "target_price"):
            data[name] = _to_float(data.get(name))
        data["direction"] = str(data.get("direction") or Direction.LONG.value).lower()
        return cls(**data)

    def to_row(self) -> Dict[str, Any]:
        return _compact(asdict(self))

    @property
    def entry_datetime(self) -> Optional[datetime]:
        return parse_timestamp(self.entry_time)

    @property
    def exit_datetime(self) -> Optional[datetime]:
        return parse_timestamp(self.exit_time)


@dataclass
class TradeSetup:
    ticker: str
    direction: str = Direction.LONG.value
    entry_price: float = 0.0
    stop_loss: float = 0.0
    target_price: float = 0.0
    max_position_size: float = 1.0
    risk_amount: Optional[float] = None
    reward_amount: Optional[float] = None
    entry_criteria: Optional[str] = None
    exit_criteria: Optional[str] = None
    timeframe: Optional[str] = None
    id: Optional[str] = None
    trading_plan_id: Optional[str] = None
    trade_id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TradeSetup":
        data = _known_fields(cls, row)
        data.setdefault("ticker", "")
        for name in ("entry_price", "stop_loss", "target_price"):
            data[name] = _to_float(data.get(name), 0.0)
        data["max_position_size"] = _to_float(data.get("max_position_size"), 1.0)
        for name in ("risk_amount", "reward_amount"):
            data[name] = _to_float(data.get(name))
        return cls(**data)

    def to_row(self) -> Dict[str, Any]:
        return _compact(asdict(self))


@dataclass
class TradingPlan:
    date: str
    id: Optional[str] = None
    user_id: Optional[str] = None
    market_bias: Optional[str] = None
    key_levels: List[str] = field(default_factory=list)
    economic_events: List[Dict[str, Any]] = field(default_factory=list)
    news_impact: Optional[str] = None
    max_daily_loss: Optional[float] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TradingPlan":
        data = _known_fields(cls, row)
        data.setdefault("date", "")
        data["key_levels"] = [str(level) for level in (data.get("key_levels") or [])]
        data["economic_events"] = list(data.get("economic_events") or [])
        data["max_daily_loss"] = _to_float(data.get("max_daily_loss"))
        return cls(**data)

    def to_row(self) -> Dict[str, Any]:
        return _compact(asdict(self))


@dataclass
class TradePattern:
    pattern_type: str
    pattern_key: str
    pattern_data: Dict[str, Any]
    confidence_score: float
    success_rate: float
    sample_size: int
    user_id: Optional[str] = None
    id: Optional[str] = None
    setup_type: Optional[str] = None
    risk_category: Optional[str] = None
    pattern_tags: Optional[List[str]] = None
    risk_metrics: Optional[Dict[str, Any]] = None
    volatility_metrics: Optional[Dict[str, Any]] = None
    drawdown_metrics: Optional[Dict[str, Any]] = None
    risk_score: Optional[float] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    # Trades supporting the pattern; written to pattern_matches, not to the row
    evidence_trade_ids: List[str] = field(default_factory=list, repr=False)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TradePattern":
        data = _known_fields(cls, row)
        data.pop("evidence_trade_ids", None)
        data.setdefault("pattern_type", "")
        data.setdefault("pattern_key", "")
        data["pattern_data"] = data.get("pattern_data") or {}
        data["confidence_score"] = _to_float(data.get("confidence_score"), 0.0)
        data["success_rate"] = _to_float(data.get("success_rate"), 0.0)
        data["sample_size"] = int(data.get("sample_size") or 0)
        data["risk_score"] = _to_float(data.get("risk_score"))
        return cls(**data)

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row.pop("evidence_trade_ids")
        return _compact(row)


@dataclass
class PatternMatch:
    pattern_id: str
    trade_id: str
    match_score: float
    id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PatternMatch":
        data = _known_fields(cls, row)
        data["match_score"] = _to_float(data.get("match_score"), 0.0)
        return cls(**data)

    def to_row(self) -> Dict[str, Any]:
        return _compact(asdict(self))


@dataclass
class PatternRecommendation:
    pattern_id: str
    ticker: str
    direction: str
    entry_zone: Dict[str, float]
    stop_loss: float
    target_price: float
    confidence_score: float
    expiration: str
    status: str = RecommendationStatus.PENDING.value
    user_id: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PatternRecommendation":
        data = _known_fields(cls, row)
        zone = data.get("entry_zone") or {}
        data["entry_zone"] = {
            "lower": _to_float(zone.get("lower"), 0.0),
            "upper": _to_float(zone.get("upper"), 0.0),
        }
        for name in ("stop_loss", "target_price", "confidence_score"):
            data[name] = _to_float(data.get(name), 0.0)
        return cls(**data)

    def to_row(self) -> Dict[str, Any]:
        return _compact(asdict(self))

    @property
    def expiration_datetime(self) -> Optional[datetime]:
        return parse_timestamp(self.expiration)


@dataclass
class AIInsight:
    type: str
    content: Dict[str, Any]
    user_id: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AIInsight":
        data = _known_fields(cls, row)
        data["content"] = data.get("content") or {}
        return cls(**data)

    def to_row(self) -> Dict[str, Any]:
        return _compact(asdict(self))


@dataclass
class ChatExchange:
    message: str
    response: str
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    message_order: int = 0
    id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ChatExchange":
        data = _known_fields(cls, row)
        data.setdefault("message", "")
        data.setdefault("response", "")
        data["context"] = data.get("context") or {}
        data["message_order"] = int(data.get("message_order") or 0)
        return cls(**data)

    def to_row(self) -> Dict[str, Any]:
        return _compact(asdict(self))


@dataclass
class AIConfig:
    provider: str
    api_key: Optional[str] = None
    model: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AIConfig":
        data = _known_fields(cls, row)
        data["provider"] = str(data.get("provider") or "").lower()
        return cls(**data)
