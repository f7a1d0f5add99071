"""
Analysis and AI configuration for the trading journal AI core
Thresholds, sample-size floors and provider defaults used across the dataflows.
"""
import os
from typing import Dict

# Pattern analysis thresholds
PATTERN_CONFIG = {
    "time_min_sample": 5,
    "time_min_success_rate": 0.6,
    "time_confidence_divisor": 20,
    "setup_min_ticker_trades": 10,
    "setup_min_sample": 5,
    "setup_confidence_divisor": 20,
    "setup_high_profit": 100.0,
    # Risk checks run on any non-empty history
    "risk_min_sample": 1,
    "risk_min_score": 30.0,
    "risk_confidence_divisor": 50,
    "risk_max_consecutive_losses": 5,
    "time_risk_amount_normalizer": 1000.0,
}

# Recommendation generation
RECOMMENDATION_CONFIG = {
    "expiry_hours": 24,
    "max_matched_trades": 10,
    "stop_loss_buffer": 1.1,
    "target_factor": 0.9,
}

# Embeddings / similarity store
EMBEDDING_CONFIG = {
    "provider": os.getenv("EMBEDDING_PROVIDER", "openai").lower(),
    "openai_model": "text-embedding-3-small",
    "gemini_model": "models/text-embedding-004",
    "dimensions": 768,
    "similarity_threshold": 0.7,
    "backfill_batch_size": 5,
    "backfill_pause_seconds": 1.0,
}

# Chat assistant and insight generation
AI_CONFIG = {
    "default_provider": os.getenv("DEFAULT_AI_PROVIDER", "openai").lower(),
    "retrieval_threshold": 0.5,
    "retrieval_trade_limit": 5,
    "retrieval_plan_limit": 3,
    "history_turns": 5,
    "chat_max_tokens": 1000,
    "insight_max_tokens": 1000,
    "temperature": 0.7,
    "insight_max_trades": 50,
}

# Retry/backoff for provider calls
RETRY_CONFIG = {
    "max_attempts": 3,
    "base_delay_seconds": 1.0,
}

DEFAULT_MODELS: Dict[str, str] = {
    "openai": "gpt-4o",
    "groq": "llama-3.1-8b-instant",
}

# Fixed notional capital used by the advanced performance metrics
INITIAL_CAPITAL = 100000.0
RISK_FREE_RATE = 0.02
