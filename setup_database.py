"""
Supabase setup script for the trading journal AI core
Run this script to verify the Supabase connection, create the tables, the
pgvector columns and the similarity search functions.
Run with: python setup_database.py [--print-sql]
"""
import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv

from tradingjournal.config import env_template
from tradingjournal.config.analysis_config import EMBEDDING_CONFIG
from tradingjournal.database.config import get_supabase
from tradingjournal.database.models import SUPABASE_TABLES

VECTOR_DIMENSIONS = EMBEDDING_CONFIG["dimensions"]

EXTENSIONS_SQL = """
CREATE EXTENSION IF NOT EXISTS vector;
CREATE EXTENSION IF NOT EXISTS pgcrypto;
"""

JOURNAL_SQL = """
CREATE TABLE IF NOT EXISTS public.trades (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    date DATE NOT NULL,
    entry_time TIMESTAMP WITH TIME ZONE NOT NULL,
    exit_time TIMESTAMP WITH TIME ZONE NOT NULL,
    duration_seconds INTEGER CHECK (duration_seconds >= 0),
    ticker VARCHAR(20) NOT NULL,
    direction VARCHAR(5) NOT NULL CHECK (direction IN ('long', 'short')),
    contracts NUMERIC NOT NULL DEFAULT 1,
    profit_loss NUMERIC NOT NULL DEFAULT 0,
    commission_per_contract NUMERIC NOT NULL DEFAULT 0,
    net_profit NUMERIC,
    entry_price NUMERIC,
    stop_loss NUMERIC,
    target_price NUMERIC,
    timeframe VARCHAR(20),
    notes TEXT,
    snapshot_url TEXT,
    strategy_id UUID,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    CHECK (exit_time > entry_time)
);
CREATE INDEX IF NOT EXISTS idx_trades_user_date ON public.trades(user_id, date);

CREATE TABLE IF NOT EXISTS public.trading_plans (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    date DATE NOT NULL,
    market_bias TEXT,
    key_levels TEXT[] DEFAULT '{}',
    economic_events JSONB DEFAULT '[]',
    news_impact TEXT,
    max_daily_loss NUMERIC,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    UNIQUE(user_id, date)
);

CREATE TABLE IF NOT EXISTS public.trade_plans (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    trading_plan_id UUID NOT NULL REFERENCES public.trading_plans(id) ON DELETE CASCADE,
    trade_id UUID REFERENCES public.trades(id) ON DELETE SET NULL,
    ticker VARCHAR(20) NOT NULL,
    direction VARCHAR(5) NOT NULL,
    entry_price NUMERIC NOT NULL,
    stop_loss NUMERIC NOT NULL,
    target_price NUMERIC NOT NULL,
    risk_amount NUMERIC,
    reward_amount NUMERIC,
    max_position_size NUMERIC DEFAULT 1,
    entry_criteria TEXT,
    exit_criteria TEXT,
    timeframe VARCHAR(20),
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS public.ticker_point_values (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID,
    ticker VARCHAR(20) NOT NULL,
    point_value NUMERIC NOT NULL,
    is_system BOOLEAN DEFAULT FALSE,
    UNIQUE(user_id, ticker)
);
"""

EMBEDDINGS_SQL = f"""
CREATE TABLE IF NOT EXISTS public.trade_embeddings (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    trade_id UUID NOT NULL REFERENCES public.trades(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    embedding vector({VECTOR_DIMENSIONS}),
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    UNIQUE(user_id, trade_id)
);

CREATE TABLE IF NOT EXISTS public.plan_embeddings (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    trading_plan_id UUID NOT NULL REFERENCES public.trading_plans(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    embedding vector({VECTOR_DIMENSIONS}),
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    UNIQUE(user_id, trading_plan_id)
);

CREATE OR REPLACE FUNCTION public.search_trade_embeddings(
    query_embedding vector({VECTOR_DIMENSIONS}),
    match_threshold FLOAT,
    match_count INT,
    user_id_input UUID
)
RETURNS TABLE (trade_id UUID, similarity FLOAT)
LANGUAGE sql STABLE
AS $$
    SELECT e.trade_id, 1 - (e.embedding <=> query_embedding) AS similarity
    FROM public.trade_embeddings e
    WHERE e.user_id = user_id_input
      AND 1 - (e.embedding <=> query_embedding) > match_threshold
    ORDER BY e.embedding <=> query_embedding
    LIMIT match_count;
$$;

CREATE OR REPLACE FUNCTION public.search_plan_embeddings(
    query_embedding vector({VECTOR_DIMENSIONS}),
    match_threshold FLOAT,
    match_count INT,
    user_id_input UUID
)
RETURNS TABLE (trading_plan_id UUID, similarity FLOAT)
LANGUAGE sql STABLE
AS $$
    SELECT e.trading_plan_id, 1 - (e.embedding <=> query_embedding) AS similarity
    FROM public.plan_embeddings e
    WHERE e.user_id = user_id_input
      AND 1 - (e.embedding <=> query_embedding) > match_threshold
    ORDER BY e.embedding <=> query_embedding
    LIMIT match_count;
$$;
"""

PATTERNS_SQL = """
CREATE TABLE IF NOT EXISTS public.trade_patterns (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    pattern_key TEXT NOT NULL,
    pattern_type VARCHAR(20) NOT NULL CHECK (pattern_type IN ('time_based', 'setup', 'risk')),
    setup_type VARCHAR(30),
    risk_category VARCHAR(30),
    pattern_data JSONB NOT NULL DEFAULT '{}',
    pattern_tags TEXT[],
    risk_metrics JSONB,
    volatility_metrics JSONB,
    drawdown_metrics JSONB,
    risk_score NUMERIC CHECK (risk_score BETWEEN 0 AND 100),
    confidence_score NUMERIC NOT NULL CHECK (confidence_score BETWEEN 0 AND 1),
    success_rate NUMERIC NOT NULL CHECK (success_rate BETWEEN 0 AND 1),
    sample_size INTEGER NOT NULL CHECK (sample_size >= 1),
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    UNIQUE(user_id, pattern_key)
);

CREATE TABLE IF NOT EXISTS public.pattern_matches (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    pattern_id UUID NOT NULL REFERENCES public.trade_patterns(id) ON DELETE CASCADE,
    trade_id UUID NOT NULL REFERENCES public.trades(id) ON DELETE CASCADE,
    match_score NUMERIC NOT NULL,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_pattern_matches_pattern ON public.pattern_matches(pattern_id, created_at DESC);

CREATE TABLE IF NOT EXISTS public.pattern_recommendations (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    pattern_id UUID NOT NULL REFERENCES public.trade_patterns(id) ON DELETE CASCADE,
    user_id UUID NOT NULL,
    ticker VARCHAR(20) NOT NULL,
    direction VARCHAR(5) NOT NULL,
    entry_zone JSONB NOT NULL,
    stop_loss NUMERIC NOT NULL,
    target_price NUMERIC NOT NULL,
    confidence_score NUMERIC NOT NULL,
    expiration TIMESTAMP WITH TIME ZONE NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'triggered', 'expired', 'invalidated')),
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);
"""

AI_SQL = """
CREATE TABLE IF NOT EXISTS public.ai_insights (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    type VARCHAR(20) NOT NULL CHECK (type IN ('performance', 'psychology', 'pattern', 'risk')),
    content JSONB NOT NULL,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS public.ai_chat_history (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    conversation_id UUID NOT NULL,
    message TEXT NOT NULL,
    response TEXT NOT NULL,
    context JSONB DEFAULT '{}',
    message_order INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_chat_conversation ON public.ai_chat_history(user_id, conversation_id, message_order);

CREATE TABLE IF NOT EXISTS public.user_ai_configs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    provider VARCHAR(20) NOT NULL CHECK (provider IN ('openai', 'groq')),
    api_key TEXT NOT NULL,
    model VARCHAR(50),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    UNIQUE(user_id, provider)
);

CREATE TABLE IF NOT EXISTS public.system_logs (
    id BIGSERIAL PRIMARY KEY,
    event VARCHAR(100) NOT NULL,
    details JSONB,
    timestamp TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);
"""

SQL_STEPS = [
    ("extensions", EXTENSIONS_SQL),
    ("journal tables", JOURNAL_SQL),
    ("embedding tables and search functions", EMBEDDINGS_SQL),
    ("pattern tables", PATTERNS_SQL),
    ("AI tables", AI_SQL),
]

REQUIRED_VARS = ["SUPABASE_URL", "SUPABASE_KEY"]


def template_variables():
    """Variable names documented in tradingjournal/config/env_template.py"""
    return [name for name in vars(env_template) if name.isupper()]


async def create_tables(supabase):
    """Run each SQL block through the exec_sql RPC"""
    print("Creating database tables...")
    try:
        for label, sql in SQL_STEPS:
            print(f"Creating {label}...")
            await supabase.rpc("exec_sql", {"sql": sql}).execute()
        return True
    except Exception as e:
        print(f"Error creating tables: {e}")
        print("Run 'python setup_database.py --print-sql' and paste the output into the Supabase SQL editor.")
        return False


async def verify_tables(supabase):
    """Check every table answers a trivial select"""
    missing = []
    for table in SUPABASE_TABLES:
        try:
            await supabase.table(table).select("id").limit(1).execute()
            print(f"   {table}: ok")
        except Exception as e:
            print(f"   {table}: missing ({e})")
            missing.append(table)
    return missing


async def setup_database():
    """Verify Supabase connection and create tables"""
    print("Verifying Supabase connection...")
    try:
        supabase = await get_supabase()
    except Exception as e:
        print(f"Supabase connection failed: {e}")
        return False
    if supabase is None:
        print("Supabase not configured. Please set SUPABASE_URL and SUPABASE_KEY in your .env file.")
        return False
    print("Supabase connection verified!")

    created = await create_tables(supabase)
    print("\nVerifying tables...")
    missing = await verify_tables(supabase)
    if missing:
        print(f"Missing tables: {', '.join(missing)}")
        return False
    if created:
        print("Database tables created successfully!")
    return True


def main():
    """Main setup function"""
    parser = argparse.ArgumentParser(description="Create the trading journal AI tables in Supabase")
    parser.add_argument("--print-sql", action="store_true", help="print the SQL instead of executing it")
    args = parser.parse_args()

    if args.print_sql:
        for label, sql in SQL_STEPS:
            print(f"-- {label}")
            print(sql)
        return True

    print("Trading Journal AI - Database Setup")
    print("=" * 50)

    load_dotenv()

    missing_vars = [var for var in REQUIRED_VARS if not os.getenv(var)]
    if missing_vars:
        print(f"Missing required environment variables: {', '.join(missing_vars)}")
        print("Please create a .env file with the required variables.")
        print(f"Known variables: {', '.join(template_variables())}")
        print("See tradingjournal/config/env_template.py for reference.")
        return False

    optional_missing = [var for var in template_variables()
                        if var not in REQUIRED_VARS and not os.getenv(var)]
    if optional_missing:
        print(f"Optional variables not set: {', '.join(optional_missing)}")

    if not asyncio.run(setup_database()):
        return False

    print("\nSetup completed successfully!")
    print("You can now run the analysis with: python run_analysis.py --user-id <uuid>")
    return True


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
