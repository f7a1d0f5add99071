"""
Environment variables template for the trading journal AI core
Copy this to .env file and fill in your API keys
"""

# Supabase (database, vector search RPCs)
SUPABASE_URL = "https://your-project.supabase.co"
SUPABASE_KEY = "your_supabase_service_or_anon_key_here"

# Default LLM provider when a user has no row in user_ai_configs: openai or groq
DEFAULT_AI_PROVIDER = "openai"

# Server-side fallback keys, used only when the user has not stored their own
OPENAI_API_KEY = "sk-your_openai_api_key_here"
GROQ_API_KEY = "gsk_your_groq_api_key_here"

# Embedding backend for the similarity store: openai or gemini
EMBEDDING_PROVIDER = "openai"
GEMINI_API_KEY = "your_gemini_api_key_here"
