"""
Supabase configuration for the trading journal AI core
"""
import os
from typing import Optional

from dotenv import load_dotenv
from supabase import AsyncClient, acreate_client

load_dotenv()

# Supabase configuration
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")


async def get_supabase(url: Optional[str] = None, key: Optional[str] = None) -> AsyncClient | None:
    """Return an async Supabase client if configured, else None."""
    url = url or SUPABASE_URL
    key = key or SUPABASE_KEY
    if url and key:
        return await acreate_client(url, key)
    return None
