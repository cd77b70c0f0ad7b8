# watercan/db.py
"""
Supabase client setup.

This module provides:
- Singleton Supabase client instance
- Table name constants
- Health check and startup initialisation

Environment Variables:
- SUPABASE_URL: Project URL (https://xxx.supabase.co)
- SUPABASE_KEY: Service role key

Schema expectations (managed outside this service):
- users(id uuid pk, phone text UNIQUE, full_name text, created_at timestamptz)
- distributors(id uuid pk, phone text UNIQUE, full_name text, upi_id text,
  is_working bool default true, created_at timestamptz)
- can_status(user_id uuid pk, can_1_full bool, can_2_full bool,
  can_3_full bool, updated_at timestamptz)
"""

from __future__ import annotations

import os
import logging
from functools import lru_cache

log = logging.getLogger("watercan.db")

# ============================================================
# Table Names
# ============================================================

TABLE_USERS = "users"
TABLE_DISTRIBUTORS = "distributors"
TABLE_CAN_STATUS = "can_status"

# Postgres SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"


# ============================================================
# Supabase Client
# ============================================================

def _get_supabase_url() -> str:
    url = os.getenv("SUPABASE_URL", "").strip()
    if not url:
        log.warning("SUPABASE_URL not set - database operations will fail")
    return url


def _get_supabase_key() -> str:
    key = os.getenv("SUPABASE_KEY", "").strip()
    if not key:
        log.warning("SUPABASE_KEY not set - database operations will fail")
    return key


@lru_cache(maxsize=1)
def get_supabase_client():
    """
    Get singleton Supabase client instance.

    Returns:
        Supabase client or None if not configured.
    """
    url = _get_supabase_url()
    key = _get_supabase_key()

    if not url or not key:
        log.error("Supabase credentials not configured")
        return None

    from supabase import create_client

    try:
        client = create_client(url, key)
    except Exception as e:
        log.error("Failed to initialize Supabase client: %s", str(e)[:100])
        return None

    log.info("Supabase client initialized successfully")
    return client


def is_unique_violation(exc: Exception) -> bool:
    """True if a PostgREST error reports a unique-constraint violation."""
    return str(getattr(exc, "code", "")) == UNIQUE_VIOLATION


# ============================================================
# Health Check
# ============================================================

def check_db_health() -> dict:
    """Check database connectivity for /health."""
    client = get_supabase_client()

    if client is None:
        return {"database": "unavailable", "error": "Supabase client not initialized"}

    try:
        client.table(TABLE_USERS).select("id").limit(1).execute()
        return {"database": "ok"}
    except Exception as e:
        error_msg = str(e)[:100]
        log.warning("Database health check failed: %s", error_msg)
        return {"database": "degraded", "error": error_msg}


def init_db() -> bool:
    """
    Initialize database connection on app startup.

    Returns:
        True if connection successful, False otherwise.
    """
    client = get_supabase_client()
    if client is None:
        log.warning("Database initialization skipped - credentials not configured")
        return False

    health = check_db_health()
    if health.get("database") == "ok":
        log.info("Database connection verified")
        return True

    log.warning("Database health check: %s", health)
    return False
