"""
Application Configuration
Centralized configuration for providers, scheduling defaults, Redis and Supabase
"""
import os
from typing import Optional

import httpx
from redis import Redis
from supabase import Client, create_client

# Redis Configuration
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")

# Supabase Configuration
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", os.getenv("SUPABASE_KEY", ""))

# Storage backend for the API: "memory" or "supabase"
STORE_BACKEND = os.getenv("CALSYNC_STORE_BACKEND", "memory").lower()

# Sync pass guard: "memory" (single process) or "redis" (lease shared by workers)
SYNC_GUARD_BACKEND = os.getenv("CALSYNC_SYNC_GUARD", "memory").lower()

# CORS origins for the API, comma separated
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# CalDAV providers - generally responsive, REPORT queries can be slow
CALDAV_TIMEOUT = httpx.Timeout(
    float(os.getenv("CALDAV_TIMEOUT_SECONDS", "20.0")),
    connect=float(os.getenv("CALDAV_CONNECT_TIMEOUT_SECONDS", "5.0")),
)
PROVIDER_RETRY_ATTEMPTS = int(os.getenv("PROVIDER_RETRY_ATTEMPTS", "3"))
PROVIDER_RETRY_BASE_DELAY = float(os.getenv("PROVIDER_RETRY_BASE_DELAY", "1.0"))
PROVIDER_RETRY_MAX_DELAY = float(os.getenv("PROVIDER_RETRY_MAX_DELAY", "10.0"))

# Provider session cache (authenticated sessions live 24h)
PROVIDER_SESSION_TTL_SECONDS = int(os.getenv("PROVIDER_SESSION_TTL_SECONDS", str(24 * 3600)))

# Full-sync window relative to "now" (in days)
SYNC_WINDOW_PAST_DAYS = int(os.getenv("SYNC_WINDOW_PAST_DAYS", "30"))
SYNC_WINDOW_FUTURE_DAYS = int(os.getenv("SYNC_WINDOW_FUTURE_DAYS", "365"))

# Sync lease (Redis) for serializing passes per (user, calendar)
SYNC_LEASE_TTL_MS = int(os.getenv("SYNC_LEASE_TTL_MS", "300000"))

# Business hours used by alternative slot search (local wall clock)
BUSINESS_HOURS_START = int(os.getenv("BUSINESS_HOURS_START", "9"))
BUSINESS_HOURS_END = int(os.getenv("BUSINESS_HOURS_END", "17"))
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "UTC")

# Timed VEVENTs with neither DTEND nor DURATION are instants (RFC 5545 3.6.1);
# they are stored with this length so start < end holds
INSTANT_EVENT_MINUTES = int(os.getenv("INSTANT_EVENT_MINUTES", "1"))

# Buffer defaults (minutes)
DEFAULT_BUFFER_BEFORE = int(os.getenv("DEFAULT_BUFFER_BEFORE", "15"))
DEFAULT_BUFFER_AFTER = int(os.getenv("DEFAULT_BUFFER_AFTER", "15"))
MIN_BUFFER_MINUTES = int(os.getenv("MIN_BUFFER_MINUTES", "5"))
MAX_BUFFER_MINUTES = int(os.getenv("MAX_BUFFER_MINUTES", "60"))

# Dynamic buffer tuning; empirical values, override per deployment
DYNAMIC_HIGH_DENSITY = float(os.getenv("DYNAMIC_HIGH_DENSITY", "0.8"))
DYNAMIC_LOW_DENSITY = float(os.getenv("DYNAMIC_LOW_DENSITY", "0.4"))
DYNAMIC_HIGH_DENSITY_MULTIPLIER = float(os.getenv("DYNAMIC_HIGH_DENSITY_MULTIPLIER", "0.8"))
DYNAMIC_LOW_DENSITY_MULTIPLIER = float(os.getenv("DYNAMIC_LOW_DENSITY_MULTIPLIER", "1.3"))
DYNAMIC_OVERRUN_THRESHOLD = float(os.getenv("DYNAMIC_OVERRUN_THRESHOLD", "10"))
DYNAMIC_OVERRUN_MULTIPLIER = float(os.getenv("DYNAMIC_OVERRUN_MULTIPLIER", "1.5"))

# Conflict resolution
AUTO_RESOLVE_CONFIDENCE = float(os.getenv("AUTO_RESOLVE_CONFIDENCE", "0.7"))
ALTERNATIVE_SEARCH_DAYS = int(os.getenv("ALTERNATIVE_SEARCH_DAYS", "7"))
ALTERNATIVE_MAX_RESULTS = int(os.getenv("ALTERNATIVE_MAX_RESULTS", "3"))
TRAVEL_MARGIN_MINUTES = int(os.getenv("TRAVEL_MARGIN_MINUTES", "15"))

# Timeslot limits
BULK_CREATE_LIMIT = int(os.getenv("BULK_CREATE_LIMIT", "100"))
DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", "50"))


def get_redis_client() -> Redis:
    """
    Get configured Redis client with optimized settings

    Returns:
        Redis: Configured Redis client instance
    """
    return Redis.from_url(
        REDIS_URL,
        decode_responses=True,  # Automatically decode responses to strings
        socket_connect_timeout=5,  # 5 second connection timeout
        socket_timeout=5,  # 5 second operation timeout
        retry_on_timeout=True,  # Retry operations that timeout
        health_check_interval=30  # Health check every 30 seconds
    )


def get_supabase_client() -> Optional[Client]:
    """
    Create a Supabase client from environment credentials.

    Returns None when credentials are not configured so callers can fall
    back to the in-memory stores.
    """
    if not SUPABASE_URL or not SUPABASE_KEY:
        return None
    return create_client(SUPABASE_URL, SUPABASE_KEY)
