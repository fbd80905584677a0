"""
Configuration module for the certificate verification service.

Centralizes all configuration with environment variable support
and validation.
"""

import os
from typing import Dict

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("CERTVERIFY_ENV", "dev")  # dev|stage|prod

# Record store
DB_PATH = os.getenv("DB_PATH", "data/certverify.db")

# Key-value backend shared by the result cache, audit log and rate limiter
KV_BACKEND = os.getenv("KV_BACKEND", "sqlite")  # sqlite|memory|s3
KV_DB_PATH = os.getenv("KV_DB_PATH", "data/certverify_kv.db")
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_PREFIX = os.getenv("S3_PREFIX", "certverify/kv/")

# External document analysis
MISTRAL_API_KEY = os.getenv("MISTRAL_API_KEY", "")
MISTRAL_API_URL = os.getenv("MISTRAL_API_URL", "https://api.mistral.ai/v1/chat/completions")
MISTRAL_MODEL = os.getenv("MISTRAL_MODEL", "mistral-small-latest")
ANALYSIS_TIMEOUT_SECONDS = float(os.getenv("ANALYSIS_TIMEOUT_SECONDS", "60"))

# Retention (seconds)
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", str(60 * 60 * 24)))
AUDIT_LOG_TTL_SECONDS = int(os.getenv("AUDIT_LOG_TTL_SECONDS", str(60 * 60 * 24 * 7)))
RECENT_REQUESTS_LIMIT = int(os.getenv("RECENT_REQUESTS_LIMIT", "1000"))

# Rate limits (requests per minute, per client and endpoint)
VERIFY_RPM = int(os.getenv("VERIFY_RPM", "10"))
LOGS_RPM = int(os.getenv("LOGS_RPM", "60"))

# Authentication
AUTH_SECRET = os.getenv("AUTH_SECRET", "")
REQUIRE_AUTH = os.getenv("REQUIRE_AUTH", "").lower() in ("1", "true", "yes")
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("AUTH_TOKEN_TTL_SECONDS", "3600"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Per-certificate claim lease guarding the external analysis call
CLAIMS_ENABLED = os.getenv("CLAIMS_ENABLED", "true").lower() in ("1", "true", "yes")
CLAIM_LEASE_SECONDS = int(os.getenv("CLAIM_LEASE_SECONDS", "300"))

# service: trust the analysis service's own verdict
# strict: additionally require the confidence scorer to pass
DECISION_POLICY = os.getenv("DECISION_POLICY", "service")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate that required settings are present.
    Returns dict of setting -> ok.
    """
    checks = {
        "mistral_api_key": bool(MISTRAL_API_KEY),
        "auth_secret": bool(AUTH_SECRET) or not REQUIRE_AUTH,
        "kv_backend": KV_BACKEND in ("sqlite", "memory", "s3"),
        "decision_policy": DECISION_POLICY in ("service", "strict"),
    }
    if KV_BACKEND == "s3":
        checks["s3_bucket"] = bool(S3_BUCKET)
    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("CERTVERIFY_DEBUG", "").lower() in ("1", "true", "yes")
