"""Health check for the verification service and its dependencies."""

import logging
from typing import Any, Dict

from . import __version__
from .config import ENV
from .util import generate_id, utc_now_iso

logger = logging.getLogger(__name__)

PROBE_TTL_SECONDS = 60


def _check_database(store) -> Dict[str, Any]:
    try:
        return {"ok": store.ping()}
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        return {"ok": False, "error": "database unreachable"}


def _check_kv_store(kv_store) -> Dict[str, Any]:
    key = f"health:probe:{generate_id(4)}"
    try:
        kv_store.put(key, "ok", PROBE_TTL_SECONDS)
        ok = kv_store.get(key) == "ok"
        kv_store.delete(key)
        return {"ok": ok}
    except Exception as e:
        logger.warning("Key-value store health check failed: %s", e)
        return {"ok": False, "error": "key-value store unreachable"}


def perform_health_check(services) -> Dict[str, Any]:
    """
    Probe configuration and backing stores.

    Status is ``error`` when the database is down, ``degraded`` when any
    other check fails, ``ok`` otherwise.
    """
    checks = {
        "analysis_api_key": {"ok": bool(services.api_key)},
        "auth_secret": {
            "ok": bool(services.auth_secret) or not services.require_auth,
            "required": services.require_auth,
        },
        "database": _check_database(services.store),
        "kv_store": _check_kv_store(services.kv_store),
    }

    if not checks["database"]["ok"]:
        status = "error"
    elif all(check["ok"] for check in checks.values()):
        status = "ok"
    else:
        status = "degraded"

    return {
        "status": status,
        "version": __version__,
        "environment": ENV,
        "timestamp": utc_now_iso(),
        "checks": checks,
    }
