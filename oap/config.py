"""
Configuration module for the OAP engine.

Centralizes configuration with environment variable support
and validation. Values are read once at import.
"""

import json
import os
from pathlib import Path
from typing import Dict, Optional

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("OAP_ENV", "dev")  # dev|stage|prod

# Registry identity
REGISTRY_ISSUER = os.getenv("OAP_REGISTRY_ISSUER", "https://api.aport.io")
REGISTRY_KID = os.getenv("OAP_REGISTRY_KID", "oap:registry:key-2025-01")
SIGNING_KEY_PATH = os.getenv("OAP_SIGNING_KEY_PATH", "secrets/oap_registry_key.json")

# Key resolution
KEY_CACHE_TTL = int(os.getenv("OAP_KEY_CACHE_TTL", "300"))
KEY_FETCH_TIMEOUT = float(os.getenv("OAP_KEY_FETCH_TIMEOUT", "2.0"))
KEY_FETCH_RETRIES = int(os.getenv("OAP_KEY_FETCH_RETRIES", "2"))

# Decisions (seconds)
DECISION_TTL = int(os.getenv("OAP_DECISION_TTL", "60"))

# Logging
LOG_LEVEL = os.getenv("OAP_LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("OAP_LOG_JSON", "true").lower() in ("1", "true", "yes")


# ============================================================
# Key Files
# ============================================================

def load_registry_key(path: Optional[str] = None):
    """
    Load a registry key file.

    The file holds {"issuer", "kid", "publicKey", "privateKey"} as written
    by ``oap generate-key``. Missing issuer/kid fall back to configuration.
    """
    from .signing import RegistryKey

    with open(path or SIGNING_KEY_PATH, "r", encoding="utf-8") as f:
        raw = json.load(f)

    raw.setdefault("issuer", REGISTRY_ISSUER)
    raw.setdefault("kid", REGISTRY_KID)
    return RegistryKey.from_dict(raw)


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate that required configuration files exist.
    Returns dict of name -> exists.
    """
    paths = {"signing_key": SIGNING_KEY_PATH}
    return {name: Path(path).exists() for name, path in paths.items()}


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("OAP_DEBUG", "").lower() in ("1", "true", "yes")
