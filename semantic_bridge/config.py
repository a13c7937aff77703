"""Configuration for the Semantic Bridge.

Simple configuration loader from environment variables. The CLI calls
load_dotenv() before the first load, so a local .env file works too.
"""

import os
from functools import lru_cache
from typing import Any, Optional


# =============================================================================
# Environment Variable Configuration
# =============================================================================


@lru_cache(maxsize=1)
def load_config() -> dict:
    """
    Load bridge configuration from environment variables.

    Returns:
        dict with configuration values
    """
    return {
        # Federation relay (WebSocket)
        "FEDERATION_HOST": os.getenv("FEDERATION_HOST", "localhost"),
        "FEDERATION_PORT": int(os.getenv("FEDERATION_PORT", "8810")),

        # Health/stats HTTP surface
        "BRIDGE_HOST": os.getenv("BRIDGE_HOST", "0.0.0.0"),
        "BRIDGE_PORT": int(os.getenv("BRIDGE_PORT", "8811")),

        # Generation backend (Ollama-compatible)
        "OLLAMA_URL": os.getenv("OLLAMA_URL", "http://localhost:11434"),
        "SEMANTIC_MODEL": os.getenv("SEMANTIC_MODEL", "mistral"),
        "OLLAMA_TIMEOUT": float(os.getenv("OLLAMA_TIMEOUT", "60.0")),

        # Reconnect loop. A backoff of 1.0 keeps the delay fixed.
        "RECONNECT_DELAY": float(os.getenv("RECONNECT_DELAY", "5.0")),
        "RECONNECT_BACKOFF": float(os.getenv("RECONNECT_BACKOFF", "1.0")),
        "MAX_RECONNECT_DELAY": float(os.getenv("MAX_RECONNECT_DELAY", "60.0")),

        "STATS_INTERVAL": float(os.getenv("STATS_INTERVAL", "30.0")),

        # 0 = unbounded (entries live for the process lifetime)
        "CACHE_CAPACITY": int(os.getenv("CACHE_CAPACITY", "0")),
    }


def get_config_value(key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Get a single configuration value."""
    config = load_config()
    return config.get(key, default)

