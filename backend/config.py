"""
Runtime Configuration for Parley.

Provides a singleton RuntimeConfig class holding every deployment knob
(LLM endpoint, retry budget, MCP, anonymous chat lifecycle, auth, rate limits).
Values default from environment variables and a subset can be adjusted at
runtime via update().

Usage:
    from config import runtime_config
    attempts = runtime_config.llm_retry_attempts
    runtime_config.update(mcp_tool_timeout=10.0)
"""

import os
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Any, List
from threading import Lock

logger = logging.getLogger(__name__)

# Gemini exposes an OpenAI-compatible surface, so the openai SDK talks to it directly
DEFAULT_LLM_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"

DEFAULT_MODELS = "gemini-2.5-flash,gemini-2.5-pro"

# Vendor phrases that mark a failure as transient when no HTTP status is available
DEFAULT_RETRY_PATTERNS = (
    "503 Service Unavailable,The model is overloaded,Rate limit exceeded,"
    "Quota exceeded,Internal server error,Bad Gateway,Gateway Timeout,"
    "Service Unavailable,Too Many Requests"
)


def _first_env(*keys: str, default: str) -> str:
    """Return the first non-empty environment value from keys, else default."""
    for key in keys:
        value = os.environ.get(key, "").strip()
        if value:
            return value
    return default


def _env_bool(key: str, default: str = "false") -> bool:
    return os.environ.get(key, default).strip().lower() in ("1", "true", "yes", "on")


def _split_csv(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class RuntimeConfig:
    """
    Singleton configuration for runtime-adjustable parameters.

    All values have defaults from environment variables, but can be
    changed at runtime via the update() method.
    """

    # LLM endpoint
    llm_base_url: str = field(
        default_factory=lambda: _first_env("LLM_BASE_URL", default=DEFAULT_LLM_BASE_URL)
    )
    llm_api_key: str = field(
        default_factory=lambda: _first_env("LLM_API_KEY", "GEMINI_API_KEY", default="")
    )
    llm_timeout: float = field(default_factory=lambda: float(os.environ.get("LLM_TIMEOUT", "120")))

    # Model selection (allow-list + deployment default)
    model_default: str = field(
        default_factory=lambda: _first_env("LLM_MODEL", "GEMINI_MODEL", default="gemini-2.5-flash")
    )
    models_available: List[str] = field(
        default_factory=lambda: _split_csv(_first_env("LLM_MODELS", default=DEFAULT_MODELS))
    )

    # Sampling, fixed per deployment
    temperature: float = field(default_factory=lambda: float(os.environ.get("LLM_TEMPERATURE", "0.7")))
    top_p: float = field(default_factory=lambda: float(os.environ.get("LLM_TOP_P", "0.8")))
    top_k: int = field(default_factory=lambda: int(os.environ.get("LLM_TOP_K", "40")))
    max_output_tokens: int = field(
        default_factory=lambda: int(os.environ.get("LLM_MAX_OUTPUT_TOKENS", "2048"))
    )

    # Retry/backoff for single-shot completions
    llm_retry_attempts: int = field(
        default_factory=lambda: int(_first_env("LLM_RETRY_ATTEMPTS", "GEMINI_RETRY_ATTEMPTS", default="3"))
    )
    llm_retry_delay_ms: int = field(
        default_factory=lambda: int(_first_env("LLM_RETRY_DELAY", "GEMINI_RETRY_DELAY", default="1000"))
    )
    llm_retry_max_delay_ms: int = field(
        default_factory=lambda: int(os.environ.get("LLM_RETRY_MAX_DELAY", "30000"))
    )
    llm_retry_patterns: List[str] = field(
        default_factory=lambda: _split_csv(os.environ.get("LLM_RETRY_PATTERNS", DEFAULT_RETRY_PATTERNS))
    )
    llm_retry_statuses: List[int] = field(
        default_factory=lambda: [
            int(s) for s in _split_csv(os.environ.get("LLM_RETRY_STATUSES", "429,500,502,503,504"))
        ]
    )

    # MCP tool provider
    mcp_enabled: bool = field(default_factory=lambda: _env_bool("MCP_ENABLED"))
    mcp_server_url: str = field(
        default_factory=lambda: os.environ.get("MCP_SERVER_URL", "http://localhost:8000/mcp")
    )
    mcp_oauth_enabled: bool = field(default_factory=lambda: _env_bool("MCP_OAUTH_ENABLED"))
    mcp_tool_timeout: float = field(
        default_factory=lambda: float(os.environ.get("MCP_TOOL_TIMEOUT", "30"))
    )
    mcp_max_corrections: int = field(
        default_factory=lambda: int(os.environ.get("MCP_MAX_CORRECTIONS", "2"))
    )

    # Anonymous (ephemeral) chats
    anonymous_chat_ttl: float = field(
        default_factory=lambda: float(os.environ.get("ANONYMOUS_CHAT_TTL", "3600"))
    )
    anonymous_sweep_interval: float = field(
        default_factory=lambda: float(os.environ.get("ANONYMOUS_SWEEP_INTERVAL", "1800"))
    )
    anonymous_expiry_basis: str = field(
        default_factory=lambda: os.environ.get("ANONYMOUS_EXPIRY_BASIS", "created").strip().lower()
    )

    # History paging
    history_default_limit: int = field(
        default_factory=lambda: int(os.environ.get("HISTORY_DEFAULT_LIMIT", "50"))
    )

    # Auth gate
    jwt_secret: str = field(default_factory=lambda: os.environ.get("JWT_SECRET", ""))
    jwt_algorithm: str = field(default_factory=lambda: os.environ.get("JWT_ALGORITHM", "HS256"))

    # Persistence (empty URL selects the in-memory store)
    database_url: str = field(default_factory=lambda: os.environ.get("DATABASE_URL", "").strip())
    database_pool_size: int = field(
        default_factory=lambda: int(os.environ.get("DATABASE_POOL_SIZE", "10"))
    )

    # Rate limiting (requests per window, per client IP)
    rate_limit_window: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_WINDOW", "900"))
    )
    rate_limit_anonymous: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_ANONYMOUS", "50"))
    )
    rate_limit_general: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_GENERAL", "1000"))
    )

    # Server
    cors_origins: List[str] = field(
        default_factory=lambda: _split_csv(os.environ.get("CORS_ORIGINS", "http://localhost:3000"))
    )
    parley_env: str = field(default_factory=lambda: os.environ.get("PARLEY_ENV", "development"))

    # Internal state
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)
    _update_count: int = field(default=0, repr=False)

    # Validation ranges for numeric config values
    _VALIDATION_RANGES: Dict[str, tuple] = field(default_factory=lambda: {
        "temperature": (0.0, 2.0),
        "top_p": (0.0, 1.0),
        "top_k": (1, 200),
        "max_output_tokens": (64, 32768),
        "llm_retry_attempts": (0, 10),
        "llm_retry_delay_ms": (0, 60000),
        "mcp_tool_timeout": (1.0, 600.0),
        "mcp_max_corrections": (0, 5),
        "anonymous_chat_ttl": (60.0, 86400.0),
        "anonymous_sweep_interval": (10.0, 86400.0),
        "rate_limit_anonymous": (1, 100000),
        "rate_limit_general": (1, 100000),
    }, repr=False, compare=False)

    # Never adjustable at runtime
    _READ_ONLY = frozenset({"jwt_secret", "llm_api_key", "database_url"})

    def update(self, **kwargs) -> Dict[str, Any]:
        """
        Update configuration values at runtime.

        Args:
            **kwargs: Key-value pairs to update (e.g., mcp_tool_timeout=10.0)

        Returns:
            Dict with 'updated' (changed keys) and 'ignored' (unknown keys)
        """
        updated = []
        ignored = []

        with self._lock:
            for key, value in kwargs.items():
                if key.startswith("_") or key in self._READ_ONLY:
                    ignored.append(key)
                    continue

                if not hasattr(self, key):
                    ignored.append(key)
                    logger.warning(f"Config ignored unknown key: {key}")
                    continue

                if key == "model_default" and isinstance(value, str):
                    if not re.match(r"^[a-zA-Z0-9._:/-]+$", value) or len(value) > 100:
                        ignored.append(key)
                        logger.warning(f"Config rejected invalid model name: {key}={value!r}")
                        continue

                if key == "anonymous_expiry_basis" and value not in ("created", "activity"):
                    ignored.append(key)
                    logger.warning(f"Config rejected {key}={value!r} (must be 'created' or 'activity')")
                    continue

                if key in self._VALIDATION_RANGES:
                    lo, hi = self._VALIDATION_RANGES[key]
                    if not (lo <= value <= hi):
                        ignored.append(key)
                        logger.warning(f"Config rejected {key}={value} (must be {lo}-{hi})")
                        continue

                old_value = getattr(self, key)
                setattr(self, key, value)
                updated.append(key)
                logger.info(f"Config updated: {key} = {value} (was {old_value})")

            self._update_count += 1

        return {"updated": updated, "ignored": ignored, "update_count": self._update_count}

    def get_llm_params(self) -> Dict[str, Any]:
        """Get sampling parameters for OpenAI API calls."""
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_output_tokens,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Export current config as dict (excludes internal fields and secrets)."""
        from dataclasses import fields as dataclass_fields

        result = {}
        for field_info in dataclass_fields(self):
            name = field_info.name
            if name.startswith("_") or name in ("jwt_secret", "llm_api_key"):
                continue
            result[name] = getattr(self, name)
        return result


# Singleton instance
runtime_config = RuntimeConfig()


def get_config() -> RuntimeConfig:
    """Get the singleton config instance."""
    return runtime_config
