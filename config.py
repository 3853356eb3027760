"""
Configuration module for codeloop.
Handles environment variables, model specifications, and engine settings.
"""

import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Tuple
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "8192"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "")) if os.getenv("TEMPERATURE") else None
    # Comma-separated model ids tried in order when the primary hits a transient error
    fallback_model_ids: str = os.getenv("FALLBACK_MODEL_IDS", "")

    def fallbacks(self) -> List[str]:
        return [m.strip() for m in self.fallback_model_ids.split(",") if m.strip()]


@dataclass
class EngineConfig:
    """Turn-loop configuration"""
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "codeloop.log")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    max_iterations: int = int(os.getenv("MAX_ITERATIONS", "10"))
    # Count-based pruning
    max_messages: int = int(os.getenv("MAX_MESSAGES", "12"))
    keep_recent: int = int(os.getenv("KEEP_RECENT_MESSAGES", "6"))
    # Token-based pruning
    prune_target_fraction: float = float(os.getenv("PRUNE_TARGET_FRACTION", "0.7"))
    protect_recent: int = int(os.getenv("PROTECT_RECENT_MESSAGES", "2"))
    # Read-only result cache
    cache_ttl: float = float(os.getenv("CACHE_TTL", "120"))
    cache_max_entries: int = int(os.getenv("CACHE_MAX_ENTRIES", "50"))
    # Truncation for read-style tool output
    truncate_max_chars: int = int(os.getenv("TRUNCATE_MAX_CHARS", "3000"))
    truncate_max_lines: int = int(os.getenv("TRUNCATE_MAX_LINES", "100"))
    # Session ceilings; 0 disables
    max_tokens_per_session: int = int(os.getenv("MAX_TOKENS_PER_SESSION", "0"))
    max_cost_per_session: float = float(os.getenv("MAX_COST_PER_SESSION", "0"))
    # Timeouts (seconds); chat_timeout falls back to the provider table
    tool_timeout: float = float(os.getenv("TOOL_TIMEOUT", "60"))
    chat_timeout: Optional[float] = float(os.getenv("CHAT_TIMEOUT", "")) if os.getenv("CHAT_TIMEOUT") else None
    # Post-edit related tests
    run_related_tests: bool = _env_bool("RUN_RELATED_TESTS", "true")
    related_test_timeout: int = int(os.getenv("RELATED_TEST_TIMEOUT", "30"))
    # Git-backed checkpoints around destructive batches
    checkpoints_enabled: bool = _env_bool("CHECKPOINTS_ENABLED", "true")
    # Approve confirmed tools when no confirmation prompt is wired
    auto_approve: bool = _env_bool("AUTO_APPROVE", "false")


# ============================================================
# Model Specifications
# Pricing is USD per million tokens (input, output).
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-opus-4-5-20251101-v1:0",
        "base_id": "anthropic.claude-opus-4-5-20251101-v1:0",
        "name": "Claude Opus 4.5",
        "provider": "anthropic",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "pricing": (5.0, 25.0),
    },
    {
        "id": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        "base_id": "anthropic.claude-sonnet-4-5-20250929-v1:0",
        "name": "Claude Sonnet 4.5",
        "provider": "anthropic",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "pricing": (3.0, 15.0),
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "base_id": "anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "provider": "anthropic",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "pricing": (1.0, 5.0),
    },
    {
        "id": "us.anthropic.claude-sonnet-4-20250514-v1:0",
        "base_id": "anthropic.claude-sonnet-4-20250514-v1:0",
        "name": "Claude Sonnet 4",
        "provider": "anthropic",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "pricing": (3.0, 15.0),
    },
    {
        "id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "base_id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "name": "Claude 3.5 Haiku",
        "provider": "anthropic",
        "context_window": 200000,
        "max_output_tokens": 8192,
        "pricing": (0.8, 4.0),
    },
    {
        "id": "meta.llama3-1-70b-instruct-v1:0",
        "base_id": "meta.llama3-1-70b-instruct-v1:0",
        "name": "Llama 3.1 70B",
        "provider": "meta",
        "context_window": 128000,
        "max_output_tokens": 2048,
        "pricing": (0.72, 0.72),
    },
]

# Model-call timeouts (seconds) by provider; local runtimes are slow to first token
CHAT_TIMEOUTS: Dict[str, float] = {
    "ollama": 300.0,
    "anthropic": 90.0,
    "gemini": 60.0,
}
DEFAULT_CHAT_TIMEOUT = 60.0

DEFAULT_CONTEXT_WINDOW = 200000


# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
engine_config = EngineConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id or model.get("base_id") == model_id:
            return model
    return None


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Get the full configuration for a model. For unknown model IDs returns a minimal
    fallback dict. Callers should use .get(key, sensible_default) for any key they need."""
    model = get_model_by_id(model_id)
    if model:
        return model
    provider = "ollama" if model_id.startswith("ollama/") else "anthropic"
    return {
        "id": model_id,
        "base_id": model_id,
        "name": model_id,
        "provider": provider,
        "context_window": DEFAULT_CONTEXT_WINDOW,
        "max_output_tokens": 4096,
        "pricing": (0.0, 0.0),
    }


def get_context_window(model_id: str) -> int:
    return get_model_config(model_id).get("context_window", DEFAULT_CONTEXT_WINDOW)


def get_provider(model_id: str) -> str:
    return get_model_config(model_id).get("provider", "anthropic")


def get_pricing(model_id: str) -> Tuple[float, float]:
    """(input, output) USD per million tokens"""
    return tuple(get_model_config(model_id).get("pricing", (0.0, 0.0)))


def get_chat_timeout(model_id: str, override: Optional[float] = None) -> float:
    if override:
        return override
    return CHAT_TIMEOUTS.get(get_provider(model_id), DEFAULT_CHAT_TIMEOUT)


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
