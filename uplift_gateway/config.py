"""Configuration loader for the AI proxy gateway.

Reads a JSON config file containing provider definitions, per-operation
rate-limit rules, validation ceilings, and the identity/store backends.
API keys are resolved from environment variables and never appear in the file.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

PROVIDER_KINDS = ("openai", "anthropic", "gemini")


@dataclass(frozen=True)
class ProviderConfig:
    """Static descriptor for a single AI backend."""

    name: str
    kind: str
    base_url: str
    api_key_env: str
    default_model: str
    max_tokens: int = 4000

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment variable."""
        return os.getenv(self.api_key_env)


@dataclass(frozen=True)
class RateLimitRule:
    """Rolling-window limits for one operation."""

    base: int
    burst: int
    window_seconds: float = 60.0


@dataclass
class ValidationLimits:
    """Ceilings applied to the inbound message list."""

    max_messages: int = 50
    max_content_chars: int = 4000
    max_total_chars: int = 100000


@dataclass
class AuthConfig:
    """Identity verification configuration.

    ``mode`` is ``firebase`` (verify Firebase ID tokens for ``project_id``) or
    ``static`` (sha256 token hash -> user id, for local development).
    """

    mode: str = "firebase"
    project_id: Optional[str] = None
    static_tokens: Dict[str, str] = field(default_factory=dict)


@dataclass
class StoreConfig:
    """Shared document store holding users, rate-limit windows and logs."""

    backend: str = "memory"
    project_id: Optional[str] = None
    users_collection: str = "users"
    credits_field: str = "stats.aiCredits"
    rate_limits_collection: str = "rateLimits"
    interactions_collection: str = "aiInteractions"
    # Initial balances for the memory backend only.
    seed_balances: Dict[str, int] = field(default_factory=dict)


@dataclass
class InteractionLogConfig:
    """Where best-effort interaction records are written."""

    sink: str = "memory"
    path: str = "logs/interactions.jsonl"
    drain_timeout_seconds: float = 5.0


def _default_rate_limits() -> Dict[str, RateLimitRule]:
    return {
        "ai": RateLimitRule(base=10, burst=20),
        "auth": RateLimitRule(base=5, burst=10),
        "goals": RateLimitRule(base=20, burst=40),
        "default": RateLimitRule(base=30, burst=60),
    }


def _default_providers() -> Dict[str, ProviderConfig]:
    defaults: List[ProviderConfig] = [
        ProviderConfig(
            name="gemini",
            kind="gemini",
            base_url="https://generativelanguage.googleapis.com/v1beta/models",
            api_key_env="GEMINI_API_KEY",
            default_model="gemini-pro",
        ),
        ProviderConfig(
            name="claude",
            kind="anthropic",
            base_url="https://api.anthropic.com/v1",
            api_key_env="CLAUDE_API_KEY",
            default_model="claude-3-sonnet-20240229",
        ),
        ProviderConfig(
            name="perplexity",
            kind="openai",
            base_url="https://api.perplexity.ai",
            api_key_env="PERPLEXITY_API_KEY",
            default_model="llama-3.1-sonar-small-128k-online",
        ),
        ProviderConfig(
            name="deepseek",
            kind="openai",
            base_url="https://api.deepseek.com/v1",
            api_key_env="DEEPSEEK_API_KEY",
            default_model="deepseek-chat",
        ),
        ProviderConfig(
            name="xai",
            kind="openai",
            base_url="https://api.x.ai/v1",
            api_key_env="XAI_API_KEY",
            default_model="grok-beta",
        ),
        ProviderConfig(
            name="openai",
            kind="openai",
            base_url="https://api.openai.com/v1",
            api_key_env="OPENAI_API_KEY",
            default_model="gpt-4",
        ),
    ]
    return {p.name: p for p in defaults}


@dataclass
class GatewayConfig:
    """Top-level gateway configuration."""

    providers: Dict[str, ProviderConfig] = field(default_factory=_default_providers)
    rate_limits: Dict[str, RateLimitRule] = field(default_factory=_default_rate_limits)
    validation: ValidationLimits = field(default_factory=ValidationLimits)
    auth: AuthConfig = field(default_factory=AuthConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    interactions: InteractionLogConfig = field(default_factory=InteractionLogConfig)
    provider_timeout_seconds: float = 30.0
    log_file: str = "logs/gateway.log"


def _parse_providers(raw: Dict[str, Any]) -> Dict[str, ProviderConfig]:
    providers: Dict[str, ProviderConfig] = {}
    for name, prov in raw.items():
        kind = prov.get("kind", "openai")
        if kind not in PROVIDER_KINDS:
            raise ValueError(
                "Provider '{}' has unknown kind '{}' (expected one of {})".format(
                    name, kind, ", ".join(PROVIDER_KINDS)
                )
            )
        key = name.lower()
        providers[key] = ProviderConfig(
            name=key,
            kind=kind,
            base_url=prov["base_url"],
            api_key_env=prov.get("api_key_env", "{}_API_KEY".format(name.upper())),
            default_model=prov.get("default_model", ""),
            max_tokens=int(prov.get("max_tokens", 4000)),
        )
    return providers


def _parse_rate_limits(raw: Dict[str, Any]) -> Dict[str, RateLimitRule]:
    rules = _default_rate_limits()
    for operation, spec in raw.items():
        base = int(spec["base"])
        burst = int(spec.get("burst", base))
        window = float(spec.get("window_seconds", 60.0))
        if base <= 0 or window <= 0:
            raise ValueError(
                "Rate limit for '{}' must have positive base and window".format(
                    operation
                )
            )
        if burst < base:
            raise ValueError(
                "Rate limit for '{}' has burst {} below base {}".format(
                    operation, burst, base
                )
            )
        rules[operation] = RateLimitRule(base=base, burst=burst, window_seconds=window)
    return rules


def load_config(path: Union[str, Path]) -> GatewayConfig:
    """Load gateway configuration from a JSON file.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved GatewayConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw: Dict[str, Any] = json.load(f)

    config = GatewayConfig()

    if "providers" in raw:
        config.providers = _parse_providers(raw["providers"])

    config.rate_limits = _parse_rate_limits(raw.get("rate_limits", {}))

    validation_raw = raw.get("validation", {})
    config.validation = ValidationLimits(
        max_messages=validation_raw.get("max_messages", 50),
        max_content_chars=validation_raw.get("max_content_chars", 4000),
        max_total_chars=validation_raw.get("max_total_chars", 100000),
    )

    auth_raw = raw.get("auth", {})
    mode = auth_raw.get("mode", "firebase")
    if mode not in ("firebase", "static"):
        raise ValueError("Unknown auth mode: {}".format(mode))
    project_id = auth_raw.get("project_id")
    # Without a project id the token audience would go unchecked.
    if mode == "firebase" and not project_id:
        raise ValueError("auth.project_id is required when auth mode is firebase")
    config.auth = AuthConfig(
        mode=mode,
        project_id=project_id,
        static_tokens=auth_raw.get("static_tokens", {}),
    )

    store_raw = raw.get("store", {})
    backend = store_raw.get("backend", "memory")
    if backend not in ("memory", "firestore"):
        raise ValueError("Unknown store backend: {}".format(backend))
    config.store = StoreConfig(
        backend=backend,
        project_id=store_raw.get("project_id"),
        users_collection=store_raw.get("users_collection", "users"),
        credits_field=store_raw.get("credits_field", "stats.aiCredits"),
        rate_limits_collection=store_raw.get("rate_limits_collection", "rateLimits"),
        interactions_collection=store_raw.get(
            "interactions_collection", "aiInteractions"
        ),
        seed_balances={k: int(v) for k, v in store_raw.get("seed_balances", {}).items()},
    )

    interactions_raw = raw.get("interactions", {})
    sink = interactions_raw.get("sink", "memory")
    if sink not in ("memory", "jsonl", "firestore"):
        raise ValueError("Unknown interaction sink: {}".format(sink))
    config.interactions = InteractionLogConfig(
        sink=sink,
        path=interactions_raw.get("path", "logs/interactions.jsonl"),
        drain_timeout_seconds=interactions_raw.get("drain_timeout_seconds", 5.0),
    )

    config.provider_timeout_seconds = float(raw.get("provider_timeout_seconds", 30.0))
    config.log_file = raw.get("log_file", "logs/gateway.log")

    return config
