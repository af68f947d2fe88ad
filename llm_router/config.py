"""Configuration for the LLM router.

Provider settings are read once from the environment (and a ``.env`` file)
into immutable config objects that are handed to the orchestrator.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from .health import DEFAULT_COOLDOWN_MS, DEFAULT_MAX_FAILURES_BEFORE_COOLDOWN
from .providers.base import ProviderConfig, ProviderIdentity

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
MAX_NUMBERED_KEYS = 3

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

_PLACEHOLDER_PATTERNS = [
    re.compile(r"^your[_-]", re.IGNORECASE),
    re.compile(r"api[_-]?key[_-]?here", re.IGNORECASE),
    re.compile(r"^<.*>$"),
    re.compile(r"^(changeme|change[_-]me|replace[_-]?me|placeholder|todo|none|null)$", re.IGNORECASE),
    re.compile(r"^(sk-)?x{4,}$", re.IGNORECASE),
    re.compile(r"^\.\.\.$"),
]


class ConfigurationError(ValueError):
    """Raised when a setting is present but malformed."""


@dataclass(frozen=True)
class ProviderDefaults:
    """Built-in defaults for one provider."""

    env_prefix: str
    model: str
    max_tokens: int = 150
    timeout_ms: int = 30000
    priority: int = 1
    base_url: Optional[str] = None
    requires_api_key: bool = True


PROVIDER_DEFAULTS: Dict[ProviderIdentity, ProviderDefaults] = {
    ProviderIdentity.OPENAI: ProviderDefaults(
        env_prefix="OPENAI",
        model="gpt-3.5-turbo",
        priority=1,
    ),
    ProviderIdentity.ANTHROPIC: ProviderDefaults(
        env_prefix="ANTHROPIC",
        model="claude-3-sonnet-20240229",
        priority=2,
    ),
    ProviderIdentity.GEMINI: ProviderDefaults(
        env_prefix="GEMINI",
        model="gemini-2.0-flash-exp",
        priority=1,
    ),
    ProviderIdentity.HUGGINGFACE: ProviderDefaults(
        env_prefix="HUGGINGFACE",
        model="Guilherme34/Psychologist-3b",
        max_tokens=256,
        priority=1,
    ),
    ProviderIdentity.OLLAMA: ProviderDefaults(
        env_prefix="OLLAMA",
        model="llama3",
        timeout_ms=60000,
        priority=3,
        base_url="http://localhost:11434",
        requires_api_key=False,
    ),
}


@dataclass(frozen=True)
class RouterConfig:
    """Routing settings plus every usable provider configuration."""

    providers: Mapping[ProviderIdentity, ProviderConfig] = field(default_factory=dict)
    provider_priority: Tuple[ProviderIdentity, ...] = ()
    fallback_enabled: bool = True
    max_failures_before_cooldown: int = DEFAULT_MAX_FAILURES_BEFORE_COOLDOWN
    cooldown_ms: int = DEFAULT_COOLDOWN_MS
    verbose_logging: bool = False


# ============================================================================
# Parsing helpers
# ============================================================================

def is_placeholder(value: str) -> bool:
    """Return True for credentials copied unfilled from a template."""
    stripped = value.strip()
    if not stripped:
        return True
    return any(pattern.search(stripped) for pattern in _PLACEHOLDER_PATTERNS)


def _get_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _get_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def _get_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def collect_api_keys(environ: Mapping[str, str], env_prefix: str) -> Tuple[str, ...]:
    """Collect credentials for a provider in a stable order.

    Numbered keys (``PREFIX_API_KEY_1`` .. ``_3``) come first, then the bare
    ``PREFIX_API_KEY``. Placeholders and duplicates are dropped.
    """
    names = [f"{env_prefix}_API_KEY_{i}" for i in range(1, MAX_NUMBERED_KEYS + 1)]
    names.append(f"{env_prefix}_API_KEY")

    keys: List[str] = []
    for name in names:
        value = environ.get(name)
        if value is None:
            continue
        if is_placeholder(value):
            logger.debug(f"Ignoring placeholder value for {name}")
            continue
        value = value.strip()
        if value not in keys:
            keys.append(value)
    return tuple(keys)


# ============================================================================
# Loaders
# ============================================================================

def load_provider_configs(
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[ProviderIdentity, ProviderConfig]:
    """Build one ProviderConfig per usable provider.

    Providers without valid credentials are left out. The local runtime is
    only included when OLLAMA_ENABLED is set.

    Args:
        environ: Settings to read; defaults to ``os.environ``.

    Returns:
        Configs keyed by identity, in ProviderIdentity declaration order.

    Raises:
        ConfigurationError: If a numeric or boolean setting is malformed.
    """
    env = os.environ if environ is None else environ

    temperature = _get_float(env, "AI_TEMPERATURE", DEFAULT_TEMPERATURE)

    configs: Dict[ProviderIdentity, ProviderConfig] = {}
    for identity in ProviderIdentity:
        defaults = PROVIDER_DEFAULTS[identity]
        prefix = defaults.env_prefix

        if defaults.requires_api_key:
            api_keys = collect_api_keys(env, prefix)
            if not api_keys:
                continue
        else:
            if not _get_bool(env, f"{prefix}_ENABLED", False):
                logger.debug(f"{identity.value} not enabled, set {prefix}_ENABLED=true to use it")
                continue
            api_keys = ()

        configs[identity] = ProviderConfig(
            identity=identity,
            model=(env.get(f"{prefix}_MODEL") or defaults.model).strip(),
            api_keys=api_keys,
            max_tokens=_get_int(env, "AI_MAX_TOKENS", defaults.max_tokens),
            temperature=temperature,
            timeout_ms=_get_int(env, "AI_TIMEOUT", defaults.timeout_ms),
            priority=_get_int(env, f"{prefix}_PRIORITY", defaults.priority),
            base_url=env.get(f"{prefix}_BASE_URL") or defaults.base_url,
        )

    return configs


def parse_provider_priority(
    raw: Optional[str],
    providers: Mapping[ProviderIdentity, ProviderConfig],
) -> Tuple[ProviderIdentity, ...]:
    """Resolve the provider try-order.

    An explicit comma-separated list wins; unknown names are skipped. Without
    one, configured providers are ordered by priority weight, then by
    declaration order.
    """
    if raw and raw.strip():
        order: List[ProviderIdentity] = []
        for name in raw.split(","):
            name = name.strip().lower()
            if not name:
                continue
            try:
                identity = ProviderIdentity(name)
            except ValueError:
                logger.warning(f"Unknown provider in AI_PROVIDER_PRIORITY: {name}")
                continue
            if identity not in order:
                order.append(identity)
        return tuple(order)

    declared = list(ProviderIdentity)
    return tuple(
        sorted(providers, key=lambda identity: (providers[identity].priority, declared.index(identity)))
    )


def load_router_config(environ: Optional[Mapping[str, str]] = None) -> RouterConfig:
    """Build the full router configuration.

    Args:
        environ: Settings to read; defaults to ``os.environ``.

    Raises:
        ConfigurationError: If a setting is malformed or out of range.
    """
    env = os.environ if environ is None else environ
    providers = load_provider_configs(env)

    max_failures = _get_int(
        env,
        "AI_PROVIDER_MAX_FAILURES_BEFORE_COOLDOWN",
        DEFAULT_MAX_FAILURES_BEFORE_COOLDOWN,
    )
    if max_failures < 1:
        raise ConfigurationError("AI_PROVIDER_MAX_FAILURES_BEFORE_COOLDOWN must be at least 1")

    cooldown_ms = _get_int(env, "AI_PROVIDER_COOLDOWN_MS", DEFAULT_COOLDOWN_MS)
    if cooldown_ms < 0:
        raise ConfigurationError("AI_PROVIDER_COOLDOWN_MS must not be negative")

    return RouterConfig(
        providers=providers,
        provider_priority=parse_provider_priority(env.get("AI_PROVIDER_PRIORITY"), providers),
        fallback_enabled=_get_bool(env, "AI_ENABLE_FALLBACK", True),
        max_failures_before_cooldown=max_failures,
        cooldown_ms=cooldown_ms,
        verbose_logging=_get_bool(env, "AI_VERBOSE_LOGGING", False),
    )


@lru_cache
def get_settings() -> RouterConfig:
    """Get cached router configuration from the process environment."""
    return load_router_config()
