"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < env vars < CLI flags < per-session overrides
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any

import yaml

from modelbridge.llm.repair import DEFAULT_ANALYSIS_MARKERS, DEFAULT_FALLBACK_REQUEST
from modelbridge.types import ConfigError

DEFAULT_CONFIG_PATH = "~/.modelbridge/config.yaml"


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class LLMProviderConfig:
    name: str = "openai"
    backend: str = "openai"
    model: str = "gpt-4o"
    api_base: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    max_context_tokens: int = 128_000
    max_output_tokens: int = 4_096
    temperature: float = 0.0
    timeout_seconds: int = 120
    extra: dict = field(default_factory=dict)


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0


@dataclass
class RepairConfig:
    min_orphans: int = 3
    min_orphan_ratio: float = 0.8
    analysis_markers: list[str] = field(default_factory=lambda: list(DEFAULT_ANALYSIS_MARKERS))
    fallback_request: str = DEFAULT_FALLBACK_REQUEST


@dataclass
class CacheConfig:
    schema_cache_size: int = 256


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class ModelBridgeConfig:
    llm: LLMProviderConfig = field(default_factory=LLMProviderConfig)
    providers: dict[str, LLMProviderConfig] = field(default_factory=dict)
    retry: RetryConfig = field(default_factory=RetryConfig)
    repair: RepairConfig = field(default_factory=RepairConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    # ----- per-session overrides (applied last) ----
    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Set a per-session override using dot notation (e.g. 'llm.model')."""
        self._overrides[dotpath] = value
        _apply_dotpath(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def provider_sections(self) -> list[LLMProviderConfig]:
        """Named provider sections other than the primary ``llm`` one."""
        return [p for name, p in self.providers.items() if name != self.llm.name]

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("_overrides", None)
        return d


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base, returning a new dict."""
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _coerce(value: str, target_type: type) -> Any:
    """Coerce a string env value to the target type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    if target_type is list:
        return [s.strip() for s in value.split(",") if s.strip()]
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    if not isinstance(raw, dict):
        raise ConfigError(f"{cls.__name__} section must be a mapping, got {type(raw).__name__}")
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in raw.items() if k in valid_fields}
    return cls(**filtered)


def _build_providers(raw: dict) -> dict[str, LLMProviderConfig]:
    providers: dict[str, LLMProviderConfig] = {}
    for name, section in (raw or {}).items():
        section = dict(section or {})
        section.setdefault("name", name)
        # A section without an explicit backend is named after it.
        section.setdefault("backend", name)
        providers[name] = _build_section(LLMProviderConfig, section)
    return providers


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "MODELBRIDGE_LLM_NAME":             ("llm.name", str),
    "MODELBRIDGE_LLM_BACKEND":          ("llm.backend", str),
    "MODELBRIDGE_LLM_MODEL":            ("llm.model", str),
    "MODELBRIDGE_LLM_API_BASE":         ("llm.api_base", str),
    "MODELBRIDGE_LLM_API_KEY_ENV":      ("llm.api_key_env", str),
    "MODELBRIDGE_LLM_MAX_CONTEXT":      ("llm.max_context_tokens", int),
    "MODELBRIDGE_LLM_MAX_OUTPUT":       ("llm.max_output_tokens", int),
    "MODELBRIDGE_LLM_TEMPERATURE":      ("llm.temperature", float),
    "MODELBRIDGE_LLM_TIMEOUT":          ("llm.timeout_seconds", int),
    "MODELBRIDGE_RETRY_MAX_ATTEMPTS":   ("retry.max_attempts", int),
    "MODELBRIDGE_RETRY_BASE_DELAY":     ("retry.base_delay_seconds", float),
    "MODELBRIDGE_RETRY_MULTIPLIER":     ("retry.multiplier", float),
    "MODELBRIDGE_RETRY_MAX_DELAY":      ("retry.max_delay_seconds", float),
    "MODELBRIDGE_REPAIR_MIN_ORPHANS":   ("repair.min_orphans", int),
    "MODELBRIDGE_REPAIR_MIN_RATIO":     ("repair.min_orphan_ratio", float),
    "MODELBRIDGE_REPAIR_MARKERS":       ("repair.analysis_markers", list),
    "MODELBRIDGE_REPAIR_FALLBACK":      ("repair.fallback_request", str),
    "MODELBRIDGE_CACHE_SCHEMA_SIZE":    ("cache.schema_cache_size", int),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> ModelBridgeConfig:
    """
    Build a ModelBridgeConfig by layering sources in precedence order:

        defaults  <  config file  <  env vars  <  CLI flags  <  per-session overrides

    Parameters
    ----------
    config_path : path to YAML config file (optional)
    profile : name of a profile to apply from the config file
    cli_overrides : dict of dotpath -> value CLI flag overrides
    """
    raw: dict[str, Any] = {}

    # --- 1. Config file ---
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            with p.open("r", encoding="utf-8") as f:
                try:
                    file_data = yaml.safe_load(f) or {}
                except yaml.YAMLError as exc:
                    raise ConfigError(f"invalid YAML in {p}: {exc}") from exc
            if not isinstance(file_data, dict):
                raise ConfigError(f"{p} must contain a mapping at the top level")
            raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile:
        profile_data = raw.get("profiles", {}).get(profile)
        if profile_data is None:
            raise ConfigError(f"unknown profile {profile!r}")
        raw = _deep_merge(raw, profile_data)

    # --- Build sections from raw ---
    cfg = ModelBridgeConfig(
        llm=_build_section(LLMProviderConfig, raw.get("llm", {})),
        providers=_build_providers(raw.get("providers", {})),
        retry=_build_section(RetryConfig, raw.get("retry", {})),
        repair=_build_section(RepairConfig, raw.get("repair", {})),
        cache=_build_section(CacheConfig, raw.get("cache", {})),
        profiles=raw.get("profiles", {}),
    )

    # --- 3. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            try:
                _apply_dotpath(cfg, dotpath, _coerce(val, target_type))
            except ValueError as exc:
                raise ConfigError(f"{env_var}={val!r}: {exc}") from exc

    # --- 4. CLI flag overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            _apply_dotpath(cfg, dotpath, value)

    return cfg


def select_provider(cfg: ModelBridgeConfig, name: str) -> None:
    """Make the named ``providers`` section the primary ``llm`` section."""
    if name == cfg.llm.name:
        return
    if name not in cfg.providers:
        raise ConfigError(
            f"unknown provider {name!r}; configured: {[cfg.llm.name, *cfg.providers]}"
        )
    previous = cfg.llm
    cfg.llm = cfg.providers.pop(name)
    cfg.providers[previous.name] = previous


def validate_config(cfg: ModelBridgeConfig) -> list[str]:
    """Return a list of human-readable problems (empty when valid)."""
    from modelbridge.llm.router import PROVIDER_CLASSES

    problems: list[str] = []
    for section in [cfg.llm, *cfg.provider_sections()]:
        if section.backend not in PROVIDER_CLASSES:
            problems.append(
                f"provider {section.name!r}: unknown backend {section.backend!r} "
                f"(expected one of {sorted(PROVIDER_CLASSES)})"
            )
        if not section.model:
            problems.append(f"provider {section.name!r}: model is empty")
        if section.max_output_tokens < 1:
            problems.append(f"provider {section.name!r}: max_output_tokens must be >= 1")
    if cfg.retry.max_attempts < 1:
        problems.append("retry.max_attempts must be >= 1")
    if cfg.retry.multiplier < 1:
        problems.append("retry.multiplier must be >= 1")
    if cfg.retry.base_delay_seconds < 0:
        problems.append("retry.base_delay_seconds must be >= 0")
    if cfg.repair.min_orphans < 1:
        problems.append("repair.min_orphans must be >= 1")
    if not 0.0 <= cfg.repair.min_orphan_ratio <= 1.0:
        problems.append("repair.min_orphan_ratio must be between 0 and 1")
    if not cfg.repair.fallback_request.strip():
        problems.append("repair.fallback_request is empty")
    if cfg.cache.schema_cache_size < 1:
        problems.append("cache.schema_cache_size must be >= 1")
    return problems
