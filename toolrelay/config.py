"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < env vars < CLI flags < per-session overrides

Provider entries form a closed set of per-vendor dataclasses, selected by
their ``vendor`` key and validated when they are built.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, ClassVar, Union

import yaml


class ConfigError(ValueError):
    """Raised for configuration that cannot be used."""


# ---------------------------------------------------------------------------
# Provider configs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BaseProviderConfig:
    vendor: ClassVar[str] = ""

    model: str = ""
    base_url: str = ""
    api_key_env: str = ""
    api_key: str = ""
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout_seconds: float = 60.0
    max_retries: int = 2

    def __post_init__(self) -> None:
        if not self.model:
            raise ConfigError(f"{self.vendor}: model is required")
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigError(f"{self.vendor}: base_url must be http(s), got {self.base_url!r}")
        if not 0.0 <= float(self.temperature) <= 2.0:
            raise ConfigError(f"{self.vendor}: temperature must be within [0, 2]")
        if int(self.max_tokens) <= 0:
            raise ConfigError(f"{self.vendor}: max_tokens must be positive")
        if float(self.timeout_seconds) <= 0:
            raise ConfigError(f"{self.vendor}: timeout_seconds must be positive")
        if int(self.max_retries) < 0:
            raise ConfigError(f"{self.vendor}: max_retries must be >= 0")

    def resolve_api_key(self) -> str:
        """Explicit key first, then the environment variable named by ``api_key_env``."""
        if self.api_key:
            return self.api_key
        return os.environ.get(self.api_key_env, "") if self.api_key_env else ""

    def to_dict(self) -> dict:
        d = asdict(self)
        d["vendor"] = self.vendor
        if d.get("api_key"):
            d["api_key"] = d["api_key"][:4] + "..."
        return d


@dataclass(frozen=True)
class OpenAICompatConfig(BaseProviderConfig):
    vendor: ClassVar[str] = "openai"

    model: str = "gpt-4o-mini"
    base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"


@dataclass(frozen=True)
class GroqConfig(BaseProviderConfig):
    vendor: ClassVar[str] = "groq"

    model: str = "openai/gpt-oss-120b"
    base_url: str = "https://api.groq.com/openai/v1"
    api_key_env: str = "GROQ_API_KEY"
    service_tier: str = "auto"
    reasoning_effort: str | None = None
    parallel_tool_calls: bool = True

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.service_tier not in ("auto", "on_demand", "flex", "performance"):
            raise ConfigError(f"groq: unknown service_tier {self.service_tier!r}")
        if self.reasoning_effort not in (None, "low", "medium", "high"):
            raise ConfigError(f"groq: unknown reasoning_effort {self.reasoning_effort!r}")


@dataclass(frozen=True)
class XAIConfig(BaseProviderConfig):
    vendor: ClassVar[str] = "xai"

    model: str = "grok-4-fast-reasoning"
    base_url: str = "https://api.x.ai/v1"
    api_key_env: str = "XAI_API_KEY"
    parallel_tool_calls: bool = True


@dataclass(frozen=True)
class DeepSeekConfig(BaseProviderConfig):
    vendor: ClassVar[str] = "deepseek"

    model: str = "deepseek-chat"
    base_url: str = "https://api.deepseek.com/v1"
    api_key_env: str = "DEEPSEEK_API_KEY"


@dataclass(frozen=True)
class CerebrasConfig(BaseProviderConfig):
    vendor: ClassVar[str] = "cerebras"

    model: str = "llama-3.3-70b"
    base_url: str = "https://api.cerebras.ai/v1"
    api_key_env: str = "CEREBRAS_API_KEY"
    parallel_tool_calls: bool = False
    strict_tools: bool = False


@dataclass(frozen=True)
class LiminalityConfig(BaseProviderConfig):
    vendor: ClassVar[str] = "liminality"

    model: str = "openai/gpt-4o-mini"
    base_url: str = "https://origin.synesia.app"
    api_key_env: str = "LIMINALITY_API_KEY"
    top_p: float = 1.0
    max_loops: int = 10

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.max_loops < 1:
            raise ConfigError("liminality: max_loops must be >= 1")


@dataclass(frozen=True)
class ResponsesConfig(BaseProviderConfig):
    vendor: ClassVar[str] = "xai-responses"

    model: str = "grok-4-fast-reasoning"
    base_url: str = "https://api.x.ai/v1"
    api_key_env: str = "XAI_API_KEY"
    top_p: float = 1.0
    parallel_tool_calls: bool = True


ProviderConfig = Union[
    OpenAICompatConfig,
    GroqConfig,
    XAIConfig,
    DeepSeekConfig,
    CerebrasConfig,
    LiminalityConfig,
    ResponsesConfig,
]

PROVIDER_CONFIGS: dict[str, type[BaseProviderConfig]] = {
    cls.vendor: cls
    for cls in (
        OpenAICompatConfig,
        GroqConfig,
        XAIConfig,
        DeepSeekConfig,
        CerebrasConfig,
        LiminalityConfig,
        ResponsesConfig,
    )
}


def build_provider_config(raw: dict, *, name: str | None = None) -> ProviderConfig:
    """
    Build the vendor-specific config selected by ``raw["vendor"]``.

    When ``vendor`` is absent, *name* is used if it names a vendor.  Unknown
    vendors and unknown keys raise ``ConfigError``.
    """
    vendor = raw.get("vendor") or name
    cls = PROVIDER_CONFIGS.get(vendor or "")
    if cls is None:
        raise ConfigError(
            f"Unknown provider vendor {vendor!r}. Known: {sorted(PROVIDER_CONFIGS)}"
        )
    valid_fields = {f.name for f in fields(cls)}
    unknown = set(raw) - valid_fields - {"vendor"}
    if unknown:
        raise ConfigError(f"{vendor}: unknown field(s) {sorted(unknown)}")
    try:
        return cls(**{k: v for k, v in raw.items() if k != "vendor"})  # type: ignore[return-value]
    except TypeError as exc:
        raise ConfigError(f"{vendor}: {exc}") from exc


def _default_providers() -> dict[str, ProviderConfig]:
    return {vendor: cls() for vendor, cls in PROVIDER_CONFIGS.items()}  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class LLMConfig:
    active: str = "openai"


@dataclass
class OrchestratorConfig:
    max_rounds: int = 10
    tool_timeout_seconds: float = 15.0
    batch_size: int = 50
    broadcast_max_retries: int = 3
    broadcast_base_delay: float = 0.1
    max_result_bytes: int = 64 * 1024
    safety_net: bool = True
    force_final_answer: bool = False


@dataclass
class SessionConfig:
    history_db: str = "~/.toolrelay/history.db"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str | None = None


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class ToolrelayConfig:
    llm: LLMConfig = field(default_factory=LLMConfig)
    providers: dict[str, ProviderConfig] = field(default_factory=_default_providers)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    # ----- per-session overrides (applied last) ----
    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Set a per-session override using dot notation (e.g. 'orchestrator.max_rounds')."""
        self._overrides[dotpath] = value
        _apply_dotpath(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def to_dict(self) -> dict:
        return {
            "llm": asdict(self.llm),
            "providers": {name: p.to_dict() for name, p in self.providers.items()},
            "orchestrator": asdict(self.orchestrator),
            "session": asdict(self.session),
            "logging": asdict(self.logging),
            "profiles": self.profiles,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    if not hasattr(obj, parts[-1]):
        raise ConfigError(f"Unknown config key: {dotpath}")
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
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in raw.items() if k in valid_fields}
    return cls(**filtered)


def _build_providers(raw: dict[str, Any]) -> dict[str, ProviderConfig]:
    providers = _default_providers()
    for name, entry in (raw or {}).items():
        entry = dict(entry or {})
        vendor = entry.get("vendor") or (name if name in PROVIDER_CONFIGS else None)
        base = providers.get(name)
        if base is not None and vendor == base.vendor:
            seed = {f.name: getattr(base, f.name) for f in fields(base)}
            entry = _deep_merge(seed, entry)
        providers[name] = build_provider_config(entry, name=vendor)
    return providers


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "TOOLRELAY_LLM_ACTIVE":           ("llm.active", str),
    "TOOLRELAY_MAX_ROUNDS":           ("orchestrator.max_rounds", int),
    "TOOLRELAY_TOOL_TIMEOUT":         ("orchestrator.tool_timeout_seconds", float),
    "TOOLRELAY_BATCH_SIZE":           ("orchestrator.batch_size", int),
    "TOOLRELAY_BROADCAST_RETRIES":    ("orchestrator.broadcast_max_retries", int),
    "TOOLRELAY_MAX_RESULT_BYTES":     ("orchestrator.max_result_bytes", int),
    "TOOLRELAY_SAFETY_NET":           ("orchestrator.safety_net", bool),
    "TOOLRELAY_FORCE_FINAL_ANSWER":   ("orchestrator.force_final_answer", bool),
    "TOOLRELAY_SESSION_HISTORY_DB":   ("session.history_db", str),
    "TOOLRELAY_LOG_LEVEL":            ("logging.level", str),
    "TOOLRELAY_LOG_FILE":             ("logging.file", str),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> ToolrelayConfig:
    """
    Build a ToolrelayConfig by layering sources in precedence order:

        defaults  <  config file  <  env vars  <  CLI flags  <  per-session overrides

    Parameters
    ----------
    config_path : path to YAML config file (optional)
    profile : name of a profile to apply from the config file
    cli_overrides : dict of dotpath -> value CLI flag overrides

    Raises ``ConfigError`` for unknown vendors, invalid provider fields, or
    an ``llm.active`` that names no provider.
    """
    raw: dict[str, Any] = {}

    # --- 1. Config file ---
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            with p.open("r", encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            if not isinstance(file_data, dict):
                raise ConfigError(f"{p}: top level must be a mapping")
            raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile:
        profile_data = raw.get("profiles", {}).get(profile)
        if profile_data is None:
            raise ConfigError(f"Unknown profile: {profile}")
        raw = _deep_merge(raw, profile_data)

    # --- Build sections from raw ---
    cfg = ToolrelayConfig(
        llm=_build_section(LLMConfig, raw.get("llm", {})),
        providers=_build_providers(raw.get("providers", {})),
        orchestrator=_build_section(OrchestratorConfig, raw.get("orchestrator", {})),
        session=_build_section(SessionConfig, raw.get("session", {})),
        logging=_build_section(LoggingConfig, raw.get("logging", {})),
        profiles=raw.get("profiles", {}),
    )

    # --- 3. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    # --- 4. CLI flag overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            _apply_dotpath(cfg, dotpath, value)

    if cfg.llm.active not in cfg.providers:
        raise ConfigError(
            f"llm.active {cfg.llm.active!r} names no provider. "
            f"Configured: {sorted(cfg.providers)}"
        )
    if cfg.orchestrator.max_rounds < 1:
        raise ConfigError("orchestrator.max_rounds must be >= 1")

    return cfg
