"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < profile < env vars < CLI flags < per-session overrides
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any

import yaml

from chatloom.files.uploader import RetryPolicy
from chatloom.llm.types import HARM_CATEGORIES, GenerationSettings, SafetySetting

SAFETY_THRESHOLDS = (
    "BLOCK_NONE",
    "BLOCK_ONLY_HIGH",
    "BLOCK_MEDIUM_AND_ABOVE",
    "BLOCK_LOW_AND_ABOVE",
)


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ProviderConfig:
    api_base: str = "https://generativelanguage.googleapis.com"
    api_version: str = "v1beta"
    api_key_env: str = "GEMINI_API_KEY"
    model: str = "gemini-2.0-flash"
    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 64
    max_output_tokens: int = 8192
    thinking_budget: int | None = None
    safety_threshold: str = "BLOCK_NONE"
    timeout_seconds: int = 120
    max_retries: int = 2


@dataclass
class UploadsConfig:
    poll_interval_seconds: float = 2.0
    max_poll_attempts: int = 15


@dataclass
class ToolsConfig:
    declarations_file: str = ""
    disabled: list[str] = field(default_factory=list)
    timeout_seconds: int = 30
    web_search: bool = False


@dataclass
class SessionConfig:
    max_tool_rounds: int = 10
    incognito: bool = False


@dataclass
class PersonaConfig:
    personality_prompt: str = ""
    assistant_name: str = "Loom"


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class ChatloomConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    uploads: UploadsConfig = field(default_factory=UploadsConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    persona: PersonaConfig = field(default_factory=PersonaConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    # ----- per-session overrides (applied last) ----
    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Set a per-session override using dot notation (e.g. 'session.incognito')."""
        self._overrides[dotpath] = value
        _apply_dotpath(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("_overrides", None)
        return d

    # ----- derived objects ----

    def api_key(self) -> str | None:
        return os.environ.get(self.provider.api_key_env) or None

    def safety_settings(self) -> list[SafetySetting]:
        return [
            SafetySetting(category=c, threshold=self.provider.safety_threshold)
            for c in HARM_CATEGORIES
        ]

    def generation_settings(self) -> GenerationSettings:
        p = self.provider
        return GenerationSettings(
            model=p.model,
            temperature=p.temperature,
            top_p=p.top_p,
            top_k=p.top_k,
            max_output_tokens=p.max_output_tokens,
            thinking_budget=p.thinking_budget,
            safety_settings=self.safety_settings(),
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.uploads.max_poll_attempts,
            delay_seconds=self.uploads.poll_interval_seconds,
        )


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
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in (raw or {}).items() if k in valid_fields}
    return cls(**filtered)


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "CHATLOOM_PROVIDER_API_BASE":            ("provider.api_base", str),
    "CHATLOOM_PROVIDER_API_VERSION":         ("provider.api_version", str),
    "CHATLOOM_PROVIDER_API_KEY_ENV":         ("provider.api_key_env", str),
    "CHATLOOM_PROVIDER_MODEL":               ("provider.model", str),
    "CHATLOOM_PROVIDER_TEMPERATURE":         ("provider.temperature", float),
    "CHATLOOM_PROVIDER_TOP_P":               ("provider.top_p", float),
    "CHATLOOM_PROVIDER_TOP_K":               ("provider.top_k", int),
    "CHATLOOM_PROVIDER_MAX_OUTPUT_TOKENS":   ("provider.max_output_tokens", int),
    "CHATLOOM_PROVIDER_THINKING_BUDGET":     ("provider.thinking_budget", int),
    "CHATLOOM_PROVIDER_SAFETY_THRESHOLD":    ("provider.safety_threshold", str),
    "CHATLOOM_PROVIDER_TIMEOUT_SECONDS":     ("provider.timeout_seconds", int),
    "CHATLOOM_PROVIDER_MAX_RETRIES":         ("provider.max_retries", int),
    "CHATLOOM_UPLOADS_POLL_INTERVAL_SECONDS": ("uploads.poll_interval_seconds", float),
    "CHATLOOM_UPLOADS_MAX_POLL_ATTEMPTS":    ("uploads.max_poll_attempts", int),
    "CHATLOOM_TOOLS_DECLARATIONS_FILE":      ("tools.declarations_file", str),
    "CHATLOOM_TOOLS_DISABLED":               ("tools.disabled", list),
    "CHATLOOM_TOOLS_TIMEOUT_SECONDS":        ("tools.timeout_seconds", int),
    "CHATLOOM_TOOLS_WEB_SEARCH":             ("tools.web_search", bool),
    "CHATLOOM_SESSION_MAX_TOOL_ROUNDS":      ("session.max_tool_rounds", int),
    "CHATLOOM_SESSION_INCOGNITO":            ("session.incognito", bool),
    "CHATLOOM_PERSONA_PERSONALITY_PROMPT":   ("persona.personality_prompt", str),
    "CHATLOOM_PERSONA_ASSISTANT_NAME":       ("persona.assistant_name", str),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> ChatloomConfig:
    """
    Build a ChatloomConfig by layering sources in precedence order:

        defaults  <  config file  <  profile  <  env vars  <  CLI flags

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
                file_data = yaml.safe_load(f) or {}
            raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile and "profiles" in raw:
        profile_data = raw.get("profiles", {}).get(profile, {})
        if profile_data:
            raw = _deep_merge(raw, profile_data)

    # --- Build sections from raw ---
    cfg = ChatloomConfig(
        provider=_build_section(ProviderConfig, raw.get("provider", {})),
        uploads=_build_section(UploadsConfig, raw.get("uploads", {})),
        tools=_build_section(ToolsConfig, raw.get("tools", {})),
        session=_build_section(SessionConfig, raw.get("session", {})),
        persona=_build_section(PersonaConfig, raw.get("persona", {})),
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
            if value is not None:
                _apply_dotpath(cfg, dotpath, value)

    return cfg


def validate_config(cfg: ChatloomConfig) -> list[str]:
    """Return a list of problems with *cfg*; empty when it is usable."""
    problems: list[str] = []
    p = cfg.provider
    if not p.model:
        problems.append("provider.model is empty")
    if not 0.0 <= p.temperature <= 2.0:
        problems.append(f"provider.temperature out of range: {p.temperature}")
    if not 0.0 <= p.top_p <= 1.0:
        problems.append(f"provider.top_p out of range: {p.top_p}")
    if p.top_k < 1:
        problems.append(f"provider.top_k must be positive: {p.top_k}")
    if p.max_output_tokens < 1:
        problems.append(f"provider.max_output_tokens must be positive: {p.max_output_tokens}")
    if p.safety_threshold not in SAFETY_THRESHOLDS:
        problems.append(f"provider.safety_threshold unknown: {p.safety_threshold}")
    if cfg.uploads.max_poll_attempts < 1:
        problems.append("uploads.max_poll_attempts must be at least 1")
    if cfg.uploads.poll_interval_seconds < 0:
        problems.append("uploads.poll_interval_seconds must not be negative")
    if cfg.session.max_tool_rounds < 0:
        problems.append("session.max_tool_rounds must not be negative")
    if cfg.tools.declarations_file and not Path(cfg.tools.declarations_file).expanduser().is_file():
        problems.append(f"tools.declarations_file not found: {cfg.tools.declarations_file}")
    return problems
