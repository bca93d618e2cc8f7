"""Configuration loading utilities for the concierge gate.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CONCIERGE_CONFIG
3. Fallback to "config/default.yaml"

On top of the file, the conventional flat variables of a hosted chat handler
(``OPENAI_API_KEY``, ``MAX_TURNS_FREE``, ...) are applied, and finally
nested overrides from environment variables with prefix ``CONCIERGE__``
(e.g., CONCIERGE__GATE__FREE_TURNS=3).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a concise, ROI-focused AI concierge for a digital agency. "
    "Ask one diagnostic question before giving recommendations, then answer "
    "with prioritized, numbered steps."
)
DEFAULT_PAYWALL_MESSAGE = "You've reached the free trial limit. Please subscribe to continue."

# env var -> (section, key)
_FLAT_ENV = {
    "OPENAI_API_KEY": ("provider", "api_key"),
    "OPENAI_MODEL": ("provider", "model"),
    "OPENAI_API_BASE": ("provider", "api_base"),
    "MAX_TOKENS_PER_REPLY": ("provider", "max_tokens"),
    "TEMPERATURE": ("provider", "temperature"),
    "MAX_TURNS_FREE": ("gate", "free_turns"),
    "HISTORY_TURNS": ("gate", "history_turns"),
    "DAILY_HARD_CAP": ("spend", "daily_hard_cap"),
    "ALLOWED_ORIGIN": ("server", "cors_origins"),
    "CRM_URL": ("leads", "crm_url"),
    "CRM_API_KEY": ("leads", "crm_api_key"),
    "WEBHOOK_URL": ("leads", "webhook_url"),
    "WEBHOOK_SECRET": ("leads", "webhook_secret"),
}


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    sub = cfg.get(name)
    if not isinstance(sub, dict):
        sub = {}
        cfg[name] = sub
    return sub


def _apply_flat_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply the un-prefixed variables; values stay strings and are cast later."""
    for var, (section, key) in _FLAT_ENV.items():
        value = os.environ.get(var)
        if value is None or value == "":
            continue
        _section(cfg, section)[key] = value
    return cfg


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix CONCIERGE__."""
    prefix = "CONCIERGE__"
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        # e.g., CONCIERGE__GATE__FREE_TURNS -> cfg["gate"]["free_turns"]
        parts = key[len(prefix):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the gate.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CONCIERGE_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with environment overrides applied.
    """
    if path is None:
        path = os.environ.get("CONCIERGE_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("config file not found at %s; using defaults", path_obj)
        return _apply_env_overrides(_apply_flat_env({}))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_apply_flat_env(cfg))


# -----------------------------
# Typed settings
# -----------------------------
def resolve_cors_origins(value: Union[str, List[str], None]) -> List[str]:
    """Normalize a single origin, a comma-separated string, a list, or "*"."""
    if value is None:
        return ["*"]
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(v) for v in value]
    origins = [o.strip() for o in items if o and o.strip()]
    if not origins or "*" in origins:
        return ["*"]
    return origins


def _cast(value: Any, default: Any, kind: Callable[[Any], Any]) -> Any:
    if value is None or value == "":
        return default
    try:
        return kind(value)
    except (TypeError, ValueError):
        logger.warning("invalid config value %r; falling back to %r", value, default)
        return default


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


@dataclass
class GateSettings:
    # provider
    api_key: Optional[str] = field(default=None, repr=False)
    api_base: str = "https://api.openai.com"
    model: str = "gpt-4o-mini"
    max_tokens: int = 420
    temperature: float = 0.3
    timeout: float = 30.0
    # gate
    free_turns: int = 6
    history_turns: int = 10         # 0 disables compaction
    paywall_message: str = DEFAULT_PAYWALL_MESSAGE
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    # server
    service: str = "concierge"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    # spend (advisory)
    daily_hard_cap: float = 0.0     # USD/day; 0 = off
    spend_store: str = "memory"     # memory | file | none
    spend_path: str = "data/spend.json"
    input_per_1k: float = 0.00015
    output_per_1k: float = 0.0006
    # leads
    crm_url: Optional[str] = None
    crm_api_key: Optional[str] = field(default=None, repr=False)
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = field(default=None, repr=False)
    lead_timeout: float = 10.0


def _get_system_prompt(prompt_cfg: Dict[str, Any]) -> str:
    prompt_file = prompt_cfg.get("system_prompt_file")
    if prompt_file:
        p = Path(str(prompt_file))
        if p.exists():
            return p.read_text(encoding="utf-8").strip()
        logger.warning("system_prompt_file not found: %s", p)
    return str(prompt_cfg.get("system_prompt") or DEFAULT_SYSTEM_PROMPT).strip()


def settings_from_config(cfg: Dict[str, Any]) -> GateSettings:
    """Build :class:`GateSettings` from a loaded config dict."""
    d = GateSettings()
    provider = cfg.get("provider") or {}
    gate = cfg.get("gate") or {}
    server = cfg.get("server") or {}
    spend = cfg.get("spend") or {}
    leads = cfg.get("leads") or {}
    log_cfg = cfg.get("logging") or {}

    return GateSettings(
        api_key=_opt_str(provider.get("api_key")),
        api_base=str(provider.get("api_base") or d.api_base).rstrip("/"),
        model=str(provider.get("model") or d.model),
        max_tokens=_cast(provider.get("max_tokens"), d.max_tokens, int),
        temperature=_cast(provider.get("temperature"), d.temperature, float),
        timeout=_cast(provider.get("timeout"), d.timeout, float),
        free_turns=_cast(gate.get("free_turns"), d.free_turns, int),
        history_turns=_cast(gate.get("history_turns"), d.history_turns, int),
        paywall_message=str(gate.get("paywall_message") or d.paywall_message),
        system_prompt=_get_system_prompt(cfg.get("prompt") or {}),
        service=str(server.get("service") or d.service),
        cors_origins=resolve_cors_origins(server.get("cors_origins")),
        log_level=str(log_cfg.get("level") or d.log_level).upper(),
        daily_hard_cap=_cast(spend.get("daily_hard_cap"), d.daily_hard_cap, float),
        spend_store=str(spend.get("store") or d.spend_store).lower(),
        spend_path=str(spend.get("path") or d.spend_path),
        input_per_1k=_cast(spend.get("input_per_1k"), d.input_per_1k, float),
        output_per_1k=_cast(spend.get("output_per_1k"), d.output_per_1k, float),
        crm_url=_opt_str(leads.get("crm_url")),
        crm_api_key=_opt_str(leads.get("crm_api_key")),
        webhook_url=_opt_str(leads.get("webhook_url")),
        webhook_secret=_opt_str(leads.get("webhook_secret")),
        lead_timeout=_cast(leads.get("timeout"), d.lead_timeout, float),
    )
