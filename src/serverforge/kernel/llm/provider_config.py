"""LLM provider bundle: defaults from settings, then file and env JSON overrides."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict

import structlog

from serverforge.config import settings

logger = structlog.get_logger()

PROVIDERS_ENV_VAR = "SERVERFORGE_LLM_PROVIDERS_JSON"


def _env(name: str, default: str = "") -> str:
    value = os.environ.get(name)
    if value is None:
        return default
    return str(value).strip()


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = _deep_merge(current, value)
        else:
            result[key] = value
    return result


def build_default_provider_bundle() -> Dict[str, Any]:
    """Build default provider bundle from settings + environment."""
    providers: Dict[str, Dict[str, Any]] = {
        "anthropic": {
            "type": "anthropic_compat",
            "name": "Anthropic",
            "base_url": settings.anthropic_base_url,
            "api_key": settings.anthropic_api_key or _env("ANTHROPIC_API_KEY"),
            "model": settings.anthropic_model,
            "api_path": "/v1/messages",
            "anthropic_version": _env("ANTHROPIC_VERSION", "2023-06-01"),
            "max_tokens": settings.llm_max_tokens,
            "timeout": settings.llm_timeout_seconds,
        },
        "openai": {
            "type": "openai_compat",
            "name": "OpenAI",
            "base_url": settings.openai_base_url or _env("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            "api_key": settings.openai_api_key or _env("OPENAI_API_KEY"),
            "model": settings.openai_model,
            "max_tokens": settings.llm_max_tokens,
            "timeout": settings.llm_timeout_seconds,
        },
    }

    default_provider_id = {
        "anthropic": "anthropic",
        "claude": "anthropic",
        "openai": "openai",
    }.get(settings.llm_provider, settings.llm_provider)
    if default_provider_id not in providers:
        default_provider_id = "anthropic"

    return {
        "default_provider_id": default_provider_id,
        "providers": providers,
    }


def _config_file_path() -> Path:
    return settings.data_root / "config" / "llm" / "providers.json"


def _load_json_dict(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("llm_provider_file_unreadable", path=str(path), error=str(e))
        return {}
    return payload if isinstance(payload, dict) else {}


def _parse_env_json(var_name: str) -> Dict[str, Any]:
    raw = _env(var_name)
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("llm_provider_env_unparseable", variable=var_name, error=str(e))
        return {}
    return payload if isinstance(payload, dict) else {}


def _normalize_bundle(bundle: Dict[str, Any]) -> Dict[str, Any]:
    providers = bundle.get("providers")
    if not isinstance(providers, dict):
        providers = {}

    normalized_providers: Dict[str, Dict[str, Any]] = {}
    for provider_id, provider_cfg in providers.items():
        if not isinstance(provider_cfg, dict):
            continue
        cfg = dict(provider_cfg)
        provider_type = str(cfg.get("type") or cfg.get("provider_type") or "").strip()
        if not provider_type:
            continue
        cfg["type"] = provider_type
        normalized_providers[str(provider_id)] = cfg

    default_provider_id = str(bundle.get("default_provider_id") or "").strip()
    if default_provider_id not in normalized_providers and normalized_providers:
        default_provider_id = next(iter(normalized_providers.keys()))
    if not default_provider_id:
        default_provider_id = "anthropic"

    return {
        "default_provider_id": default_provider_id,
        "providers": normalized_providers,
    }


def load_provider_bundle() -> Dict[str, Any]:
    """Load provider bundle from defaults + file + env JSON overrides."""
    bundle = build_default_provider_bundle()

    file_payload = _load_json_dict(_config_file_path())
    if file_payload:
        bundle = _deep_merge(bundle, file_payload)

    env_payload = _parse_env_json(PROVIDERS_ENV_VAR)
    if env_payload:
        bundle = _deep_merge(bundle, env_payload)

    return _normalize_bundle(bundle)
