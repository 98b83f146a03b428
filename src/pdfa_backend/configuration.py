"""
Runtime configuration for the PDF/A backend.

Defaults live in ``config.yaml`` next to this module. They are layered as:

1. packaged defaults (``config.yaml``)
2. environment variables (optionally loaded from a ``.env`` file)
3. explicit overrides passed by the caller (tests, embedding applications)

The merged configuration is in struct mode, so a misspelled key fails fast
instead of silently being ignored.
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

load_dotenv()

CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


# Environment variable -> (config key, caster)
ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "PDFA_DAILY_LIMIT": ("quota.default_daily_limit", int),
    "PDFA_EXPANSION_DURATION_DAYS": ("quota.expansion_duration_days", int),
    "PDFA_MAX_FILE_SIZE": ("conversion.max_file_size_kb", int),
    "PDFA_RENDER_TIMEOUT": ("conversion.render_timeout_seconds", int),
    "PDFA_MAX_WORKERS": ("conversion.max_workers", int),
    "PDFA_FILE_RETENTION_DAYS": ("conversion.file_retention_days", int),
    "PDFA_REQUEST_RETENTION_DAYS": ("expansion.request_retention_days", int),
    "GS_BINARY_PATH": ("renderer.binary_path", str),
    "PDFA_VERSION": ("renderer.pdfa_version", int),
    "PDFA_COLOR_CONVERSION": ("renderer.color_conversion", str),
    "PDFA_STORAGE_BACKEND": ("storage.backend", str),
    "PDFA_STORAGE_ROOT": ("storage.root", str),
    "S3_BUCKET_NAME": ("storage.s3_bucket", str),
    "PDFA_DATABASE_PATH": ("database.path", str),
    "ADMIN_EMAIL": ("admin.email", str),
    "PDFA_ADMIN_API_KEY": ("admin.api_key", str),
    "PDFA_RATE_LIMIT_RPM": ("rate_limit.requests_per_minute", int),
    "PDFA_MAINTENANCE_ENABLED": ("maintenance.enabled", _as_bool),
    "PDFA_MAINTENANCE_INTERVAL": ("maintenance.interval_seconds", int),
}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def get_default_config_container() -> Dict[str, Any]:
    return OmegaConf.to_container(_load_default_config(), resolve=True)  # type: ignore[return-value]


def _apply_environment(config: DictConfig, environ: Mapping[str, str]) -> None:
    for variable, (key, cast) in ENV_OVERRIDES.items():
        raw = environ.get(variable)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid value for {variable}: {raw!r}") from exc
        OmegaConf.update(config, key, value, merge=False)


def load_settings(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> DictConfig:
    """
    Build the effective configuration.

    Args:
        overrides: Nested mapping merged last (e.g. ``{"quota": {"default_daily_limit": 3}}``)
        environ: Environment mapping to read overrides from (default: ``os.environ``)

    Returns:
        A struct-mode DictConfig; unknown keys in ``overrides`` raise.
    """
    base = OmegaConf.create(get_default_config_container())
    OmegaConf.set_struct(base, True)

    _apply_environment(base, os.environ if environ is None else environ)

    if overrides:
        base = DictConfig(OmegaConf.merge(base, OmegaConf.create(overrides)))
    return base


@lru_cache(maxsize=1)
def get_settings() -> DictConfig:
    return load_settings()
