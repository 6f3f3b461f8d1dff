"""Configuration file loading and validation.

Loads an optional YAML configuration file, expands ``${ENV_VAR}``
placeholders, applies environment overrides and validates against the
Pydantic models defined in :mod:`schema`.
"""

import logging
import os
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from medical_mcp.config.env import apply_env_overrides, expand_env_vars
from medical_mcp.config.schema import MedicalMcpConfig
from medical_mcp.display.logging_config import secret_redaction_filter
from medical_mcp.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Recognised config file extensions.
_YAML_EXTS = frozenset({".yaml", ".yml"})


def _read_config_file(cfg_fpath: str) -> Dict[str, Any]:
    """Read and parse a YAML config file from *cfg_fpath*.

    Raises :class:`ConfigurationError` on I/O or parse errors.
    """
    ext = os.path.splitext(cfg_fpath)[1].lower()
    if ext not in _YAML_EXTS:
        raise ConfigurationError(
            f"Unsupported config file extension '{ext}'. "
            "Only YAML files (.yaml, .yml) are supported."
        )

    try:
        with open(cfg_fpath, "r", encoding="utf-8") as f:
            raw_data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Error reading configuration file: {cfg_fpath}\n  {exc}") from exc

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise ConfigurationError(
            "Top-level configuration content must be a YAML mapping (dictionary)."
        )
    return raw_data


def _format_validation_errors(exc: ValidationError) -> str:
    """Format Pydantic validation errors into a readable multi-line string."""
    lines: List[str] = []
    for err in exc.errors():
        loc = " → ".join(str(part) for part in err["loc"])
        lines.append(f"  • {loc}: {err['msg']}")
    return "\n".join(lines)


def load_config(
    cfg_fpath: Optional[str] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> MedicalMcpConfig:
    """Load, expand and validate the configuration.

    Without *cfg_fpath* the defaults plus environment overrides are used.
    """
    raw_data: Dict[str, Any] = {}
    if cfg_fpath:
        logger.info("Loading configuration from '%s'.", cfg_fpath)
        raw_data = expand_env_vars(_read_config_file(cfg_fpath))
    raw_data = apply_env_overrides(raw_data, environ)

    try:
        config = MedicalMcpConfig.model_validate(raw_data)
    except ValidationError as exc:
        raise ConfigurationError(
            f"Configuration validation failed:\n{_format_validation_errors(exc)}"
        ) from exc

    for secret in (config.pbs.subscription_key, config.upstreams.serpapi_key):
        if secret:
            secret_redaction_filter.register(secret)

    logger.debug(
        "Configuration loaded: host=%s port=%d pbs_interval=%.1fs cache_ttl=%.0fs",
        config.server.host,
        config.server.port,
        config.pbs.min_interval,
        config.pbs.cache_ttl,
    )
    return config
