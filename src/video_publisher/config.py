import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .models import PublisherConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "CHUNK_SIZE": ("upload.chunk_size", int),
    "MAX_RETRIES": ("retry.max_attempts", int),
    "PUBLISHER_DB": ("queue.db_path", str),
}


def get_config_value(config: Union[PublisherConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: PublisherConfig model or dict
        path: Dot-separated path like "upload.chunk_size"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, PublisherConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Build a nested override dict from recognised environment variables."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, (path, cast) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        section, key = path.split(".")
        overrides.setdefault(section, {})[key] = cast(raw)
    return overrides


def resolve_config(
    cli_args: Dict[str, Any] = None, environ: Optional[Mapping[str, str]] = None
) -> PublisherConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic PublisherConfig model.
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides(environ))

    config = PublisherConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
