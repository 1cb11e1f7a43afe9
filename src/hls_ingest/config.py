import logging
import os
from pathlib import Path
from typing import Any, Dict, Union

import yaml
from dotenv import load_dotenv

from .models import PipelineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment overrides applied after YAML, before CLI args
ENV_DB_PATH = "HLS_INGEST_DB_PATH"
ENV_STORAGE_ROOT = "HLS_INGEST_STORAGE_ROOT"


def get_config_value(config: Union[PipelineConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: PipelineConfig model or dict
        path: Dot-separated path like "lifecycle.retention_days"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, PipelineConfig):
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


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if os.getenv(ENV_DB_PATH):
        overrides["database"] = {"path": os.environ[ENV_DB_PATH]}
    if os.getenv(ENV_STORAGE_ROOT):
        overrides["storage"] = {"backend": "local", "local_root": os.environ[ENV_STORAGE_ROOT]}
    return overrides


def resolve_config(cli_args: Dict[str, Any] = None) -> PipelineConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic PipelineConfig model.
    """
    cli_args = cli_args or {}
    load_dotenv()

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, _env_overrides())

    config = PipelineConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)


def configure_logging(config: PipelineConfig) -> None:
    """Apply the logging section to the root logger."""
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format=config.logging.format,
        force=True,
    )
