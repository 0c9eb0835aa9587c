import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .models import PipelineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

LOG_FORMAT = "%(asctime)s | (%(name)s) [%(levelname)s]: %(message)s"

# Environment variable → (section, key)
ENV_OVERRIDES = {
    "DATABASE_URL": ("database", "url"),
    "S3_BUCKET_NAME": ("storage", "bucket"),
    "S3_ENDPOINT": ("storage", "endpoint_url"),
    "AWS_REGION": ("storage", "region"),
    "WORKER_CONCURRENCY": ("worker", "concurrency"),
    "PIXELQUEUE_STORAGE": ("storage", "backend"),
}


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
    """Nested config dict built from the process environment.

    A bucket name alone selects the S3 backend unless PIXELQUEUE_STORAGE
    says otherwise.
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            overrides.setdefault(section, {})[key] = value

    if environ.get("S3_BUCKET_NAME") and not environ.get("PIXELQUEUE_STORAGE"):
        overrides.setdefault("storage", {})["backend"] = "s3"
    return overrides


def resolve_config(
    cli_args: Dict[str, Any] = None, environ: Optional[Mapping[str, str]] = None
) -> PipelineConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic PipelineConfig model.

    Raises:
        pydantic.ValidationError: If the merged settings are invalid
    """
    cli_args = cli_args or {}

    # 1. Load default YAML
    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    # 3. Merge environment
    config_data = merge_dicts(config_data, env_overrides(environ))

    # 4. Validate, then apply CLI overrides
    config = PipelineConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)


def configure_logging(level: str = "INFO") -> None:
    """Root logger setup for the CLI entrypoints."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)
    # botocore logs every request at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
