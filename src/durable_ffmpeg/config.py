import os
import yaml
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .models import ServiceConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

ENV_PREFIX = "DURABLE_FFMPEG_"

# Environment variable suffix -> dotted config path
ENV_OVERRIDES = {
    "CONCURRENCY_LIMIT": "encoder.concurrency_limit",
    "ENCODER_PATH": "encoder.binary_path",
    "PROBE_PATH": "encoder.probe_binary_path",
    "TIME_LIMIT_S": "encoder.time_limit_s",
    "NO_PROGRESS_TIMEOUT_S": "encoder.no_progress_timeout_s",
    "KILL_GRACE_PERIOD_S": "encoder.kill_grace_period_s",
    "MEMORY_LIMIT_MB": "encoder.memory_limit_mb",
    "CPU_TIME_LIMIT_S": "encoder.cpu_time_limit_s",
    "FFMPEG_LOGLEVEL": "encoder.loglevel",
    "MAX_ATTEMPTS": "retry.max_attempts",
    "BACKOFF_BASE_S": "retry.backoff_base_s",
    "BACKOFF_CEILING_S": "retry.backoff_ceiling_s",
    "SUSPEND_THRESHOLD_S": "retry.suspend_threshold_s",
    "WORK_ROOT": "storage.work_root",
    "OUTPUT_ROOT": "storage.output_root",
    "JOURNAL_PATH": "storage.journal_path",
    "HTTP_TIMEOUT_S": "storage.http_timeout_s",
    "S3_ENDPOINT": "storage.s3.endpoint",
    "S3_ACCESS_KEY": "storage.s3.access_key",
    "S3_SECRET_KEY": "storage.s3.secret_key",
    "S3_SECURE": "storage.s3.secure",
    "HOST": "server.host",
    "PORT": "server.port",
    "HANDLE_WAIT_S": "server.handle_wait_s",
    "MAX_WORKERS": "server.max_workers",
    "LOG_LEVEL": "logging.level",
    "LOG_FORMAT": "logging.format",
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
    """Collect DURABLE_FFMPEG_* variables into a nested override dict.

    Values stay strings; pydantic coerces them when the merged config is
    validated. Empty variables are ignored.
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}

    for suffix, path in ENV_OVERRIDES.items():
        raw = environ.get(ENV_PREFIX + suffix)
        if raw is None or raw.strip() == "":
            continue

        node = overrides
        keys = path.split(".")
        for key in keys[:-1]:
            node = node.setdefault(key, {})
        node[keys[-1]] = raw.strip()

    return overrides


def resolve_config(
    cli_args: Dict[str, Any] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ServiceConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic ServiceConfig model.

    Raises:
        pydantic.ValidationError: If any layer supplies an invalid value
    """
    cli_args = cli_args or {}

    # 1. Load default YAML
    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    # 3. Merge environment overrides
    config_data = merge_dicts(config_data, env_overrides(environ))

    # 4. Validate, then apply CLI overrides
    config = ServiceConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
