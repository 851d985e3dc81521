"""Configuration loading: YAML topology file plus runtime settings from env vars."""

import os
import logging
from dataclasses import dataclass, fields

import yaml

from lognorm.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yml"
DEFAULT_DATA_DIR = ".lognorm"


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Settings:
    offsets_file: str = os.path.join(DEFAULT_DATA_DIR, "offsets.json")
    batch_size: int = 100
    flush_interval: float = 0.5
    poll_interval: float = 0.25
    rescan_interval: float = 5.0
    queue_size: int = 1000
    max_retries: int = 5
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0
    checkpoint_interval: float = 1.0
    drain_timeout: float = 30.0
    read_from: str = "end"
    use_watchdog: bool = True
    log_level: str = "INFO"


# env var name -> (field, converter)
_ENV_OVERRIDES = {
    "OFFSETS_FILE": ("offsets_file", str),
    "BATCH_SIZE": ("batch_size", int),
    "FLUSH_INTERVAL": ("flush_interval", float),
    "POLL_INTERVAL": ("poll_interval", float),
    "RESCAN_INTERVAL": ("rescan_interval", float),
    "QUEUE_SIZE": ("queue_size", int),
    "MAX_RETRIES": ("max_retries", int),
    "RETRY_BASE_DELAY": ("retry_base_delay", float),
    "RETRY_MAX_DELAY": ("retry_max_delay", float),
    "CHECKPOINT_INTERVAL": ("checkpoint_interval", float),
    "DRAIN_TIMEOUT": ("drain_timeout", float),
    "READ_FROM": ("read_from", str),
    "USE_WATCHDOG": ("use_watchdog", _parse_bool),
    "LOG_LEVEL": ("log_level", str),
}


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects a key repeated within one mapping."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue   # "<<" entries may be overridden by explicit keys
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                continue   # unhashable key, SafeLoader reports it
            if duplicate:
                raise ConfigError(
                    f"duplicate key {key!r} at line {key_node.start_mark.line + 1}"
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def load_yaml_config(path: str | None = None) -> dict:
    """Load the pipeline YAML file.

    The path can be overridden via the ``CONFIG_PATH`` environment variable.
    A missing or malformed file is a ConfigError: there is nothing to run.
    So is a key repeated within one mapping, e.g. two sources with one id.
    """
    path = path or os.environ.get("CONFIG_PATH", DEFAULT_CONFIG_PATH)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.load(f, Loader=_UniqueKeyLoader) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"config file {path} not found") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"config file {path} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    logger.info("Loaded YAML config from %s", path)
    return data


def load_settings(yaml_data: dict | None = None) -> Settings:
    """Build Settings from defaults <- YAML ``settings`` section <- env vars."""
    yaml_data = yaml_data or {}
    known = {f.name: f for f in fields(Settings)}
    kwargs: dict = {}

    data_dir = yaml_data.get("data_dir")
    if data_dir:
        kwargs["offsets_file"] = os.path.join(data_dir, "offsets.json")

    section = yaml_data.get("settings") or {}
    if not isinstance(section, dict):
        raise ConfigError("'settings' must be a mapping")
    for key, value in section.items():
        if key not in known:
            raise ConfigError(f"unknown setting {key!r}")
        kwargs[key] = value

    for env_name, (name, convert) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None:
            continue
        try:
            kwargs[name] = convert(raw)
        except ValueError as e:
            raise ConfigError(f"invalid value for {env_name}: {raw!r}") from e

    settings = Settings(**kwargs)
    if settings.read_from not in ("end", "beginning"):
        raise ConfigError(f"read_from must be 'end' or 'beginning', got {settings.read_from!r}")
    if settings.batch_size < 1 or settings.queue_size < 1:
        raise ConfigError("batch_size and queue_size must be positive")
    return settings
