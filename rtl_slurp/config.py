"""Configuration loading from an optional YAML file, env vars, and CLI args.

Precedence, lowest to highest: dataclass defaults, YAML file, environment
variables, command-line flags.
"""

import argparse
import logging
import os
import sys
from dataclasses import dataclass, field, replace

import yaml

from rtl_slurp.errors import ConfigError
from rtl_slurp.point import PRECISIONS

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "VERBOSE", "INFO", "WARNING", "ERROR")


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class MetadataFieldSet:
    """Tags to inject into a point when every comparison tag matches."""
    comp_equal_tags: dict[str, str] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)

    def applies_to(self, point_tags: dict[str, str]) -> bool:
        # A predicate on a tag the point lacks does not hold.
        return all(
            name in point_tags and point_tags[name] == value
            for name, value in self.comp_equal_tags.items()
        )

    def apply(self, point_tags: dict[str, str]) -> bool:
        """Merge ``tags`` into *point_tags* when applicable. Returns True if applied."""
        if not self.applies_to(point_tags):
            return False
        point_tags.update(self.tags)
        return True


@dataclass(frozen=True)
class InfluxConfig:
    host: str = "localhost"
    port: int = 8086
    username: str = ""
    password: str = ""
    database: str = "slurp-rtl_433"
    https: bool = False
    flush_point_count: int = 200
    flush_time_trigger: float = 10.0
    flush_tick_seconds: float = 10.0
    precision: str = "s"
    timeout: float = 10.0
    retry_step_seconds: float = 1.0
    retry_max_wait: float = 30.0

    @property
    def url(self) -> str:
        scheme = "https" if self.https else "http"
        return f"{scheme}://{self.host}:{self.port}"


@dataclass(frozen=True)
class Config:
    data_location: str = "rtl_433.log"
    metadata_dir: str = "./meta"
    log_file: str = ""
    log_level: str = "INFO"
    slurp_sleep_seconds: float = 5.0
    slurper_shutdown_max_wait: float = 5.0
    log_file_check_seconds: float = 30.0
    filer_shutdown_max_wait: float = 20.0
    read_chunk_size: int = 4096
    queue_size: int = 1000
    watch_events: bool = True
    influxdb: InfluxConfig = field(default_factory=InfluxConfig)
    meta: dict[str, dict[str, MetadataFieldSet]] = field(default_factory=dict)

    @property
    def data_file_name(self) -> str:
        return split_log_path(self.data_location)[0]

    @property
    def data_file_dir(self) -> str:
        return split_log_path(self.data_location)[1]


# Keys accepted at the top level of the YAML file, with their types.
_TOP_LEVEL_KEYS = {
    "data_location": str,
    "metadata_dir": str,
    "log_file": str,
    "log_level": str,
    "slurp_sleep_seconds": float,
    "slurper_shutdown_max_wait": float,
    "log_file_check_seconds": float,
    "filer_shutdown_max_wait": float,
    "read_chunk_size": int,
    "queue_size": int,
    "watch_events": bool,
}

_INFLUX_KEYS = {
    "host": str,
    "port": int,
    "username": str,
    "password": str,
    "database": str,
    "https": bool,
    "flush_point_count": int,
    "flush_time_trigger": float,
    "flush_tick_seconds": float,
    "precision": str,
    "timeout": float,
    "retry_step_seconds": float,
    "retry_max_wait": float,
}

_ENV_TOP_LEVEL = {
    "DATA_LOCATION": "data_location",
    "METADATA_DIR": "metadata_dir",
    "LOG_FILE": "log_file",
    "LOG_LEVEL": "log_level",
    "SLURP_SLEEP_SECONDS": "slurp_sleep_seconds",
    "LOG_FILE_CHECK_SECONDS": "log_file_check_seconds",
    "FILER_SHUTDOWN_MAX_WAIT": "filer_shutdown_max_wait",
    "WATCH_EVENTS": "watch_events",
}

_ENV_INFLUX = {
    "INFLUX_HOST": "host",
    "INFLUX_PORT": "port",
    "INFLUX_USERNAME": "username",
    "INFLUX_PASSWORD": "password",
    "INFLUX_DATABASE": "database",
    "INFLUX_HTTPS": "https",
    "FLUSH_POINT_COUNT": "flush_point_count",
    "FLUSH_TIME_TRIGGER": "flush_time_trigger",
}


def split_log_path(path: str) -> tuple[str, str]:
    """Split a data location into ``(file name, directory)``.

    A bare file name lives in the current directory.
    """
    directory, name = os.path.split(path)
    if not name:
        raise ConfigError(f"no file name in data location {path!r}")
    return name, directory or "."


def _coerce(key: str, value, typ):
    try:
        if typ is bool:
            return _parse_bool(value)
        return typ(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid value for {key}: {value!r} ({e})") from e


def _parse_meta(raw) -> dict[str, dict[str, MetadataFieldSet]]:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("meta must be a mapping of model name to field sets")
    meta = {}
    for model, sets in raw.items():
        if not isinstance(sets, dict):
            raise ConfigError(f"meta for {model!r} must be a mapping of named field sets")
        meta[model] = {}
        for name, body in sets.items():
            body = body or {}
            meta[model][name] = MetadataFieldSet(
                comp_equal_tags={str(k): str(v) for k, v in (body.get("comp_equal_tags") or {}).items()},
                tags={str(k): str(v) for k, v in (body.get("tags") or {}).items()},
            )
    return meta


def load_yaml_config(path: str | None) -> dict:
    """Load a YAML config file. Returns an empty dict if no path or file is missing."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must hold a mapping")
    logger.info("Loaded YAML config from %s", path)
    return data


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rtl-slurp",
        description="Ship rtl_433 JSON log records to InfluxDB",
    )
    parser.add_argument("-c", "--config", default=None, help="Path to the YAML config file")
    parser.add_argument("-d", "--data-location", default=None,
                        help="Path of the rtl_433 log file to monitor")
    parser.add_argument("-m", "--meta-data-location", default=None,
                        help="Directory holding per-file metadata")
    parser.add_argument("-f", "--fqdn", default=None, help="InfluxDB host name")
    parser.add_argument("-P", "--port", type=int, default=None, help="InfluxDB port")
    parser.add_argument("-u", "--username", default=None, help="InfluxDB username")
    parser.add_argument("-p", "--password", default=None, help="InfluxDB password")
    parser.add_argument("-b", "--database", default=None, help="InfluxDB database name")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("-D", "--debug", action="store_true", help="Enable debug logging")
    return parser


def _validate(cfg: Config) -> Config:
    split_log_path(cfg.data_location)
    if cfg.log_level not in LOG_LEVELS:
        raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
    if cfg.influxdb.precision not in PRECISIONS:
        raise ConfigError(f"unsupported precision {cfg.influxdb.precision!r}")
    for name in ("slurp_sleep_seconds", "log_file_check_seconds", "read_chunk_size", "queue_size"):
        if getattr(cfg, name) <= 0:
            raise ConfigError(f"{name} must be positive")
    if cfg.influxdb.flush_point_count <= 0:
        raise ConfigError("flush_point_count must be positive")
    if cfg.influxdb.flush_tick_seconds <= 0:
        raise ConfigError("flush_tick_seconds must be positive")
    return cfg


def load_config(argv: list[str] | None = None, environ=None) -> Config:
    """Build Config from defaults <- YAML <- env vars <- CLI args."""
    if argv is None:
        argv = sys.argv[1:]
    if environ is None:
        environ = os.environ

    args = build_cli_parser().parse_args(argv)
    yaml_data = load_yaml_config(args.config)

    top: dict = {}
    influx: dict = {}

    for key, value in yaml_data.items():
        if key in _TOP_LEVEL_KEYS:
            top[key] = _coerce(key, value, _TOP_LEVEL_KEYS[key])
        elif key == "influxdb":
            for ikey, ivalue in (value or {}).items():
                if ikey not in _INFLUX_KEYS:
                    logger.warning("Ignoring unknown influxdb config key %s", ikey)
                    continue
                influx[ikey] = _coerce(ikey, ivalue, _INFLUX_KEYS[ikey])
        elif key != "meta":
            logger.warning("Ignoring unknown config key %s", key)

    for env_name, key in _ENV_TOP_LEVEL.items():
        if env_name in environ:
            top[key] = _coerce(key, environ[env_name], _TOP_LEVEL_KEYS[key])
    for env_name, key in _ENV_INFLUX.items():
        if env_name in environ:
            influx[key] = _coerce(key, environ[env_name], _INFLUX_KEYS[key])

    if args.data_location is not None:
        top["data_location"] = args.data_location
    if args.meta_data_location is not None:
        top["metadata_dir"] = args.meta_data_location
    if args.fqdn is not None:
        influx["host"] = args.fqdn
    if args.port is not None:
        influx["port"] = args.port
    if args.username is not None:
        influx["username"] = args.username
    if args.password is not None:
        influx["password"] = args.password
    if args.database is not None:
        influx["database"] = args.database
    if args.verbose:
        top["log_level"] = "VERBOSE"
    if args.debug:
        top["log_level"] = "DEBUG"

    if "log_level" in top:
        top["log_level"] = top["log_level"].upper()

    cfg = Config(
        influxdb=replace(InfluxConfig(), **influx),
        meta=_parse_meta(yaml_data.get("meta")),
        **top,
    )
    return _validate(cfg)
