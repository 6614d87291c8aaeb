import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml                     # For loading the .yml target configuration

from oracle_xport.collectors import OPTIONAL_FEATURES
from oracle_xport.custom_queries import build_custom_families
from oracle_xport.errors import ConfigError
from oracle_xport.orchestrator import DEFAULT_TIMEOUT, validate_timeout
from oracle_xport.registry import CustomQuerySpec, TargetDescriptor, TargetSet, mask_connection

DEFAULT_CONFIG_PATH = "oracle.yml"
PROBE_MODES = ("inprocess", "subprocess")


def parse_duration(s):
    """
    Converts a duration string like '500ms', '10s', '5m', or '2h' into seconds (float).
    """
    units = {
        'ms': 0.001,
        's': 1,
        'm': 60,
        'h': 3600
    }

    s = str(s).strip().lower()
    for unit, factor in units.items():
        if s.endswith(unit):
            try:
                return float(s[:-len(unit)]) * factor
            except ValueError:
                raise ValueError(f"Invalid numeric value in duration: {s}")
    # Default fallback: assume it's raw seconds
    try:
        return float(s)
    except ValueError:
        raise ValueError(f"Unrecognized duration format: {s}")


@dataclass(frozen=True)
class GlobalSettings:
    timeout: int = DEFAULT_TIMEOUT
    timezone: str = "system"
    log_scraped_metrics: bool = False
    default_metrics: bool = True
    features: tuple = field(default_factory=tuple)
    probe_isolation: str = "inprocess"

    def base_features(self):
        """Feature flags that are on for every request."""
        features = set(self.features)
        if self.default_metrics:
            features.add("default")
        return features


def read_config(path):
    """Reads and parses the YAML file. Returns the raw mapping."""
    config_path = Path(path)
    logging.info(f"Loading config from: {config_path}")
    try:
        with config_path.open() as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {config_path}") from None
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config file '{config_path}': {e}") from e
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ConfigError(f"Config file '{config_path}' must contain a mapping at the top level")
    return config


def masked_config(config):
    """Copy of the raw config with connection passwords hidden, safe to log or return."""
    config_to_log = yaml.safe_load(yaml.dump(config))
    for conn in config_to_log.get('connections') or []:
        if isinstance(conn, dict) and conn.get('connection'):
            conn['connection'] = mask_connection(str(conn['connection']))
    return config_to_log


def _string_list(value, what):
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, list):
        raise ConfigError(f"{what} must be a list of column names")
    return [str(v) for v in value]


def parse_query(entry, where):
    if not isinstance(entry, dict):
        raise ConfigError(f"{where}: query must be a mapping")
    name = entry.get('name')
    sql = entry.get('sql')
    if not name or not sql:
        raise ConfigError(f"{where}: query needs both 'name' and 'sql'")
    metrics = _string_list(entry.get('metrics'), f"{where} query '{name}' metrics")
    if not metrics:
        raise ConfigError(f"{where}: query '{name}' declares no metrics")
    labels = _string_list(entry.get('labels'), f"{where} query '{name}' labels")
    return CustomQuerySpec(
        name=str(name),
        sql=str(sql),
        metrics=frozenset(metrics),
        labels=tuple(labels),
        help=str(entry.get('help') or ''),
    )


def parse_target(entry, index):
    where = f"connections[{index}]"
    if not isinstance(entry, dict):
        raise ConfigError(f"{where} must be a mapping")
    queries = entry.get('queries') or []
    if not isinstance(queries, list):
        raise ConfigError(f"{where}: 'queries' must be a list")
    return TargetDescriptor(
        connection=str(entry.get('connection') or ''),
        database=str(entry.get('database') or ''),
        instance=str(entry.get('instance') or ''),
        queries=tuple(parse_query(q, where) for q in queries),
    )


def parse_targets(config, source=None):
    connections = config.get('connections') or []
    if not isinstance(connections, list):
        raise ConfigError("'connections' must be a list")
    targets = [parse_target(entry, i) for i, entry in enumerate(connections)]
    return TargetSet(targets, build_custom_families(targets), source=source)


def parse_settings(config):
    global_config = config.get('global') or {}
    if not isinstance(global_config, dict):
        raise ConfigError("'global' must be a mapping")
    try:
        timeout = validate_timeout(parse_duration(global_config.get('timeout', DEFAULT_TIMEOUT)))
    except ValueError as e:
        raise ConfigError(f"Invalid global timeout: {e}") from e
    features = tuple(_string_list(global_config.get('features'), "global features"))
    unknown = set(features) - set(OPTIONAL_FEATURES)
    if unknown:
        raise ConfigError(f"Unknown features {sorted(unknown)}; expected some of {list(OPTIONAL_FEATURES)}")
    probe_isolation = global_config.get('probe_isolation', 'inprocess')
    if probe_isolation not in PROBE_MODES:
        raise ConfigError(f"probe_isolation must be one of {PROBE_MODES}, got '{probe_isolation}'")
    return GlobalSettings(
        timeout=timeout,
        timezone=str(global_config.get('timezone', 'system')),
        log_scraped_metrics=bool(global_config.get('log_scraped_metrics', False)),
        default_metrics=bool(global_config.get('default_metrics', True)),
        features=features,
        probe_isolation=probe_isolation,
    )


def load_targets(path):
    """Registry loader: path -> TargetSet. Raises ConfigError."""
    config = read_config(path)
    target_set = parse_targets(config, source=str(path))
    logging.info(f"Loaded config (passwords hidden): {masked_config(config)}")
    return target_set


def load_config(path):
    """Returns (GlobalSettings, TargetSet, raw config). Raises ConfigError."""
    config = read_config(path)
    return parse_settings(config), parse_targets(config, source=str(path)), config
