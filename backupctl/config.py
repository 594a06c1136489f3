"""
Configuration for backupctl.

The config file is a flat list of KEY=value lines, read once at startup.
The resulting Config is immutable and passed explicitly to every component.
"""

import os
import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

from backupctl.errors import ConfigMissing, ConfigInvalid


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = './backup.config'


@dataclass(frozen=True)
class RetentionPolicy:
    """How many daily, weekly and monthly generations to keep."""

    daily_keep: int = 7
    weekly_keep: int = 4
    monthly_keep: int = 3

    def __post_init__(self):
        for name in ('daily_keep', 'weekly_keep', 'monthly_keep'):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0:
                raise ConfigInvalid(f"{name} must be a non-negative integer, got {value!r}")

    @property
    def total(self) -> int:
        return self.daily_keep + self.weekly_keep + self.monthly_keep


@dataclass(frozen=True)
class Config:
    """Base configuration"""

    # Destination
    backup_destination: str = './Backups'
    backup_prefix: str = 'backup'
    date_format: str = '%Y-%m-%d-%H%M%S'
    min_space_mb: int = 100

    # Source selection
    exclude_patterns: Tuple[str, ...] = ('.git', 'node_modules', '.cache')

    # Retention
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)

    # Run behaviour
    default_dry_run: bool = False

    # State files
    snapshot_file: str = './backup.snar'
    lock_file: str = '/tmp/backup.lock'
    log_file: str = './backup.log'

    # Which file this config was read from (None means built-in defaults)
    source_path: Optional[str] = None


def _parse_int(key: str, value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise ConfigInvalid(f"{key} must be an integer, got {value!r}")
    if number < 0:
        raise ConfigInvalid(f"{key} must not be negative, got {number}")
    return number


def _parse_bool(key: str, value: str) -> bool:
    lowered = value.lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off', ''):
        return False
    raise ConfigInvalid(f"{key} must be a boolean (0/1), got {value!r}")


def _parse_patterns(value: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in value.split(',') if p.strip())


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    return value


def parse_config_lines(lines) -> dict:
    """
    Parse KEY=value lines into a dict of raw strings.

    Blank lines and lines starting with '#' are skipped. A leading
    'export ' and surrounding quotes are tolerated so that shell-style
    config files keep working.

    Args:
        lines: Iterable of text lines

    Returns:
        Dict mapping upper-case keys to string values

    Raises:
        ConfigInvalid: If a non-comment line has no '='
    """
    values = {}
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('export '):
            line = line[len('export '):].lstrip()
        if '=' not in line:
            raise ConfigInvalid(f"Line {lineno}: expected KEY=value, got {raw.rstrip()!r}")
        key, value = line.split('=', 1)
        values[key.strip().upper()] = _strip_quotes(value.strip())
    return values


def config_from_values(values: dict, source_path: Optional[str] = None) -> Config:
    """
    Build a Config from parsed KEY=value pairs, starting from the defaults.

    Raises:
        ConfigInvalid: If a value cannot be converted
    """
    defaults = Config()
    retention = defaults.retention
    changes = {}

    for key, value in values.items():
        if key == 'BACKUP_DESTINATION':
            changes['backup_destination'] = value
        elif key == 'EXCLUDE_PATTERNS':
            changes['exclude_patterns'] = _parse_patterns(value)
        elif key == 'DAILY_KEEP':
            retention = replace(retention, daily_keep=_parse_int(key, value))
        elif key == 'WEEKLY_KEEP':
            retention = replace(retention, weekly_keep=_parse_int(key, value))
        elif key == 'MONTHLY_KEEP':
            retention = replace(retention, monthly_keep=_parse_int(key, value))
        elif key == 'MIN_SPACE_MB':
            changes['min_space_mb'] = _parse_int(key, value)
        elif key == 'DEFAULT_DRY_RUN':
            changes['default_dry_run'] = _parse_bool(key, value)
        elif key == 'SNAPSHOT_FILE':
            changes['snapshot_file'] = value
        elif key == 'BACKUP_PREFIX':
            if not value:
                raise ConfigInvalid("BACKUP_PREFIX must not be empty")
            changes['backup_prefix'] = value
        elif key == 'DATE_FORMAT':
            if not value:
                raise ConfigInvalid("DATE_FORMAT must not be empty")
            changes['date_format'] = value
        elif key == 'LOCK_FILE':
            changes['lock_file'] = value
        elif key == 'LOG_FILE':
            changes['log_file'] = value
        else:
            logger.warning(f"Ignoring unknown config key: {key}")

    return replace(defaults, retention=retention, source_path=source_path, **changes)


def read_config_file(path: str) -> Config:
    """
    Read a config file.

    Raises:
        ConfigMissing: If the file does not exist
        ConfigInvalid: If the file is malformed, unreadable or not UTF-8
    """
    if not os.path.isfile(path):
        raise ConfigMissing(f"Config file not found: {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            values = parse_config_lines(f)
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigInvalid(f"Cannot read config file {path}: {e}") from e

    return config_from_values(values, source_path=os.path.abspath(path))


def resolve_config_path(path: Optional[str] = None) -> str:
    """Return the config file path that load_config() would read."""
    return path or os.environ.get('BACKUP_CONFIG') or DEFAULT_CONFIG_FILE


def load_config(path: Optional[str] = None) -> Config:
    """
    Load the configuration once at startup.

    Resolution order: explicit path, then the BACKUP_CONFIG environment
    variable, then ./backup.config. A missing file is not an error; the
    built-in defaults are returned instead (with source_path=None).

    Args:
        path: Optional explicit config file path

    Returns:
        Immutable Config instance

    Raises:
        ConfigInvalid: If the file exists but is malformed
    """
    try:
        return read_config_file(resolve_config_path(path))
    except ConfigMissing:
        return Config()
