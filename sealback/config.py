"""
Configuration loading.

Built-in defaults (secrets taken from environment variables) are deep-merged
with an optional JSON override file, paths are expanded, and the result is
validated into immutable dataclasses. The pipeline never reads configuration
from anywhere else.
"""

import copy
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from sealback.errors import ConfigurationError
from sealback.models import DEFAULT_RETENTION_DAYS, DEFAULT_VOLUME_SIZE, CompressionConfig, Source

SOURCE_TYPES = ('mp', 'cr', 'common')
CLOUD_PROVIDERS = ('s3', 'local', 'sftp', 'onedrive', 'quark', 'baidu')
LOG_LEVELS = ('debug', 'info', 'warn', 'error')
COMPRESSION_ALGORITHMS = ('zip', '7z', 'gzip', 'bz2', 'xz', 'none')
ENCRYPTION_METHODS = ('aes256', 'aes256-gcm')

LOCAL_CONFIG_PATH = Path(__file__).resolve().parent.parent / 'config' / 'local.json'

SIZE_UNITS = {'': 1, 'K': 1024, 'M': 1024 ** 2, 'G': 1024 ** 3, 'T': 1024 ** 4}


@dataclass(frozen=True)
class CloudConfig:
    """Remote replication settings."""
    enabled: Tuple[str, ...] = ()
    remote_dir: str = '/backups'
    providers: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class LoggerConfig:
    dir: str = 'logs'
    level: str = 'info'
    max_files: int = 14


@dataclass(frozen=True)
class BackupConfig:
    """Complete, validated configuration of a backup run."""
    sources: Tuple[Source, ...]
    backup_dir: str
    first: CompressionConfig
    second: CompressionConfig
    cloud: CloudConfig = field(default_factory=CloudConfig)
    logger: LoggerConfig = field(default_factory=LoggerConfig)
    temp_dir: Optional[str] = None


def default_config() -> Dict[str, Any]:
    """Default settings; secrets come from the environment."""
    home = Path.home()
    return {
        'sources': [
            {'path': str(home / 'Documents'), 'type': 'common', 'retention': DEFAULT_RETENTION_DAYS},
        ],
        'backup': {
            'dir': str(home / 'Backups'),
            'temp_dir': os.environ.get('SEALBACK_TEMP_DIR'),
            'compression': {
                'first': {
                    'algorithm': 'zip',
                    'level': 9,
                    'password': os.environ.get('BACKUP_PASSWORD', ''),
                    'encryption_method': 'aes256',
                },
                'second': {
                    'algorithm': 'zip',
                    'level': 9,
                    'password': os.environ.get('BACKUP_SECOND_PASSWORD', ''),
                    'encryption_method': 'aes256',
                },
            },
        },
        'cloud': {
            'enabled': [],
            'remote_dir': '/backups',
            's3': {
                'access_key': os.environ.get('AWS_ACCESS_KEY_ID', ''),
                'secret_key': os.environ.get('AWS_SECRET_ACCESS_KEY', ''),
                'bucket': os.environ.get('S3_BUCKET', ''),
                'region': os.environ.get('AWS_REGION', 'us-east-1'),
            },
            'local': {
                'path': os.environ.get('MIRROR_DIR', ''),
            },
            'sftp': {
                'host': os.environ.get('SFTP_HOST', ''),
                'port': 22,
                'username': os.environ.get('SFTP_USERNAME', ''),
                'password': os.environ.get('SFTP_PASSWORD', ''),
                'private_key': os.environ.get('SFTP_PRIVATE_KEY', ''),
            },
            'onedrive': {
                'client_id': os.environ.get('ONEDRIVE_CLIENT_ID', ''),
                'client_secret': os.environ.get('ONEDRIVE_CLIENT_SECRET', ''),
                'tenant_id': os.environ.get('ONEDRIVE_TENANT_ID', ''),
                'user_id': os.environ.get('ONEDRIVE_USER_ID', ''),
            },
            'quark': {
                'cookie': os.environ.get('QUARK_COOKIE', ''),
            },
            'baidu': {
                'access_token': os.environ.get('BAIDU_ACCESS_TOKEN', ''),
                'app_dir': '/apps/sealback',
            },
        },
        'logger': {
            'dir': 'logs',
            'level': 'info',
            'max_files': 14,
        },
    }


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge dicts; lists and scalars in `override` replace those in `base`."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _is_path_field(key: str) -> bool:
    return key in ('path', 'dir', 'directory', 'private_key') or key.endswith(('_path', '_dir'))


def expand_paths(value: Any, key: str = '') -> Any:
    """Expand ~ in every path-like field of a nested config structure."""
    if isinstance(value, dict):
        return {k: expand_paths(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_paths(item, key) for item in value]
    if isinstance(value, str) and _is_path_field(key) and value.startswith('~'):
        return os.path.expanduser(value)
    return value


def parse_size(value: Any) -> int:
    """
    Parse a human size such as '2G', '512M', '4096' or an int.

    Raises:
        ConfigurationError: If the value cannot be parsed or is not positive
    """
    if isinstance(value, int) and not isinstance(value, bool):
        size = value
    else:
        match = re.fullmatch(r'\s*(\d+)\s*([KMGT]?)(?:i?B)?\s*', str(value), re.IGNORECASE)
        if not match:
            raise ConfigurationError(f"Invalid size: {value!r}")
        size = int(match.group(1)) * SIZE_UNITS[match.group(2).upper()]

    if size <= 0:
        raise ConfigurationError(f"Size must be positive: {value!r}")
    return size


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigurationError(message)


def _build_source(raw: Dict[str, Any], index: int) -> Source:
    where = f"sources[{index}]"
    _require(isinstance(raw, dict), f"{where} must be an object")
    _require(raw.get('type') in SOURCE_TYPES, f"{where}.type must be one of {list(SOURCE_TYPES)}")
    _require(bool(raw.get('path')), f"{where}.path must not be empty")

    retention = raw.get('retention', DEFAULT_RETENTION_DAYS)
    _require(isinstance(retention, int) and retention >= 1, f"{where}.retention must be an integer >= 1")

    schedule = raw.get('schedule')
    _require(schedule is None or (isinstance(schedule, str) and len(schedule.split()) == 5),
             f"{where}.schedule must be a 5-field cron expression")

    return Source(type=raw['type'], path=str(raw['path']), retention=retention, schedule=schedule)


def _build_compression(raw: Dict[str, Any], name: str) -> CompressionConfig:
    where = f"backup.compression.{name}"
    _require(isinstance(raw, dict), f"{where} must be an object")

    algorithm = raw.get('algorithm', raw.get('method', 'zip'))
    _require(algorithm in COMPRESSION_ALGORITHMS, f"{where}.algorithm must be one of {list(COMPRESSION_ALGORITHMS)}")

    level = raw.get('level', 9)
    _require(isinstance(level, int) and 1 <= level <= 9, f"{where}.level must be between 1 and 9")

    method = raw.get('encryption_method', raw.get('encryptionMethod', 'aes256'))
    _require(method in ENCRYPTION_METHODS, f"{where}.encryption_method must be one of {list(ENCRYPTION_METHODS)}")

    volume_size = raw.get('volume_size', raw.get('volumeSize'))
    try:
        volume_size = parse_size(volume_size) if volume_size else DEFAULT_VOLUME_SIZE
    except ConfigurationError as e:
        raise ConfigurationError(f"{where}.volume_size: {e}") from e

    return CompressionConfig(
        algorithm=algorithm,
        level=level,
        password=raw.get('password') or '',
        encryption_method=method,
        volume_size=volume_size,
    )


def build_config(raw: Dict[str, Any]) -> BackupConfig:
    """
    Validate a raw (merged, path-expanded) config dict.

    Raises:
        ConfigurationError: On the first invalid field
    """
    sources = raw.get('sources') or []
    _require(isinstance(sources, list), "sources must be a list")

    backup = raw.get('backup') or {}
    _require(bool(backup.get('dir')), "backup.dir must not be empty")
    compression = backup.get('compression') or {}

    cloud = raw.get('cloud') or {}
    enabled = cloud.get('enabled') or []
    unknown = [name for name in enabled if name not in CLOUD_PROVIDERS]
    _require(not unknown, f"cloud.enabled contains unknown providers: {unknown}")
    providers = {name: dict(cloud.get(name) or {}) for name in CLOUD_PROVIDERS}

    logger = raw.get('logger') or {}
    level = logger.get('level', 'info')
    _require(level in LOG_LEVELS, f"logger.level must be one of {list(LOG_LEVELS)}")

    return BackupConfig(
        sources=tuple(_build_source(source, i) for i, source in enumerate(sources)),
        backup_dir=str(backup['dir']),
        first=_build_compression(compression.get('first') or {}, 'first'),
        second=_build_compression(compression.get('second') or {}, 'second'),
        cloud=CloudConfig(
            enabled=tuple(enabled),
            remote_dir=cloud.get('remote_dir', cloud.get('remoteDir', '/backups')),
            providers=providers,
        ),
        logger=LoggerConfig(
            dir=str(logger.get('dir', 'logs')),
            level=level,
            max_files=int(logger.get('max_files', logger.get('maxFiles', 14))),
        ),
        temp_dir=backup.get('temp_dir'),
    )


def load_config(path: Optional[str] = None) -> BackupConfig:
    """
    Load the configuration.

    Override file lookup order: `path`, $SEALBACK_CONFIG, config/local.json.

    Raises:
        ConfigurationError: If the override file is unreadable or invalid
    """
    override_path = path or os.environ.get('SEALBACK_CONFIG')
    if override_path is None and LOCAL_CONFIG_PATH.exists():
        override_path = str(LOCAL_CONFIG_PATH)

    override: Dict[str, Any] = {}
    if override_path:
        try:
            with open(os.path.expanduser(override_path), 'r') as f:
                override = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Failed to read config file {override_path}: {e}") from e
        _require(isinstance(override, dict), f"Config file {override_path} must contain a JSON object")

    merged = expand_paths(deep_merge(default_config(), override))
    return build_config(merged)


def enabled_sources(config: BackupConfig, types: Optional[List[str]] = None) -> List[Source]:
    """Sources restricted to the given types (all when `types` is empty)."""
    if not types:
        return list(config.sources)
    return [source for source in config.sources if source.type in types]
