"""
Data model of the backup pipeline.

Sources and compression settings are loaded once and treated as read-only;
volumes and lock files only live for the duration of a run.
"""

import json
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_RETENTION_DAYS = 7
DEFAULT_VOLUME_SIZE = 2 * 1024 * 1024 * 1024  # 2 GiB


@dataclass(frozen=True)
class Source:
    """A configured backup input."""
    type: str
    path: str
    retention: int = DEFAULT_RETENTION_DAYS
    schedule: Optional[str] = None  # cron expression

    def __repr__(self):
        return f'<Source {self.type} path={self.path} retention={self.retention}>'


@dataclass(frozen=True)
class CompressionConfig:
    """Settings for one compress+encrypt pass."""
    algorithm: str = 'zip'
    level: int = 9
    password: str = field(default='', repr=False)
    encryption_method: str = 'aes256'
    volume_size: int = DEFAULT_VOLUME_SIZE


@dataclass(frozen=True)
class Volume:
    """
    One contiguous byte range of a logical source.

    index is 1-based; offset/length describe the range of the
    pre-compression input covered by this volume.
    """
    index: int
    total_volumes: int
    source_offset: int
    source_length: int
    path: Optional[Path] = None

    @property
    def is_split(self) -> bool:
        return self.total_volumes > 1

    def with_path(self, path: Path) -> 'Volume':
        return replace(self, path=Path(path))

    def to_info(self) -> Dict[str, int]:
        """Descriptor embedded in the header of split volumes."""
        return {
            'index': self.index,
            'total': self.total_volumes,
            'offset': self.source_offset,
            'size': self.source_length,
        }

    @classmethod
    def from_info(cls, info: Dict[str, Any], path: Optional[Path] = None) -> 'Volume':
        return cls(
            index=int(info['index']),
            total_volumes=int(info['total']),
            source_offset=int(info['offset']),
            source_length=int(info['size']),
            path=Path(path) if path is not None else None,
        )


@dataclass(frozen=True)
class LockFile:
    """Advisory marker written next to an in-progress volume."""
    timestamp: str
    pid: int

    @classmethod
    def for_current_process(cls) -> 'LockFile':
        return cls(
            timestamp=datetime.now(timezone.utc).isoformat(),
            pid=os.getpid(),
        )

    @staticmethod
    def path_for(volume_path: Path) -> Path:
        volume_path = Path(volume_path)
        return volume_path.with_name(volume_path.name + '.lock')

    def to_json(self) -> str:
        return json.dumps({'timestamp': self.timestamp, 'pid': self.pid})

    def write(self, volume_path: Path) -> Path:
        """
        Write the lock file beside a volume.

        Args:
            volume_path: Path of the volume being produced

        Returns:
            Path of the lock file
        """
        lock_path = self.path_for(volume_path)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_path.write_text(self.to_json())
        return lock_path


@dataclass
class UploadResult:
    """Outcome of one upload attempt."""
    success: bool
    file_id: Optional[str] = None
    url: Optional[str] = None
    error: Optional[Exception] = None
