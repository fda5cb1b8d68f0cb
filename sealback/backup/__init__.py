"""
Backup module for Sealback.

This module handles the core backup functionality including:
- Volume planning
- Two-pass compression and encryption
- Cloud replication (S3, local mirror, SFTP, OneDrive, Quark)
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupOrchestrator, BackupRunError
from .volumes import VolumeSplitter
from .compression import CompressionEngine, CompressionError, restore
from .storage import CloudUploader, UploadError, S3Storage, LocalStorage, create_storage
from .retention import RetentionCleaner

__all__ = [
    'BackupOrchestrator',
    'BackupRunError',
    'VolumeSplitter',
    'CompressionEngine',
    'CompressionError',
    'restore',
    'CloudUploader',
    'UploadError',
    'S3Storage',
    'LocalStorage',
    'create_storage',
    'RetentionCleaner'
]
