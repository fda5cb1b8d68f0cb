"""
Shared pytest fixtures for Sealback tests.

This module provides fixtures for:
- Fast encryption codec and compression settings
- Source trees and sample configs
- Stub storage for upload tests
- Mock fixtures for external services (S3, SSH)
- Captured logger
"""

import logging
import os
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from sealback.config import BackupConfig, CloudConfig, LoggerConfig
from sealback.errors import TransientIOError
from sealback.models import CompressionConfig, Source, UploadResult
from sealback.utils.crypto import EncryptionCodec
from sealback.utils.progress import ProgressReporter

MiB = 1024 * 1024


@pytest.fixture
def codec():
    """EncryptionCodec with a cheap scrypt cost so tests run fast."""
    return EncryptionCodec(scrypt_n=2 ** 4)


@pytest.fixture
def first_pass():
    return CompressionConfig(algorithm='zip', level=6, password='first-secret')


@pytest.fixture
def second_pass():
    return CompressionConfig(algorithm='xz', level=1, password='second-secret',
                             encryption_method='aes256-gcm')


@pytest.fixture
def logger():
    """Logger whose records are captured by pytest's caplog."""
    log = logging.getLogger('sealback.tests')
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def quiet_progress(logger):
    return ProgressReporter(logger=logger, enabled=False)


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a small source directory.

    Creates:
    - notes.txt
    - data.bin (64 KiB of random bytes)
    - nested/deeper.txt
    """
    root = tmp_path / 'source'
    root.mkdir()
    (root / 'notes.txt').write_text('Test content 1\n' * 100)
    (root / 'data.bin').write_bytes(os.urandom(64 * 1024))
    nested = root / 'nested'
    nested.mkdir()
    (nested / 'deeper.txt').write_text('Nested test content')
    return root


@pytest.fixture
def random_file(tmp_path):
    """Factory for files of random (incompressible) content."""
    def make(name, size):
        path = tmp_path / name
        path.write_bytes(os.urandom(size))
        return path
    return make


@pytest.fixture
def sample_config(tmp_path, first_pass, second_pass):
    """BackupConfig with three sources and no cloud providers."""
    sources = []
    for source_type in ('mp', 'cr', 'common'):
        path = tmp_path / 'sources' / source_type
        path.mkdir(parents=True)
        (path / 'file.txt').write_text(f'{source_type} content')
        sources.append(Source(type=source_type, path=str(path)))

    return BackupConfig(
        sources=tuple(sources),
        backup_dir=str(tmp_path / 'backups'),
        first=first_pass,
        second=second_pass,
        cloud=CloudConfig(),
        logger=LoggerConfig(dir=str(tmp_path / 'logs')),
        temp_dir=str(tmp_path / 'tmp'),
    )


class StubStorage:
    """
    In-memory CloudStorage.

    Fails the first `fail_times` calls to upload_file with `error`, then
    succeeds. Chunked methods are only present when `chunked=True`.
    """

    name = 'stub'

    def __init__(self, fail_times=0, error=None, chunked=False):
        self.fail_times = fail_times
        self.error = error
        self.upload_calls = []
        self.chunks = []
        self.completed = []
        self.aborted = []
        if chunked:
            self.create_upload_session = self._create_upload_session
            self.upload_chunk = self._upload_chunk
            self.complete_upload = self._complete_upload
            self.abort_upload = self._abort_upload

    def validate_config(self):
        pass

    def upload_file(self, local_path, remote_path):
        self.upload_calls.append((local_path, remote_path))
        if len(self.upload_calls) <= self.fail_times:
            return UploadResult(success=False, error=self.error or TransientIOError('network down'))
        return UploadResult(success=True, file_id=remote_path, url=f'stub://{remote_path}')

    def _create_upload_session(self, file_size, remote_path):
        return f'session:{remote_path}'

    def _upload_chunk(self, session, chunk, start, end, total):
        self.chunks.append((start, end, total, len(chunk)))

    def _complete_upload(self, session):
        self.completed.append(session)
        return UploadResult(success=True, file_id=session)

    def _abort_upload(self, session):
        self.aborted.append(session)


@pytest.fixture
def stub_storage():
    return StubStorage


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('sealback.backup.remote_storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh
