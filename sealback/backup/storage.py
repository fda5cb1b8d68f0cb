"""
Remote replication of backup volumes.

Every provider implements the CloudStorage capability:
- validate_config(): raise ConfigurationError if the provider cannot be used
- upload_file(local_path, remote_path) -> UploadResult: single-shot transfer
- optionally create_upload_session / upload_chunk / complete_upload for
  chunked transfers (and abort_upload to discard a failed session)

CloudUploader wraps one storage with size-based dispatch, retries and
progress reporting. Storages in this module:
- S3Storage: AWS S3 (multipart upload for large files)
- LocalStorage: copy into a mirror directory (e.g. a NAS mount)
"""

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from sealback.errors import (
    NON_RETRYABLE_ERRORS,
    ChunkingNotSupportedError,
    ConfigurationError,
    RetryExhaustedError,
    SourceValidationError,
    TransientIOError,
)
from sealback.models import UploadResult
from sealback.utils.formatting import calculate_speed, format_duration, format_size, with_fields
from sealback.utils.progress import ProgressReporter
from sealback.utils.retry import RetryCallback, retry

DEFAULT_CHUNK_SIZE = 4 * 1024 * 1024  # 4 MiB
CHUNK_METHODS = ('create_upload_session', 'upload_chunk', 'complete_upload')


class UploadError(RetryExhaustedError):
    """Raised when a transfer keeps failing after all retries."""
    pass


class CloudStorage(Protocol):
    name: str

    def validate_config(self) -> None:
        ...

    def upload_file(self, local_path: str, remote_path: str) -> UploadResult:
        ...


@dataclass
class UploadOptions:
    """Transfer tuning for one storage."""
    chunk_size: int = DEFAULT_CHUNK_SIZE
    retry_times: int = 3
    retry_delay: float = 1.0
    on_progress: Optional[Callable[[float], None]] = None
    on_retry: Optional[RetryCallback] = None


class CloudUploader:
    """
    Uploads files through one CloudStorage.

    Files up to `chunk_size` bytes, and every file for storages without
    chunked sessions, go through a single upload_file call; larger files are
    sent chunk by chunk through an upload session. Each call is retried
    separately.
    """

    def __init__(self, storage, options: Optional[UploadOptions] = None,
                 logger: Optional[logging.Logger] = None, progress: Optional[ProgressReporter] = None):
        self.storage = storage
        self.options = options or UploadOptions()
        self.logger = logger or logging.getLogger(__name__)
        self.progress = progress

    @property
    def name(self) -> str:
        return getattr(self.storage, 'name', type(self.storage).__name__)

    @property
    def supports_chunking(self) -> bool:
        return all(callable(getattr(self.storage, method, None)) for method in CHUNK_METHODS)

    @property
    def chunk_size(self) -> int:
        """Requested chunk size adjusted to the storage's min_chunk_size and chunk_multiple."""
        size = max(self.options.chunk_size, getattr(self.storage, 'min_chunk_size', 0))
        multiple = getattr(self.storage, 'chunk_multiple', 0)
        if multiple:
            size = max(multiple, size - size % multiple)
        return size

    async def upload(self, local_path, remote_path: str) -> UploadResult:
        """
        Upload a local file to `remote_path`.

        Returns:
            UploadResult of the successful transfer

        Raises:
            ConfigurationError: If the storage configuration is invalid (no retry)
            SourceValidationError: If the local file does not exist
            UploadError: If the transfer failed on every attempt
        """
        started = time.monotonic()
        local_path = Path(local_path)

        await asyncio.to_thread(self.storage.validate_config)

        if not local_path.is_file():
            raise SourceValidationError(f"Local file not found: {local_path}")
        size = local_path.stat().st_size

        self.logger.info(with_fields(
            f"Starting upload to {self.name}",
            file=local_path, size=format_size(size), destination=remote_path,
        ))

        try:
            if size > self.chunk_size and self.supports_chunking:
                result = await self._upload_chunked(local_path, remote_path, size)
            else:
                result = await self._upload_single(local_path, remote_path)
        except NON_RETRYABLE_ERRORS as e:
            self.logger.error(f"Upload to {self.name} failed: {e}")
            raise
        except Exception as e:
            self.logger.error(with_fields(
                f"Upload to {self.name} failed: {e}",
                duration=format_duration(time.monotonic() - started),
            ))
            raise UploadError(
                f"Upload of {local_path.name} to {self.name} failed: {e}",
                attempts=self.options.retry_times,
                last_error=e,
            ) from e

        elapsed = time.monotonic() - started
        self.logger.info(with_fields(
            f"Upload to {self.name} complete",
            file=local_path, size=format_size(size), duration=format_duration(elapsed),
            speed=calculate_speed(size, elapsed), file_id=result.file_id, url=result.url,
        ))
        return result

    async def _retry(self, fn, non_retryable=NON_RETRYABLE_ERRORS):
        return await retry(
            fn,
            times=self.options.retry_times,
            delay=self.options.retry_delay,
            on_retry=self.options.on_retry,
            non_retryable=non_retryable,
            log=self.logger,
        )

    async def _upload_single(self, local_path: Path, remote_path: str) -> UploadResult:
        async def attempt() -> UploadResult:
            result = await asyncio.to_thread(self.storage.upload_file, str(local_path), remote_path)
            if not result.success:
                raise result.error or TransientIOError(f"{self.name} reported a failed upload")
            return result

        result = await self._retry(attempt)
        self._report_progress(100.0, 0)
        return result

    async def _upload_chunked(self, local_path: Path, remote_path: str, size: int) -> UploadResult:
        try:
            session = await self._retry(
                lambda: asyncio.to_thread(self.storage.create_upload_session, size, remote_path),
                non_retryable=NON_RETRYABLE_ERRORS + (ChunkingNotSupportedError,),
            )
        except ChunkingNotSupportedError:
            self.logger.debug(f"{self.name} has no chunked upload, using single-shot upload")
            return await self._upload_single(local_path, remote_path)

        chunk_size = self.chunk_size
        started = time.monotonic()
        uploaded = 0

        try:
            with open(local_path, 'rb') as f:
                for start in range(0, size, chunk_size):
                    end = min(start + chunk_size, size)
                    f.seek(start)
                    data = f.read(end - start)

                    async def send(data=data, start=start, end=end):
                        await asyncio.to_thread(self.storage.upload_chunk, session, data, start, end, size)

                    await self._retry(send)
                    uploaded += end - start
                    elapsed = time.monotonic() - started
                    self._report_progress(uploaded / size * 100, uploaded / elapsed if elapsed > 0 else 0)

            async def finish() -> UploadResult:
                result = await asyncio.to_thread(self.storage.complete_upload, session)
                if not result.success:
                    raise result.error or TransientIOError(f"{self.name} failed to complete upload")
                return result

            return await self._retry(finish)
        except Exception:
            await self._abort(session)
            raise

    async def _abort(self, session: Any) -> None:
        abort = getattr(self.storage, 'abort_upload', None)
        if abort is None:
            return
        try:
            await asyncio.to_thread(abort, session)
        except Exception as e:
            self.logger.warning(f"Failed to abort {self.name} upload session: {e}")

    def _report_progress(self, percent: float, speed: float) -> None:
        self.logger.debug(f"{self.name} upload progress: {percent:.0f}%")
        if self.options.on_progress:
            self.options.on_progress(percent)
        if self.progress:
            self.progress.report(f"upload {self.name}", percent, speed)


class S3Storage:
    """
    AWS S3 (or S3-compatible) storage.

    Large files use multipart upload; S3 requires parts of at least 5 MiB,
    so the effective chunk size is raised to that.
    """

    name = 's3'
    min_chunk_size = 5 * 1024 * 1024

    def __init__(self, access_key: str, secret_key: str, bucket_name: str, region: str = 'us-east-1',
                 endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID
            secret_key: AWS secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            endpoint_url: Optional endpoint for S3-compatible services
        """
        self.access_key = access_key
        self.secret_key = secret_key
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url
        self._client = None
        self._sessions: Dict[str, Dict[str, Any]] = {}

    @property
    def s3_client(self):
        if self._client is None:
            self._client = boto3.client(
                's3',
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                region_name=self.region,
                endpoint_url=self.endpoint_url,
            )
        return self._client

    def validate_config(self) -> None:
        if not self.access_key or not self.secret_key:
            raise ConfigurationError("S3 configuration invalid: missing access key or secret key")
        if not self.bucket_name:
            raise ConfigurationError("S3 configuration invalid: missing bucket name")

    @staticmethod
    def _key(remote_path: str) -> str:
        return remote_path.lstrip('/')

    def upload_file(self, local_path: str, remote_path: str) -> UploadResult:
        key = self._key(remote_path)
        try:
            with open(local_path, 'rb') as f:
                response = self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=f)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            return UploadResult(success=False, error=TransientIOError(f"S3 upload failed ({error_code}): {e}"))
        except (BotoCoreError, OSError) as e:
            return UploadResult(success=False, error=TransientIOError(f"S3 upload failed: {e}"))

        return UploadResult(
            success=True,
            file_id=response.get('ETag', key).strip('"'),
            url=f"s3://{self.bucket_name}/{key}",
        )

    def create_upload_session(self, file_size: int, remote_path: str) -> str:
        key = self._key(remote_path)
        try:
            response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"S3 multipart initiation failed: {e}") from e

        upload_id = response['UploadId']
        self._sessions[upload_id] = {'key': key, 'parts': []}
        return upload_id

    def upload_chunk(self, session_id: str, chunk: bytes, start: int, end: int, total: int) -> None:
        session = self._sessions[session_id]
        part_number = len(session['parts']) + 1
        try:
            response = self.s3_client.upload_part(
                Bucket=self.bucket_name,
                Key=session['key'],
                PartNumber=part_number,
                UploadId=session_id,
                Body=chunk,
            )
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"S3 part {part_number} upload failed: {e}") from e

        session['parts'].append({'PartNumber': part_number, 'ETag': response['ETag']})

    def complete_upload(self, session_id: str) -> UploadResult:
        session = self._sessions[session_id]
        try:
            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=session['key'],
                UploadId=session_id,
                MultipartUpload={'Parts': session['parts']},
            )
        except (ClientError, BotoCoreError) as e:
            return UploadResult(success=False, error=TransientIOError(f"S3 multipart completion failed: {e}"))

        del self._sessions[session_id]
        return UploadResult(success=True, file_id=session['key'], url=f"s3://{self.bucket_name}/{session['key']}")

    def abort_upload(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=session['key'], UploadId=session_id)


class LocalStorage:
    """
    Mirror directory storage (NAS mount, external drive).

    Stores files under {base_path}/{remote_path}.
    """

    name = 'local'

    def __init__(self, base_path):
        self.base_path = Path(base_path) if base_path else None

    def validate_config(self) -> None:
        if self.base_path is None:
            raise ConfigurationError("Local storage configuration invalid: missing path")
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Failed to create local storage directory: {e}") from e

    def upload_file(self, local_path: str, remote_path: str) -> UploadResult:
        relative_path = remote_path.lstrip('/')
        dest_path = self.base_path / relative_path
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, dest_path)
        except OSError as e:
            return UploadResult(success=False, error=TransientIOError(f"Failed to store {dest_path}: {e}"))
        return UploadResult(success=True, file_id=relative_path, url=dest_path.as_uri())

    def create_upload_session(self, file_size: int, remote_path: str) -> str:
        raise ChunkingNotSupportedError(self.name)

    def upload_chunk(self, session_id: str, chunk: bytes, start: int, end: int, total: int) -> None:
        raise ChunkingNotSupportedError(self.name)

    def complete_upload(self, session_id: str) -> UploadResult:
        raise ChunkingNotSupportedError(self.name)


def create_storage(name: str, settings: Dict[str, Any]):
    """
    Factory function to create the storage for a provider name.

    Args:
        name: 's3', 'local', 'sftp', 'onedrive', 'quark' or 'baidu'
        settings: Provider settings from the cloud configuration

    Returns:
        Storage instance implementing CloudStorage

    Raises:
        ConfigurationError: If the provider name is unknown
    """
    from .remote_storage import BaiduStorage, OneDriveStorage, QuarkStorage, SFTPStorage

    settings = settings or {}
    if name == 's3':
        return S3Storage(
            access_key=settings.get('access_key'),
            secret_key=settings.get('secret_key'),
            bucket_name=settings.get('bucket'),
            region=settings.get('region', 'us-east-1'),
            endpoint_url=settings.get('endpoint_url'),
        )
    elif name == 'local':
        return LocalStorage(settings.get('path'))
    elif name == 'sftp':
        return SFTPStorage(
            host=settings.get('host'),
            username=settings.get('username'),
            port=int(settings.get('port', 22)),
            password=settings.get('password'),
            private_key=settings.get('private_key'),
        )
    elif name == 'onedrive':
        return OneDriveStorage(
            client_id=settings.get('client_id'),
            client_secret=settings.get('client_secret'),
            tenant_id=settings.get('tenant_id'),
            user_id=settings.get('user_id'),
        )
    elif name == 'quark':
        return QuarkStorage(cookie=settings.get('cookie'))
    elif name == 'baidu':
        return BaiduStorage(
            access_token=settings.get('access_token'),
            app_dir=settings.get('app_dir', '/apps/sealback'),
        )
    else:
        raise ConfigurationError(f"Unknown cloud provider: {name}")


def upload_options(settings: Dict[str, Any]) -> UploadOptions:
    """Build UploadOptions from optional chunk_size / retry_times / retry_delay settings."""
    settings = settings or {}
    return UploadOptions(
        chunk_size=int(settings.get('chunk_size', DEFAULT_CHUNK_SIZE)),
        retry_times=int(settings.get('retry_times', 3)),
        retry_delay=float(settings.get('retry_delay', 1.0)),
    )
