"""
Compression engine: turns a source file or directory into encrypted volumes.

Each backup runs two passes in series. Pass 1 compresses and encrypts the
source into an intermediate artifact in a private temp location; pass 2
compresses and encrypts that artifact into the final destination. Each pass
decides on its own whether its input must be split into volumes.

Supported algorithms:
- zip / gzip: deflate (zlib)
- bz2: bzip2
- 7z / xz: LZMA
- none: stored
"""

import asyncio
import bz2
import logging
import lzma
import os
import shutil
import tarfile
import tempfile
import time
import uuid
import zlib
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence

from sealback.errors import (
    NON_RETRYABLE_ERRORS,
    ConfigurationError,
    IntegrityError,
    RetryExhaustedError,
    SourceValidationError,
    TransientIOError,
)
from sealback.models import CompressionConfig, LockFile, Source, Volume
from sealback.utils.crypto import KNOWN_VERSIONS, EncryptionCodec, iter_file
from sealback.utils.formatting import calculate_speed, format_duration, format_size, with_fields
from sealback.utils.progress import ProgressReporter, ThroughputTracker, aggregate_percent
from sealback.utils.retry import linear_backoff, retry
from .volumes import VolumeSplitter

BACKUP_EXTENSION = 'enc'
DEFAULT_WORKERS = 3
DEFAULT_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 1.0

ALGORITHMS = {
    'zip': 'deflate',
    'gzip': 'deflate',
    'bz2': 'bz2',
    '7z': 'lzma',
    'xz': 'lzma',
    'none': 'none',
}


class CompressionError(RetryExhaustedError):
    """Raised when a compression pass fails on every allowed attempt."""
    pass


def _codec_name(algorithm: str) -> str:
    if algorithm not in ALGORITHMS:
        raise ConfigurationError(
            f"Invalid compression algorithm: {algorithm}. "
            f"Valid options: {list(ALGORITHMS.keys())}"
        )
    return ALGORITHMS[algorithm]


def _compressor(algorithm: str, level: int):
    name = _codec_name(algorithm)
    if name == 'deflate':
        return zlib.compressobj(level)
    if name == 'bz2':
        return bz2.BZ2Compressor(level)
    if name == 'lzma':
        return lzma.LZMACompressor(preset=level)
    return None


def _decompressor(algorithm: str):
    name = _codec_name(algorithm)
    if name == 'deflate':
        return zlib.decompressobj()
    if name == 'bz2':
        return bz2.BZ2Decompressor()
    if name == 'lzma':
        return lzma.LZMADecompressor()
    return None


def compress_chunks(chunks: Iterable[bytes], algorithm: str, level: int = 9) -> Iterator[bytes]:
    """Streaming compression transform over byte chunks."""
    compressor = _compressor(algorithm, level)
    if compressor is None:
        yield from chunks
        return

    for chunk in chunks:
        data = compressor.compress(chunk)
        if data:
            yield data
    data = compressor.flush()
    if data:
        yield data


def decompress_chunks(chunks: Iterable[bytes], algorithm: str) -> Iterator[bytes]:
    """
    Streaming decompression transform over byte chunks.

    Raises:
        IntegrityError: If the compressed stream is corrupt or incomplete
    """
    decompressor = _decompressor(algorithm)
    if decompressor is None:
        yield from chunks
        return

    try:
        for chunk in chunks:
            data = decompressor.decompress(chunk)
            if data:
                yield data
        if hasattr(decompressor, 'flush'):
            data = decompressor.flush()
            if data:
                yield data
        complete = decompressor.eof
    except (zlib.error, OSError, lzma.LZMAError, EOFError) as e:
        raise IntegrityError(f"Corrupt compressed stream: {e}") from e

    if not complete:
        raise IntegrityError("Compressed stream ended unexpectedly")


def generate_backup_filename(source_type: str, when: Optional[datetime] = None) -> str:
    """
    Generate the standard backup filename.

    Format: backup_{source_type}_{YYYYMMDD}.enc
    """
    when = when or datetime.now()
    return f"backup_{source_type}_{when.strftime('%Y%m%d')}.{BACKUP_EXTENSION}"


def volume_path(dest_path: Path, volume: Volume) -> Path:
    """
    Path of one volume of a pass.

    Unsplit output keeps `dest_path`; split volumes replace the extension
    with a zero-padded .zNN index.
    """
    dest_path = Path(dest_path)
    if not volume.is_split:
        return dest_path
    width = max(2, len(str(volume.total_volumes)))
    return dest_path.with_suffix(f".z{volume.index:0{width}d}")


def create_tar(source: Path, archive_path: Path) -> Path:
    """Archive a directory (recursively) into an uncompressed tar."""
    with tarfile.open(archive_path, 'w') as tar:
        tar.add(source, arcname=Path(source).name, recursive=True)
    return Path(archive_path)


def bundle_files(paths: Sequence[Path], archive_path: Path) -> Path:
    """Pack a set of files flat (by basename) into an uncompressed tar."""
    with tarfile.open(archive_path, 'w') as tar:
        for path in paths:
            tar.add(path, arcname=Path(path).name, recursive=False)
    return Path(archive_path)


def get_archive_size(archive_path) -> int:
    try:
        return os.path.getsize(archive_path)
    except OSError as e:
        raise TransientIOError(f"Failed to get archive size of {archive_path}: {e}") from e


class CompressionEngine:
    """
    Compresses and encrypts backup sources into volumes.

    Split volumes of one pass are encoded in parallel by at most
    `max_workers` threads. Every pass is retried as a whole up to
    `max_attempts` times with linearly growing backoff.
    """

    def __init__(
        self,
        backup_dir=None,
        codec: Optional[EncryptionCodec] = None,
        temp_root=None,
        logger: Optional[logging.Logger] = None,
        progress: Optional[ProgressReporter] = None,
        max_workers: int = DEFAULT_WORKERS,
        max_attempts: int = DEFAULT_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        progress_interval: float = 0.5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.backup_dir = Path(backup_dir) if backup_dir else None
        self.codec = codec or EncryptionCodec()
        self.temp_dir = Path(temp_root or tempfile.gettempdir()) / 'sealback'
        self.logger = logger or logging.getLogger(__name__)
        self.progress = progress or ProgressReporter(logger=self.logger)
        self.max_workers = max_workers
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.progress_interval = progress_interval
        self.clock = clock or datetime.now

    def validate_source(self, source: Source) -> None:
        """
        Check that a source points at an existing file or directory.

        Raises:
            ConfigurationError: If the source path is empty
            SourceValidationError: If the path is absent or of another type
        """
        self.logger.info(with_fields("Validating backup source", type=source.type, path=source.path))

        if not source.path:
            raise ConfigurationError(f"Backup source path is empty (type: {source.type})")

        path = Path(source.path)
        if not path.exists():
            raise SourceValidationError(f"Backup source does not exist: {source.path}")
        if not path.is_file() and not path.is_dir():
            raise SourceValidationError(f"Invalid backup source type: {source.path}")

        self.logger.debug(with_fields("Backup source is valid", type=source.type, path=source.path))

    async def create_backup(self, source: Source, first: CompressionConfig,
                            second: CompressionConfig) -> List[Path]:
        """
        Produce today's backup volume(s) for a source.

        Output lives under {backup_dir}/{type}/backup_{type}_{YYYYMMDD}.enc
        (or .z01, .z02, ... when split).

        Returns:
            Paths of the final volume(s)
        """
        if self.backup_dir is None:
            raise ConfigurationError("Backup directory is not configured")

        started = time.monotonic()
        self.validate_source(source)

        dest_path = self.backup_dir / source.type / generate_backup_filename(source.type, self.clock())
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            source_size = await asyncio.to_thread(_tree_size, Path(source.path))
            volumes = await self.compress(source.path, dest_path, first, second)
        except Exception as e:
            self.logger.error(with_fields(
                f"Backup of {source.type} failed: {e}",
                duration=format_duration(time.monotonic() - started),
            ))
            raise

        final_size = sum(get_archive_size(path) for path in volumes)
        elapsed = time.monotonic() - started
        self.logger.info(with_fields(
            f"Backup of {source.type} created",
            source=source.path,
            source_size=format_size(source_size),
            destination=', '.join(str(path) for path in volumes),
            final_size=format_size(final_size),
            ratio=f"{final_size / source_size:.2f}" if source_size else None,
            duration=format_duration(elapsed),
            speed=calculate_speed(source_size, elapsed),
        ))
        return volumes

    async def compress(self, source_path, dest_path, first: CompressionConfig,
                       second: CompressionConfig) -> List[Path]:
        """
        Run both passes over a source.

        Args:
            source_path: File or directory to back up
            dest_path: Final volume path (split volumes derive .zNN names from it)
            first: Settings of the first pass
            second: Settings of the second pass

        Returns:
            Paths of the final volume(s); every intermediate artifact is removed

        Raises:
            ConfigurationError: If a pass has no password
            CompressionError: If a pass exhausts its attempts
        """
        for name, config in (('first', first), ('second', second)):
            if not config.password:
                raise ConfigurationError(f"Encryption password for the {name} pass is not configured")
            _codec_name(config.algorithm)

        source_path = Path(source_path)
        dest_path = Path(dest_path)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        stem = f"{dest_path.stem}-{uuid.uuid4().hex[:8]}"
        artifacts: List[Path] = []

        try:
            input_path = source_path
            if source_path.is_dir():
                input_path = self.temp_dir / f"{stem}.src.tar"
                artifacts.append(input_path)
                self.logger.info(with_fields("Archiving directory", source=source_path, archive=input_path))
                await asyncio.to_thread(create_tar, source_path, input_path)

            first_pass = await self.run_pass(
                input_path, self.temp_dir / f"{stem}.pass1.{BACKUP_EXTENSION}", first, 'pass 1')
            artifacts.extend(first_pass)

            second_input = first_pass[0]
            if len(first_pass) > 1:
                second_input = self.temp_dir / f"{stem}.pass1.tar"
                artifacts.append(second_input)
                await asyncio.to_thread(bundle_files, first_pass, second_input)

            return await self.run_pass(second_input, dest_path, second, 'pass 2')
        finally:
            self._cleanup(artifacts)

    async def run_pass(self, input_path: Path, dest_path: Path, config: CompressionConfig,
                       label: str) -> List[Path]:
        """One compress+encrypt pass with retry."""
        started = time.monotonic()
        input_path = Path(input_path)
        if not input_path.is_file():
            raise SourceValidationError(f"Pass input is missing: {input_path}")
        input_size = get_archive_size(input_path)
        self.logger.info(with_fields(
            f"Starting {label}",
            input=input_path, size=format_size(input_size), algorithm=config.algorithm,
            level=config.level, method=config.encryption_method,
        ))

        try:
            paths = await retry(
                lambda: self._encode_pass(input_path, dest_path, config, label),
                times=self.max_attempts,
                backoff=linear_backoff(self.retry_delay),
                log=self.logger,
            )
        except NON_RETRYABLE_ERRORS:
            raise
        except Exception as e:
            self.logger.error(with_fields(
                f"{label} failed: {e}", duration=format_duration(time.monotonic() - started)))
            raise CompressionError(
                f"{label} failed after {self.max_attempts} attempts: {e}",
                attempts=self.max_attempts,
                last_error=e,
            ) from e

        output_size = sum(get_archive_size(path) for path in paths)
        elapsed = time.monotonic() - started
        self.logger.info(with_fields(
            f"Finished {label}",
            volumes=len(paths), size=format_size(output_size),
            ratio=f"{output_size / input_size:.2f}" if input_size else None,
            duration=format_duration(elapsed), speed=calculate_speed(input_size, elapsed),
        ))
        return paths

    async def _encode_pass(self, input_path: Path, dest_path: Path, config: CompressionConfig,
                           label: str) -> List[Path]:
        """Single attempt of a pass; removes its own partial output on failure."""
        size = get_archive_size(input_path)

        volumes = [
            volume.with_path(volume_path(dest_path, volume))
            for volume in VolumeSplitter.plan(size, config.volume_size)
        ]
        if len(volumes) > 1:
            self.logger.info(f"{label}: splitting {format_size(size)} into {len(volumes)} volumes")

        semaphore = asyncio.Semaphore(self.max_workers)

        async def encode(volume: Volume) -> Path:
            async with semaphore:
                return await asyncio.to_thread(self._encode_volume, input_path, volume, config, label)

        results = await asyncio.gather(*(encode(volume) for volume in volumes), return_exceptions=True)
        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            self._cleanup(volume.path for volume in volumes)
            raise errors[0]

        self.progress.finish(label)
        return [volume.path for volume in volumes]

    def _encode_volume(self, input_path: Path, volume: Volume, config: CompressionConfig,
                       label: str) -> Path:
        """Compress and encrypt one volume (runs in a worker thread)."""
        lock_path = LockFile.for_current_process().write(volume.path)
        tracker = ThroughputTracker(volume.source_length, interval=self.progress_interval)
        processed = 0

        def counted(chunks: Iterable[bytes]) -> Iterator[bytes]:
            nonlocal processed
            for chunk in chunks:
                processed += len(chunk)
                sample = tracker.sample(processed)
                if sample:
                    percent, speed = sample
                    if volume.is_split:
                        percent = aggregate_percent(volume.index, volume.total_volumes, percent)
                    self.progress.report(label, percent, speed)
                yield chunk

        try:
            with open(input_path, 'rb') as src, open(volume.path, 'wb') as dst:
                src.seek(volume.source_offset)
                plaintext = counted(iter_file(src, volume.source_length))
                stream = self.codec.encrypt_stream(
                    compress_chunks(plaintext, config.algorithm, config.level),
                    config.password,
                    config.encryption_method,
                    volume.to_info() if volume.is_split else None,
                )
                for data in stream.iter_volume():
                    dst.write(data)

            if processed != volume.source_length:
                raise TransientIOError(
                    f"Input changed while reading {input_path}: "
                    f"expected {volume.source_length} bytes, read {processed}"
                )
        except OSError as e:
            raise TransientIOError(f"Failed to write volume {volume.path}: {e}") from e
        finally:
            self._cleanup([lock_path])

        return volume.path

    def _cleanup(self, paths: Iterable[Path]) -> None:
        """Best-effort removal of temp artifacts; never raises."""
        for path in paths:
            try:
                Path(path).unlink(missing_ok=True)
            except OSError as e:
                self.logger.warning(f"Failed to remove temporary file {path}: {e}")

        # shared with other producers, so only removed once empty
        try:
            self.temp_dir.rmdir()
        except OSError:
            pass


def _tree_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    return sum(item.stat().st_size for item in path.rglob('*') if item.is_file())


def decode_volume(path, password: str, algorithm: str,
                  codec: Optional[EncryptionCodec] = None) -> Iterator[bytes]:
    """
    Yield the plaintext (decrypted and decompressed) content of one volume.

    Raises:
        IntegrityError: On tampering, truncation or wrong password
    """
    codec = codec or EncryptionCodec()
    with open(path, 'rb') as src:
        header = codec.read_header(src)
        yield from decompress_chunks(codec.decrypt_stream(header, iter_file(src), password), algorithm)


def order_volumes(paths: Sequence[Path], codec: Optional[EncryptionCodec] = None) -> List[Volume]:
    """
    Read volume headers and return the volumes sorted by index.

    Raises:
        IntegrityError: If the set is incomplete, inconsistent or not contiguous
    """
    codec = codec or EncryptionCodec()
    volumes = []
    for path in paths:
        with open(path, 'rb') as src:
            header = codec.read_header(src)
        if header.volume_info is None:
            volumes.append(Volume(index=1, total_volumes=1, source_offset=0, source_length=-1, path=Path(path)))
        else:
            volumes.append(Volume.from_info(header.volume_info, path))

    if not volumes:
        raise IntegrityError("No volumes given")

    volumes.sort(key=lambda v: v.index)
    total = volumes[0].total_volumes
    if any(v.total_volumes != total for v in volumes) or [v.index for v in volumes] != list(range(1, total + 1)):
        raise IntegrityError(f"Incomplete volume set: have {[v.index for v in volumes]} of {total}")

    if total > 1:
        offset = 0
        for volume in volumes:
            if volume.source_offset != offset:
                raise IntegrityError(f"Volume {volume.index} does not start at offset {offset}")
            offset += volume.source_length
    return volumes


def reassemble(paths: Sequence[Path], output_path, config: CompressionConfig,
               codec: Optional[EncryptionCodec] = None) -> Path:
    """
    Decode the volumes of one pass in index order into `output_path`.

    The output is removed if anything fails.
    """
    codec = codec or EncryptionCodec()
    output_path = Path(output_path)
    try:
        volumes = order_volumes(paths, codec)
        with open(output_path, 'wb') as dst:
            for volume in volumes:
                written = 0
                for data in decode_volume(volume.path, config.password, config.algorithm, codec):
                    dst.write(data)
                    written += len(data)
                if volume.is_split and written != volume.source_length:
                    raise IntegrityError(
                        f"Volume {volume.index} decoded to {written} bytes, expected {volume.source_length}")
        return output_path
    except Exception:
        output_path.unlink(missing_ok=True)
        raise


def restore(volume_paths: Sequence[Path], output_path, first: CompressionConfig,
            second: CompressionConfig, codec: Optional[EncryptionCodec] = None,
            temp_root=None) -> Path:
    """
    Undo both passes of a backup.

    Writes the original file, or for directory sources the tar archive of
    the directory, to `output_path`.
    """
    codec = codec or EncryptionCodec()
    work_dir = Path(tempfile.mkdtemp(prefix='sealback_restore_', dir=temp_root))
    try:
        intermediate = reassemble(volume_paths, work_dir / 'pass1.bin', second, codec)

        with open(intermediate, 'rb') as f:
            first_byte = f.read(1)

        if first_byte and first_byte[0] in KNOWN_VERSIONS:
            first_pass = [intermediate]
        else:
            with tarfile.open(intermediate, 'r') as tar:
                members = [m for m in tar.getmembers() if m.isfile() and '/' not in m.name]
                first_pass = []
                for member in members:
                    target = work_dir / member.name
                    with tar.extractfile(member) as src, open(target, 'wb') as dst:
                        shutil.copyfileobj(src, dst)
                    first_pass.append(target)

        return reassemble(first_pass, output_path, first, codec)
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)
