"""
Unit tests for the compression engine (sealback/backup/compression.py).

Tests:
- Source validation
- Streaming compress/decompress transforms
- Single and split volume passes
- Two-pass backups and restore
- Retry and cleanup behaviour
"""

import asyncio
import logging
import os
import random
import tarfile
from dataclasses import replace
from datetime import datetime

import pytest

from sealback.backup.compression import (
    CompressionEngine,
    CompressionError,
    compress_chunks,
    decode_volume,
    decompress_chunks,
    generate_backup_filename,
    order_volumes,
    reassemble,
    restore,
    volume_path,
)
from sealback.errors import (
    ConfigurationError,
    IntegrityError,
    RetryExhaustedError,
    SourceValidationError,
    TransientIOError,
)
from sealback.models import Source, Volume
from sealback.utils.crypto import KNOWN_VERSIONS, VERSION_AES_GCM

MiB = 1024 * 1024


@pytest.fixture
def engine(tmp_path, codec, logger, quiet_progress):
    return CompressionEngine(
        backup_dir=tmp_path / 'backups',
        codec=codec,
        temp_root=tmp_path / 'tmp',
        logger=logger,
        progress=quiet_progress,
        retry_delay=0,
        clock=lambda: datetime(2024, 1, 15, 3, 0),
    )


def leftovers(directory):
    return sorted(p.name for p in directory.rglob('*') if p.is_file()) if directory.exists() else []


class TestHelpers:
    """Test naming and streaming helpers."""

    def test_generate_backup_filename(self):
        assert generate_backup_filename('mp', datetime(2024, 1, 15, 23, 59)) == 'backup_mp_20240115.enc'

    def test_volume_path_unsplit_keeps_destination(self, tmp_path):
        dest = tmp_path / 'backup_cr_20240115.enc'

        assert volume_path(dest, Volume(1, 1, 0, 10)) == dest

    def test_volume_path_split_uses_zero_padded_index(self, tmp_path):
        dest = tmp_path / 'backup_cr_20240115.enc'

        assert volume_path(dest, Volume(3, 12, 0, 10)).name == 'backup_cr_20240115.z03'
        assert volume_path(dest, Volume(7, 120, 0, 10)).name == 'backup_cr_20240115.z007'

    @pytest.mark.parametrize('algorithm', ['zip', '7z', 'gzip', 'bz2', 'xz', 'none'])
    def test_compress_decompress_chunks(self, algorithm):
        data = b'backup payload ' * 5000 + os.urandom(1000)
        chunks = [data[i:i + 4096] for i in range(0, len(data), 4096)]

        compressed = list(compress_chunks(chunks, algorithm, 6))

        assert b''.join(decompress_chunks(compressed, algorithm)) == data

    def test_truncated_compressed_stream(self):
        compressed = b''.join(compress_chunks([b'x' * 100000], 'xz', 6))

        with pytest.raises(IntegrityError):
            b''.join(decompress_chunks([compressed[:len(compressed) // 2]], 'xz'))

    def test_unknown_algorithm(self):
        with pytest.raises(ConfigurationError, match='Invalid compression algorithm'):
            list(compress_chunks([b'x'], 'rar'))


class TestValidateSource:
    """Test CompressionEngine.validate_source."""

    def test_valid_directory(self, engine, source_tree):
        engine.validate_source(Source(type='mp', path=str(source_tree)))

    def test_valid_file(self, engine, random_file):
        engine.validate_source(Source(type='mp', path=str(random_file('a.bin', 10))))

    def test_empty_path(self, engine):
        with pytest.raises(ConfigurationError):
            engine.validate_source(Source(type='mp', path=''))

    def test_missing_path(self, engine, tmp_path):
        with pytest.raises(SourceValidationError, match='does not exist'):
            engine.validate_source(Source(type='mp', path=str(tmp_path / 'nope')))


class TestRunPass:
    """Test one compress+encrypt pass."""

    def test_five_mib_source_split_into_three_volumes(self, engine, tmp_path, random_file, first_pass, codec):
        """Test 5 MiB input with a 2 MiB threshold."""
        source = random_file('archive.tar', 5 * MiB)
        config = replace(first_pass, volume_size=2 * MiB)
        dest = tmp_path / 'out' / 'backup_mp_20240115.enc'
        dest.parent.mkdir()

        paths = asyncio.run(engine.run_pass(source, dest, config, 'pass 1'))

        assert [p.name for p in paths] == [
            'backup_mp_20240115.z01', 'backup_mp_20240115.z02', 'backup_mp_20240115.z03']

        for i, path in enumerate(paths, start=1):
            with open(path, 'rb') as f:
                header = codec.read_header(f)
            assert header.volume_info == {
                'index': i,
                'total': 3,
                'offset': (i - 1) * 2 * MiB,
                'size': 1 * MiB if i == 3 else 2 * MiB,
            }

        decoded = b''.join(
            b''.join(decode_volume(path, config.password, config.algorithm, codec)) for path in paths)
        assert decoded == source.read_bytes()
        assert not list(dest.parent.glob('*.lock'))

    def test_unsplit_volume_has_no_descriptor(self, engine, tmp_path, random_file, first_pass, codec):
        source = random_file('small.bin', 1000)
        dest = tmp_path / 'small.enc'

        paths = asyncio.run(engine.run_pass(source, dest, first_pass, 'pass 1'))

        assert paths == [dest]
        with open(dest, 'rb') as f:
            assert codec.read_header(f).volume_info is None

    def test_missing_input(self, engine, tmp_path, first_pass):
        with pytest.raises(SourceValidationError):
            asyncio.run(engine.run_pass(tmp_path / 'gone.bin', tmp_path / 'x.enc', first_pass, 'pass 1'))


class TestCreateBackup:
    """Test the two-pass backup of a source."""

    def test_directory_backup_and_restore(self, engine, tmp_path, source_tree, first_pass, second_pass, codec):
        """Test that restore reproduces the tar of the source directory."""
        volumes = asyncio.run(engine.create_backup(
            Source(type='mp', path=str(source_tree)), first_pass, second_pass))

        assert volumes == [tmp_path / 'backups' / 'mp' / 'backup_mp_20240115.enc']

        output = tmp_path / 'restored.tar'
        restore(volumes, output, first_pass, second_pass, codec=codec, temp_root=tmp_path)

        with tarfile.open(output) as tar:
            assert tar.extractfile('source/notes.txt').read() == (source_tree / 'notes.txt').read_bytes()
            assert tar.extractfile('source/data.bin').read() == (source_tree / 'data.bin').read_bytes()
            assert tar.extractfile('source/nested/deeper.txt').read() == b'Nested test content'

    def test_split_in_both_passes(self, engine, tmp_path, random_file, first_pass, second_pass, codec):
        """Test split first pass bundled into a split second pass."""
        source = random_file('big.bin', 5 * MiB)
        first = replace(first_pass, volume_size=2 * MiB)
        second = replace(second_pass, volume_size=2 * MiB)

        volumes = asyncio.run(engine.create_backup(Source(type='cr', path=str(source)), first, second))

        assert len(volumes) == 3
        assert all(v.suffix.startswith('.z') for v in volumes)

        output = tmp_path / 'restored.bin'
        shuffled = list(volumes)
        random.shuffle(shuffled)
        restore(shuffled, output, first, second, codec=codec, temp_root=tmp_path)

        assert output.read_bytes() == source.read_bytes()

    def test_temp_artifacts_removed(self, engine, tmp_path, random_file, first_pass, second_pass):
        """Test that pass-1 output, bundles and locks are all cleaned up."""
        source = random_file('big.bin', 3 * MiB)
        first = replace(first_pass, volume_size=1 * MiB)

        asyncio.run(engine.create_backup(Source(type='cr', path=str(source)), first, second_pass))

        assert leftovers(engine.temp_dir) == []
        assert not engine.temp_dir.exists()
        assert leftovers(tmp_path / 'backups') == ['backup_cr_20240115.enc']

    def test_logs_completion_metrics(self, engine, source_tree, first_pass, second_pass, caplog):
        with caplog.at_level(logging.INFO, logger='sealback.tests'):
            asyncio.run(engine.create_backup(Source(type='mp', path=str(source_tree)), first_pass, second_pass))

        completion = [r.message for r in caplog.records if r.message.startswith('Backup of mp created')]
        assert completion
        for field in ('source_size=', 'final_size=', 'ratio=', 'duration=', 'speed='):
            assert field in completion[0]

    def test_missing_password_is_fatal(self, engine, tmp_path, source_tree, first_pass, second_pass):
        """Test that an empty password fails before anything is written."""
        with pytest.raises(ConfigurationError, match='second pass'):
            asyncio.run(engine.create_backup(
                Source(type='mp', path=str(source_tree)), first_pass, replace(second_pass, password='')))

        assert leftovers(tmp_path / 'backups') == []

    def test_missing_source(self, engine, tmp_path, first_pass, second_pass):
        with pytest.raises(SourceValidationError):
            asyncio.run(engine.create_backup(
                Source(type='mp', path=str(tmp_path / 'missing')), first_pass, second_pass))


class TestRetry:
    """Test per-pass retry and cleanup on failure."""

    def test_transient_failure_is_retried(self, engine, random_file, tmp_path, first_pass, second_pass):
        source = random_file('a.bin', 2000)
        original = engine._encode_volume
        calls = []

        def flaky(*args):
            calls.append(args[1])
            if len(calls) == 1:
                raise TransientIOError('disk hiccup')
            return original(*args)

        engine._encode_volume = flaky

        volumes = asyncio.run(engine.create_backup(Source(type='mp', path=str(source)), first_pass, second_pass))

        assert len(calls) == 3  # pass 1 twice, pass 2 once
        assert volumes[0].exists()

    def test_exhausted_retries_raise_compression_error(self, engine, random_file, tmp_path, first_pass,
                                                       second_pass):
        """Test 3 failed attempts -> CompressionError and no leftovers."""
        source = random_file('a.bin', 3 * MiB)
        first = replace(first_pass, volume_size=1 * MiB)
        original = engine._encode_volume
        attempts = []

        def failing(input_path, volume, config, label):
            original(input_path, volume, config, label)
            if volume.index == 2:
                attempts.append(volume.index)
                raise TransientIOError('write failed')
            return volume.path

        engine._encode_volume = failing

        with pytest.raises(CompressionError) as exc_info:
            asyncio.run(engine.create_backup(Source(type='mp', path=str(source)), first, second_pass))

        assert isinstance(exc_info.value, RetryExhaustedError)
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, TransientIOError)
        assert len(attempts) == 3
        assert leftovers(engine.temp_dir) == []
        assert leftovers(tmp_path / 'backups') == []

    def test_non_retryable_error_not_retried(self, engine, random_file, first_pass, second_pass):
        source = random_file('a.bin', 100)
        calls = []

        def broken(*args):
            calls.append(1)
            raise IntegrityError('bad')

        engine._encode_volume = broken

        with pytest.raises(IntegrityError):
            asyncio.run(engine.create_backup(Source(type='mp', path=str(source)), first_pass, second_pass))

        assert len(calls) == 1


class TestRestore:
    """Test reassembly of volumes."""

    @pytest.fixture
    def split_volumes(self, engine, tmp_path, random_file, first_pass):
        source = random_file('data.bin', 5 * MiB)
        config = replace(first_pass, volume_size=2 * MiB)
        paths = asyncio.run(engine.run_pass(source, tmp_path / 'backup_mp_20240115.enc', config, 'pass 1'))
        return source, paths, config

    def test_order_volumes_sorts_by_embedded_index(self, split_volumes, codec):
        _, paths, _ = split_volumes

        volumes = order_volumes(list(reversed(paths)), codec)

        assert [v.index for v in volumes] == [1, 2, 3]
        assert [v.path for v in volumes] == paths

    def test_incomplete_set_rejected(self, split_volumes, codec):
        _, paths, _ = split_volumes

        with pytest.raises(IntegrityError, match='Incomplete'):
            order_volumes([paths[0], paths[2]], codec)

    def test_reassemble(self, split_volumes, tmp_path, codec):
        source, paths, config = split_volumes

        reassemble(paths, tmp_path / 'out.bin', config, codec)

        assert (tmp_path / 'out.bin').read_bytes() == source.read_bytes()

    def test_tampered_volume_removes_output(self, split_volumes, tmp_path, codec):
        _, paths, config = split_volumes
        data = bytearray(paths[1].read_bytes())
        data[len(data) // 2] ^= 0xFF
        paths[1].write_bytes(bytes(data))

        with pytest.raises(IntegrityError):
            reassemble(paths, tmp_path / 'out.bin', config, codec)

        assert not (tmp_path / 'out.bin').exists()

    @pytest.fixture
    def uncompressed_volumes(self, engine, tmp_path, random_file, first_pass):
        source = random_file('plain.bin', 5 * MiB)
        config = replace(first_pass, algorithm='none', volume_size=2 * MiB)
        paths = asyncio.run(engine.run_pass(source, tmp_path / 'backup_cr_20240115.enc', config, 'pass 1'))
        return paths, config

    @pytest.mark.parametrize('position', [0, 1, 2])
    def test_rewritten_version_in_split_set_rejected(self, uncompressed_volumes, tmp_path, codec, position):
        """Test rewriting a split volume's version to another known one."""
        paths, config = uncompressed_volumes
        data = paths[position].read_bytes()

        for version in sorted(KNOWN_VERSIONS - {data[0]}):
            paths[position].write_bytes(bytes([version]) + data[1:])

            with pytest.raises(IntegrityError):
                reassemble(paths, tmp_path / 'out.bin', config, codec)
            assert not (tmp_path / 'out.bin').exists()

    def test_rewritten_version_of_lone_volume_rejected(self, uncompressed_volumes, tmp_path, codec):
        """Test a single split volume relabelled as an unsplit one."""
        paths, config = uncompressed_volumes
        data = paths[0].read_bytes()
        paths[0].write_bytes(bytes([VERSION_AES_GCM]) + data[1:])

        with pytest.raises(IntegrityError):
            reassemble([paths[0]], tmp_path / 'out.bin', config, codec)

        assert not (tmp_path / 'out.bin').exists()
