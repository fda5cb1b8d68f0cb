"""
Streaming encryption envelope for backup volumes.

Volume layout:

    [version:1][salt:32][iv:16]([info_length:1][info_json])[ciphertext...][tag:16]

The content key is derived from the password and a fresh random salt with
scrypt for every volume, and every volume gets a fresh IV, so volumes
encrypted in parallel with the same password never share a keystream.

Every volume is AES-256-GCM. The high bit of the version byte flags the
presence of the length-prefixed JSON volume descriptor. The complete header,
version byte included, is authenticated as associated data, and the 16-byte
tag trails the ciphertext.
"""

import io
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Iterator, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from sealback.errors import ConfigurationError, IntegrityError, UnsupportedVersionError

VERSION_AES_GCM = 0x01
FLAG_VOLUME_INFO = 0x80

SALT_SIZE = 32
IV_SIZE = 16
TAG_SIZE = 16
KEY_SIZE = 32
FIXED_HEADER_SIZE = 1 + SALT_SIZE + IV_SIZE
MAX_INFO_SIZE = 255

CHUNK_SIZE = 1024 * 1024

# scrypt cost parameters
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1

ENCRYPTION_METHODS = {
    'aes256': VERSION_AES_GCM,
    'aes256-gcm': VERSION_AES_GCM,
}

KNOWN_VERSIONS = {
    VERSION_AES_GCM,
    VERSION_AES_GCM | FLAG_VOLUME_INFO,
}


@dataclass(frozen=True)
class VolumeHeader:
    """Parsed (or freshly built) volume header."""
    version: int
    salt: bytes
    iv: bytes
    volume_info: Optional[Dict[str, int]] = None
    raw: bytes = b''  # header bytes exactly as on disk

    def __len__(self):
        return len(self.raw)


class EncryptedStream:
    """
    Ciphertext produced from a plaintext chunk iterator.

    Iterating yields ciphertext chunks only; `tag` becomes available once
    iteration is complete. `iter_volume()` yields the full
    on-disk byte sequence: header, ciphertext, tag.
    """

    def __init__(self, header: VolumeHeader, encryptor, chunks: Iterable[bytes]):
        self.header = header
        self._encryptor = encryptor
        self._chunks = chunks
        self._tag = None
        self._finished = False

    def __iter__(self) -> Iterator[bytes]:
        if self._finished:
            raise RuntimeError("EncryptedStream can only be consumed once")

        for chunk in self._chunks:
            data = self._encryptor.update(chunk)
            if data:
                yield data

        data = self._encryptor.finalize()
        if data:
            yield data

        self._tag = self._encryptor.tag
        self._finished = True

    @property
    def tag(self) -> Optional[bytes]:
        if not self._finished:
            raise RuntimeError("Authentication tag is only known after the stream is consumed")
        return self._tag

    def iter_volume(self) -> Iterator[bytes]:
        yield self.header.raw
        yield from self
        yield self._tag


class EncryptionCodec:
    """
    Encrypts and decrypts volume streams with a password.

    The scrypt cost parameters are configurable so tests can run with a
    cheap KDF; volumes record nothing about them, so both ends must agree.
    """

    def __init__(self, scrypt_n: int = SCRYPT_N, scrypt_r: int = SCRYPT_R, scrypt_p: int = SCRYPT_P):
        self.scrypt_n = scrypt_n
        self.scrypt_r = scrypt_r
        self.scrypt_p = scrypt_p

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive a 32-byte content key from a password.

        Raises:
            ConfigurationError: If the password is empty
        """
        if not password:
            raise ConfigurationError("Encryption password is not configured")

        kdf = Scrypt(
            salt=salt,
            length=KEY_SIZE,
            n=self.scrypt_n,
            r=self.scrypt_r,
            p=self.scrypt_p,
        )
        return kdf.derive(password.encode())

    @staticmethod
    def build_header(method: str = 'aes256', volume_info: Optional[Dict[str, int]] = None) -> VolumeHeader:
        """Build a header with fresh salt and IV for the given method."""
        if method not in ENCRYPTION_METHODS:
            raise ConfigurationError(
                f"Invalid encryption method: {method}. "
                f"Valid options: {list(ENCRYPTION_METHODS.keys())}"
            )

        version = ENCRYPTION_METHODS[method]
        salt = os.urandom(SALT_SIZE)
        iv = os.urandom(IV_SIZE)
        raw = bytes([version]) + salt + iv

        if volume_info is not None:
            version |= FLAG_VOLUME_INFO
            info = json.dumps(volume_info, separators=(',', ':')).encode()
            if len(info) > MAX_INFO_SIZE:
                raise ValueError("Volume descriptor does not fit in header")
            raw = bytes([version]) + salt + iv + bytes([len(info)]) + info

        return VolumeHeader(version=version, salt=salt, iv=iv, volume_info=volume_info, raw=raw)

    @staticmethod
    def _cipher(header: VolumeHeader, key: bytes) -> Cipher:
        return Cipher(algorithms.AES(key), modes.GCM(header.iv))

    def encrypt_stream(
        self,
        chunks: Iterable[bytes],
        password: str,
        method: str = 'aes256',
        volume_info: Optional[Dict[str, int]] = None,
    ) -> EncryptedStream:
        """
        Encrypt a plaintext chunk stream.

        Args:
            chunks: Plaintext byte chunks
            password: Encryption password (must be non-empty)
            method: 'aes256' or 'aes256-gcm'
            volume_info: Descriptor {index, total, offset, size} for split volumes

        Returns:
            EncryptedStream exposing header, ciphertext iterator and tag
        """
        header = self.build_header(method, volume_info)
        key = self.derive_key(password, header.salt)

        encryptor = self._cipher(header, key).encryptor()
        encryptor.authenticate_additional_data(header.raw)

        return EncryptedStream(header, encryptor, chunks)

    @staticmethod
    def read_header(stream: BinaryIO) -> VolumeHeader:
        """
        Read and parse a volume header from the start of a stream.

        Raises:
            IntegrityError: If the header is truncated or malformed
            UnsupportedVersionError: If the version byte is unknown
        """
        fixed = stream.read(FIXED_HEADER_SIZE)
        if len(fixed) < 1:
            raise IntegrityError("Invalid volume: missing header")

        version = fixed[0]
        if version not in KNOWN_VERSIONS:
            raise UnsupportedVersionError(f"Unsupported volume version: {version:#04x}")

        if len(fixed) != FIXED_HEADER_SIZE:
            raise IntegrityError("Invalid volume: truncated header")

        raw = fixed
        volume_info = None
        if version & FLAG_VOLUME_INFO:
            length = stream.read(1)
            if not length:
                raise IntegrityError("Invalid volume: truncated volume descriptor")
            info = stream.read(length[0])
            if len(info) != length[0]:
                raise IntegrityError("Invalid volume: truncated volume descriptor")
            try:
                parsed = json.loads(info.decode())
                volume_info = {key: int(parsed[key]) for key in ('index', 'total', 'offset', 'size')}
            except (ValueError, KeyError, TypeError) as e:
                raise IntegrityError(f"Invalid volume descriptor: {e}") from e
            raw = fixed + length + info

        return VolumeHeader(
            version=version,
            salt=fixed[1:1 + SALT_SIZE],
            iv=fixed[1 + SALT_SIZE:FIXED_HEADER_SIZE],
            volume_info=volume_info,
            raw=raw,
        )

    @classmethod
    def parse_header(cls, data: bytes) -> VolumeHeader:
        return cls.read_header(io.BytesIO(data))

    def decrypt_stream(self, header: VolumeHeader, chunks: Iterable[bytes], password: str) -> Iterator[bytes]:
        """
        Decrypt the bytes that follow a header.

        `chunks` must include the trailing tag; the last 16 bytes
        are held back and verified at the end. Plaintext is yielded as it is
        produced, so callers must discard output when IntegrityError is raised.

        Raises:
            IntegrityError: If the tag is missing or does not verify
        """
        key = self.derive_key(password, header.salt)

        decryptor = self._cipher(header, key).decryptor()
        decryptor.authenticate_additional_data(header.raw)

        pending = b''
        for chunk in chunks:
            pending += chunk
            if len(pending) > TAG_SIZE:
                data = decryptor.update(pending[:-TAG_SIZE])
                pending = pending[-TAG_SIZE:]
                if data:
                    yield data

        if len(pending) < TAG_SIZE:
            raise IntegrityError("Invalid volume: authentication tag missing")

        try:
            data = decryptor.finalize_with_tag(pending)
        except InvalidTag:
            raise IntegrityError("Authentication failed: volume was modified or password is wrong") from None
        if data:
            yield data

    def encrypt_file(self, source_path, dest_path, password: str, method: str = 'aes256') -> VolumeHeader:
        """Encrypt a whole file into a single unsplit volume."""
        with open(source_path, 'rb') as src, open(dest_path, 'wb') as dst:
            stream = self.encrypt_stream(iter_file(src), password, method)
            for data in stream.iter_volume():
                dst.write(data)
        return stream.header

    def decrypt_file(self, source_path, dest_path, password: str) -> VolumeHeader:
        """
        Decrypt a volume file.

        The partially written output is removed if decryption fails.
        """
        dest_path = Path(dest_path)
        try:
            with open(source_path, 'rb') as src, open(dest_path, 'wb') as dst:
                header = self.read_header(src)
                for data in self.decrypt_stream(header, iter_file(src), password):
                    dst.write(data)
            return header
        except Exception:
            dest_path.unlink(missing_ok=True)
            raise


def iter_file(fileobj: BinaryIO, length: Optional[int] = None, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """
    Yield chunks from a file object, optionally stopping after `length` bytes.
    """
    remaining = length
    while remaining is None or remaining > 0:
        size = chunk_size if remaining is None else min(chunk_size, remaining)
        data = fileobj.read(size)
        if not data:
            break
        if remaining is not None:
            remaining -= len(data)
        yield data
