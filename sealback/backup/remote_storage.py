"""
Remote storages reached over SSH or HTTP.

Supports:
- SFTPStorage: Upload to any host via SSH/SFTP
- OneDriveStorage: Microsoft Graph drive (upload sessions for large files)
- QuarkStorage: Quark cloud drive (cookie authenticated, single-shot only)
- BaiduStorage: Baidu Netdisk PCS upload (access token, single-shot only)
"""

import posixpath
import time
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
import paramiko
from paramiko import AutoAddPolicy, SSHClient

from sealback.errors import ChunkingNotSupportedError, ConfigurationError, TransientIOError
from sealback.models import UploadResult

GRAPH_URL = 'https://graph.microsoft.com/v1.0'
TOKEN_URL = 'https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token'
GRAPH_SCOPE = 'https://graph.microsoft.com/.default'
QUARK_UPLOAD_URL = 'https://drive.quark.cn/1/clouddrive/file/upload'
BAIDU_UPLOAD_URL = 'https://d.pcs.baidu.com/rest/2.0/pcs/file'
# access token invalid or expired
BAIDU_AUTH_ERRORS = (110, 111)


class SFTPStorage:
    """
    Handler for uploading volumes to a remote host via SFTP.

    A new SSH connection is opened per upload and always closed afterwards.
    """

    name = 'sftp'

    def __init__(self, host: str, username: str, port: int = 22, password: Optional[str] = None,
                 private_key: Optional[str] = None):
        """
        Args:
            host: Remote hostname
            username: SSH username
            port: SSH port (default: 22)
            password: Password authentication
            private_key: Path to a private key file (used when no password is set)
        """
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key_path = private_key

    def validate_config(self) -> None:
        if not self.host or not self.username:
            raise ConfigurationError("SFTP configuration invalid: host and username are required")
        if not self.password and not self.private_key_path:
            raise ConfigurationError("SFTP configuration invalid: either password or private_key must be provided")
        if not self.password and not Path(self.private_key_path).expanduser().exists():
            raise ConfigurationError(f"SFTP private key not found: {self.private_key_path}")

    def _connect(self) -> SSHClient:
        client = SSHClient()
        client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }
        if self.password:
            connect_kwargs['password'] = self.password
        else:
            connect_kwargs['key_filename'] = str(Path(self.private_key_path).expanduser())

        client.connect(**connect_kwargs)
        return client

    @staticmethod
    def _ensure_remote_dir(sftp, remote_dir: str) -> None:
        """mkdir -p over SFTP."""
        if remote_dir in ('', '/', '.'):
            return
        try:
            sftp.stat(remote_dir)
        except FileNotFoundError:
            SFTPStorage._ensure_remote_dir(sftp, posixpath.dirname(remote_dir))
            sftp.mkdir(remote_dir)

    def upload_file(self, local_path: str, remote_path: str) -> UploadResult:
        client = None
        try:
            client = self._connect()
            sftp = client.open_sftp()
            try:
                self._ensure_remote_dir(sftp, posixpath.dirname(remote_path))
                sftp.put(local_path, remote_path)
            finally:
                sftp.close()
        except paramiko.AuthenticationException as e:
            raise ConfigurationError(f"SFTP authentication failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            return UploadResult(success=False, error=TransientIOError(f"SFTP upload to {self.host} failed: {e}"))
        finally:
            if client is not None:
                client.close()

        return UploadResult(success=True, file_id=remote_path, url=f"sftp://{self.host}{remote_path}")


class OneDriveStorage:
    """
    OneDrive for Business storage through Microsoft Graph.

    Authenticates with the client-credentials flow and writes into the drive
    of `user_id`. Files above the chunk threshold use a Graph upload session;
    the session completes itself when the final range is received. Every
    range except the last must be a multiple of 320 KiB.
    """

    name = 'onedrive'
    chunk_multiple = 320 * 1024

    def __init__(self, client_id: str, client_secret: str, tenant_id: str, user_id: str,
                 client: Optional[httpx.Client] = None, timeout: float = 60.0):
        self.client_id = client_id
        self.client_secret = client_secret
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.http = client or httpx.Client(timeout=timeout)
        self._token: Optional[str] = None
        self._token_expires = 0.0
        self._finished_items: Dict[str, Dict[str, Any]] = {}

    def validate_config(self) -> None:
        if not all([self.client_id, self.client_secret, self.tenant_id, self.user_id]):
            raise ConfigurationError(
                "OneDrive configuration incomplete: client_id, client_secret, tenant_id and user_id are required")

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires:
            return self._token

        response = self.http.post(
            TOKEN_URL.format(tenant_id=self.tenant_id),
            data={
                'grant_type': 'client_credentials',
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'scope': GRAPH_SCOPE,
            },
        )
        if response.status_code in (400, 401):
            raise ConfigurationError(f"OneDrive authentication failed: {response.text}")
        response.raise_for_status()

        payload = response.json()
        self._token = payload['access_token']
        # refresh a minute early
        self._token_expires = time.monotonic() + int(payload.get('expires_in', 3600)) - 60
        return self._token

    def _item_url(self, remote_path: str) -> str:
        return f"{GRAPH_URL}/users/{quote(self.user_id)}/drive/root:/{quote(remote_path.lstrip('/'))}:"

    def _headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self._access_token()}"}

    @staticmethod
    def _result(item: Dict[str, Any]) -> UploadResult:
        return UploadResult(success=True, file_id=item.get('id'), url=item.get('webUrl'))

    def upload_file(self, local_path: str, remote_path: str) -> UploadResult:
        try:
            response = self.http.put(
                f"{self._item_url(remote_path)}/content",
                content=Path(local_path).read_bytes(),
                headers=self._headers(),
            )
            response.raise_for_status()
        except (httpx.HTTPError, OSError) as e:
            return UploadResult(success=False, error=TransientIOError(f"OneDrive upload failed: {e}"))
        return self._result(response.json())

    def create_upload_session(self, file_size: int, remote_path: str) -> str:
        try:
            response = self.http.post(
                f"{self._item_url(remote_path)}/createUploadSession",
                json={'item': {
                    '@microsoft.graph.conflictBehavior': 'replace',
                    'name': posixpath.basename(remote_path),
                }},
                headers=self._headers(),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientIOError(f"OneDrive upload session creation failed: {e}") from e
        return response.json()['uploadUrl']

    def upload_chunk(self, session_url: str, chunk: bytes, start: int, end: int, total: int) -> None:
        # upload URLs carry their own auth, no Authorization header
        try:
            response = self.http.put(
                session_url,
                content=chunk,
                headers={
                    'Content-Range': f"bytes {start}-{end - 1}/{total}",
                    'Content-Length': str(end - start),
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientIOError(f"OneDrive chunk {start}-{end - 1} failed: {e}") from e

        if response.status_code in (200, 201):
            self._finished_items[session_url] = response.json()

    def complete_upload(self, session_url: str) -> UploadResult:
        item = self._finished_items.pop(session_url, None)
        if item is None:
            return UploadResult(success=False, error=TransientIOError("OneDrive did not confirm the upload"))
        return self._result(item)

    def abort_upload(self, session_url: str) -> None:
        self._finished_items.pop(session_url, None)
        self.http.delete(session_url)


class QuarkStorage:
    """Quark drive storage; the provider has no chunked upload API."""

    name = 'quark'

    def __init__(self, cookie: str, client: Optional[httpx.Client] = None, timeout: float = 300.0):
        self.cookie = cookie
        self.http = client or httpx.Client(timeout=timeout)

    def validate_config(self) -> None:
        if not self.cookie:
            raise ConfigurationError("Quark configuration invalid: missing cookie")

    def upload_file(self, local_path: str, remote_path: str) -> UploadResult:
        try:
            with open(local_path, 'rb') as f:
                response = self.http.post(
                    QUARK_UPLOAD_URL,
                    files={'file': (Path(local_path).name, f)},
                    data={'path': remote_path},
                    headers={'Cookie': self.cookie},
                )
            response.raise_for_status()
        except (httpx.HTTPError, OSError) as e:
            return UploadResult(success=False, error=TransientIOError(f"Quark upload failed: {e}"))

        payload = response.json()
        data = payload.get('data') or {}
        return UploadResult(success=True, file_id=data.get('fid', remote_path), url=data.get('url'))


class BaiduStorage:
    """
    Baidu Netdisk storage through the PCS REST upload.

    Third-party apps may only write below their app directory, so remote
    paths are placed under `app_dir`.
    """

    name = 'baidu'

    def __init__(self, access_token: str, app_dir: str = '/apps/sealback',
                 client: Optional[httpx.Client] = None, timeout: float = 300.0):
        self.access_token = access_token
        self.app_dir = app_dir
        self.http = client or httpx.Client(timeout=timeout)

    def validate_config(self) -> None:
        if not self.access_token:
            raise ConfigurationError("Baidu configuration invalid: missing access_token")
        if not self.app_dir or not self.app_dir.startswith('/apps/'):
            raise ConfigurationError("Baidu configuration invalid: app_dir must be below /apps/")

    def remote_path(self, remote_path: str) -> str:
        return posixpath.join(self.app_dir, remote_path.lstrip('/'))

    def upload_file(self, local_path: str, remote_path: str) -> UploadResult:
        path = self.remote_path(remote_path)
        try:
            with open(local_path, 'rb') as f:
                response = self.http.post(
                    BAIDU_UPLOAD_URL,
                    params={
                        'method': 'upload',
                        'access_token': self.access_token,
                        'path': path,
                        'ondup': 'overwrite',
                    },
                    files={'file': (Path(local_path).name, f)},
                )
        except (httpx.HTTPError, OSError) as e:
            return UploadResult(success=False, error=TransientIOError(f"Baidu upload failed: {e}"))

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if response.status_code in (401, 403) or payload.get('error_code') in BAIDU_AUTH_ERRORS:
            raise ConfigurationError(f"Baidu authentication failed: {payload.get('error_msg', response.text)}")
        if response.is_error or 'error_code' in payload:
            return UploadResult(success=False, error=TransientIOError(
                f"Baidu upload failed ({response.status_code}): {payload.get('error_msg', response.text)}"))

        return UploadResult(success=True, file_id=str(payload.get('fs_id', path)), url=f"baidu://{path}")

    def create_upload_session(self, file_size: int, remote_path: str) -> str:
        raise ChunkingNotSupportedError(self.name)

    def upload_chunk(self, session_id: str, chunk: bytes, start: int, end: int, total: int) -> None:
        raise ChunkingNotSupportedError(self.name)

    def complete_upload(self, session_id: str) -> UploadResult:
        raise ChunkingNotSupportedError(self.name)
