"""Transports that supply the target manifest and file bytes."""

from __future__ import annotations

import http.client
import logging
import posixpath
import threading
from typing import Any, BinaryIO, Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

import paramiko

from .. import __version__
from ..errors import TransportError
from .manifest import DEFAULT_MANIFEST_NAME, Manifest, parse_manifest

logger = logging.getLogger("eqpatch.sync.transport")

USER_AGENT = f"eqpatch/{__version__}"
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_SFTP_TIMEOUT = 15.0


class RemoteStream:
    """Readable stream that reports read failures as TransportError."""

    def __init__(self, raw: Any, label: str):
        self._raw = raw
        self.label = label

    def read(self, size: int = -1) -> bytes:
        try:
            return self._raw.read(size)
        except (OSError, http.client.HTTPException, paramiko.SSHException) as e:
            raise TransportError(f"Transfer of {self.label} interrupted: {e}") from e

    def close(self) -> None:
        self._raw.close()

    def __enter__(self) -> "RemoteStream":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.close()


class Transport:
    """Capability interface: fetch the manifest and individual files."""

    manifest_name: str = DEFAULT_MANIFEST_NAME

    def fetch_manifest(self) -> Manifest:
        raise NotImplementedError

    def fetch_file(self, path: str) -> RemoteStream:
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.close()


class HttpTransport(Transport):
    """Plain HTTP(S) GETs against a patch directory published by a web server."""

    def __init__(
        self,
        base_url: str,
        manifest_name: str = DEFAULT_MANIFEST_NAME,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        user_agent: str = USER_AGENT,
    ):
        if not base_url:
            raise TransportError("No server URL configured")
        self.base_url = base_url.rstrip("/")
        self.manifest_name = manifest_name
        self.timeout = timeout
        self.user_agent = user_agent

    def describe(self) -> str:
        return self.base_url

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{quote(path)}"

    def fetch_manifest(self) -> Manifest:
        with self.fetch_file(self.manifest_name) as stream:
            raw = stream.read()
        manifest = parse_manifest(raw)
        logger.info("Downloaded manifest from %s (%d files)", self.base_url, len(manifest))
        return manifest

    def fetch_file(self, path: str) -> RemoteStream:
        url = self.url_for(path)
        request = Request(url, headers={"User-Agent": self.user_agent}, method="GET")
        try:
            response = urlopen(request, timeout=self.timeout)
        except HTTPError as e:
            raise TransportError(f"Server returned status {e.code} for {url}") from e
        except URLError as e:
            raise TransportError(f"Connection error for {url}: {e.reason}") from e
        except (OSError, http.client.HTTPException) as e:
            raise TransportError(f"Request for {url} failed: {e}") from e

        status = getattr(response, "status", 200)
        if not 200 <= status < 300:
            response.close()
            raise TransportError(f"Server returned status {status} for {url}")
        return RemoteStream(response, path)


class SftpTransport(Transport):
    """Reads the patch directory over an SSH/SFTP session."""

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "",
        password: Optional[str] = None,
        key_path: Optional[str] = None,
        remote_path: str = ".",
        manifest_name: str = DEFAULT_MANIFEST_NAME,
        timeout: float = DEFAULT_SFTP_TIMEOUT,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ):
        if not host:
            raise TransportError("No SFTP host configured")
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.key_path = key_path
        self.remote_path = remote_path or "."
        self.manifest_name = manifest_name
        self.timeout = timeout
        self._client_factory = client_factory
        self._ssh: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None
        # Pool workers share one session.
        self._lock = threading.Lock()

    def describe(self) -> str:
        return f"sftp://{self.username}@{self.host}:{self.port}{posixpath.join('/', self.remote_path)}"

    @property
    def connected(self) -> bool:
        return self._sftp is not None

    def connect(self) -> paramiko.SFTPClient:
        with self._lock:
            if self._sftp is None:
                self._open_session()
            return self._sftp

    def _open_session(self) -> None:
        logger.info("Connecting to %s@%s:%s", self.username, self.host, self.port)
        client = self._client_factory()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kwargs: dict = dict(
            hostname=self.host,
            port=self.port,
            username=self.username,
            timeout=self.timeout,
            banner_timeout=self.timeout,
            auth_timeout=self.timeout,
        )
        if self.key_path:
            kwargs["key_filename"] = self.key_path
        if self.password:
            kwargs["password"] = self.password
        try:
            client.connect(**kwargs)
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TransportError(f"Failed to connect to {self.host}:{self.port}: {e}") from e
        self._ssh = client
        self._sftp = sftp

    def close(self) -> None:
        with self._lock:
            if self._sftp is not None:
                self._sftp.close()
            if self._ssh is not None:
                self._ssh.close()
            self._sftp = None
            self._ssh = None

    def remote_path_for(self, path: str) -> str:
        return posixpath.join(self.remote_path, path)

    def fetch_manifest(self) -> Manifest:
        with self.fetch_file(self.manifest_name) as stream:
            raw = stream.read()
        manifest = parse_manifest(raw)
        logger.info("Downloaded manifest from %s (%d files)", self.describe(), len(manifest))
        return manifest

    def fetch_file(self, path: str) -> RemoteStream:
        sftp = self.connect()
        remote = self.remote_path_for(path)
        try:
            handle = sftp.open(remote, "rb")
        except (OSError, paramiko.SSHException) as e:
            raise TransportError(f"Failed to open remote file {remote}: {e}") from e
        return RemoteStream(handle, path)


__all__ = [
    "HttpTransport",
    "RemoteStream",
    "SftpTransport",
    "Transport",
    "USER_AGENT",
]
