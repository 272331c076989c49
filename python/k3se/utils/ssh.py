"""
k3se/utils/ssh.py

Provides the remote session used by the engine for every node and for the
optional bastion host:
  - RemoteSession.connect: open an asyncssh connection, optionally tunnelled
    through an already connected proxy session.
  - RemoteSession.run: run a RemoteCommand, streaming its output into a logger.
  - RemoteSession.upload: write bytes to a remote path over SFTP.
  - RemoteSession.read: return the content of a (root-owned) remote file.
  - RemoteSession.close: close the connection.

A session must only be used by one task at a time. The proxy session is only
used to open tunnels, which asyncssh multiplexes over its single connection.
"""

from __future__ import annotations

import asyncio
import logging
import os
import posixpath
import shlex
from typing import Any, Dict, List, Optional, Union

import asyncssh

from k3se.errors import ConnectError, RemoteCommandError, UploadError
from k3se.models.ssh import RemoteCommand, SSHConfig

Logger = Union[logging.Logger, logging.LoggerAdapter]

logger = logging.getLogger(__name__)


def _load_client_key(cfg: SSHConfig) -> Optional[asyncssh.SSHKey]:
    """
    Resolve the private key to authenticate with. An inline key takes
    precedence over a key file. Returns None if no key is configured.
    """
    passphrase = cfg.passphrase or None
    try:
        if cfg.key:
            return asyncssh.import_private_key(cfg.key, passphrase)
        if cfg.key_file:
            return asyncssh.read_private_key(os.path.expanduser(cfg.key_file), passphrase)
    except (asyncssh.KeyImportError, OSError) as exc:
        raise ConnectError(
            f"Failed to load private key for {cfg.address}: {exc}", cfg.host
        ) from exc
    return None


def _auth_options(cfg: SSHConfig, log: Logger) -> Dict[str, Any]:
    """
    Build asyncssh connection options for exactly one authentication method.
    A private key always takes precedence over a password.
    """
    key = _load_client_key(cfg)
    if key is not None:
        return {"client_keys": [key], "password": None}

    if cfg.password:
        log.warning("Using password authentication is insecure!")
        log.warning("Please consider using public key authentication!")
        return {"client_keys": None, "password": cfg.password}

    raise ConnectError(
        f"No authentication method specified for {cfg.address}", cfg.host
    )


class _PinnedHostKeyClient(asyncssh.SSHClient):
    """
    Accepts the server only if its host key has the configured SHA256
    fingerprint. asyncssh calls the hook during key exchange, so no
    credential is sent to a host that fails the check.
    """

    def __init__(self, fingerprint: str) -> None:
        self.fingerprint = fingerprint
        self.presented = ""

    def validate_host_public_key(
        self, host: str, addr: str, port: int, key: asyncssh.SSHKey
    ) -> bool:
        self.presented = key.get_fingerprint("sha256")
        return self.presented == self.fingerprint


class RemoteSession:
    """
    A live SSH connection to one host.

    Output of commands is written line by line to the session logger:
    stdout at INFO, stderr at WARNING.
    """

    def __init__(
        self,
        config: SSHConfig,
        conn: asyncssh.SSHClientConnection,
        log: Logger,
        command_timeout: Optional[float] = None,
    ) -> None:
        self.config = config
        self._conn = conn
        self._log = log
        self._command_timeout = command_timeout

    @classmethod
    async def connect(
        cls,
        config: SSHConfig,
        *,
        proxy: Optional[RemoteSession] = None,
        timeout: float = 5.0,
        command_timeout: Optional[float] = None,
        log: Optional[Logger] = None,
    ) -> RemoteSession:
        """
        Connect and authenticate to `config.host`.

        Args:
            config: Address and credentials of the target.
            proxy: An open session to tunnel this connection through.
            timeout: Seconds allowed for the TCP connection and the SSH handshake.
            command_timeout: Optional upper bound for each remote command.
            log: Logger receiving warnings and command output.

        Returns:
            The connected session.

        Raises:
            ConnectError: If the key cannot be loaded, no credential is set,
                the connection fails or the host key fingerprint does not match.
        """
        log = log or logger
        options = _auth_options(config, log)

        pinned: Optional[_PinnedHostKeyClient] = None
        if config.fingerprint:
            pinned = _PinnedHostKeyClient(config.fingerprint)
            # With no trusted keys asyncssh defers every host key to the client hook.
            options.update(
                known_hosts=asyncssh.import_known_hosts(""),
                client_factory=lambda: pinned,
            )
        else:
            log.warning("Skipping host key verification is insecure!")
            log.warning("This allows for person-in-the-middle attacks!")
            log.warning("Please consider using fingerprint verification!")
            options["known_hosts"] = None

        try:
            conn = await asyncssh.connect(
                config.host,
                port=config.port,
                username=config.user,
                agent_path=None,
                tunnel=proxy._conn if proxy is not None else (),
                connect_timeout=timeout,
                login_timeout=timeout,
                **options,
            )
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as exc:
            if pinned is not None and pinned.presented not in ("", pinned.fingerprint):
                message = f"Fingerprint mismatch for {config.address}: server fingerprint: {pinned.presented}"
            else:
                message = f"Failed to connect to {config.address}: {exc or type(exc).__name__}"
            raise ConnectError(message, config.host) from exc

        return cls(config, conn, log, command_timeout)

    async def run(self, command: RemoteCommand, *, log_output: bool = True) -> str:
        """
        Run a command and wait for it to exit.

        Args:
            command: The command to run.
            log_output: Write stdout lines to the session logger. Disable for
                commands printing secrets such as tokens or kubeconfigs.

        Returns:
            The captured stdout.

        Raises:
            RemoteCommandError: On non-zero exit, channel failure or timeout.
        """
        description = command.build(redact=True)
        self._log.debug("Running: %s", description)

        try:
            return await asyncio.wait_for(
                self._run(command, description, log_output), self._command_timeout
            )
        except asyncio.TimeoutError as exc:
            raise RemoteCommandError(
                f"Command timed out after {self._command_timeout}s on {self.config.host}: {description}"
            ) from exc
        except (asyncssh.Error, OSError) as exc:
            raise RemoteCommandError(
                f"Failed to run command on {self.config.host}: {description}: {exc}"
            ) from exc

    async def _run(
        self, command: RemoteCommand, description: str, log_output: bool
    ) -> str:
        proc = await self._conn.create_process(command.build())
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        async def _drain(
            reader: asyncssh.SSHReader, sink: List[str], level: Optional[int]
        ) -> None:
            while True:
                line = await reader.readline()
                if not line:
                    return
                sink.append(line)
                if level is not None:
                    self._log.log(level, "%s", line.rstrip("\n"))

        await asyncio.gather(
            _drain(proc.stdout, stdout_lines, logging.INFO if log_output else None),
            _drain(proc.stderr, stderr_lines, logging.WARNING),
        )
        await proc.wait()

        stderr = "".join(stderr_lines).strip()
        if proc.exit_status != 0:
            raise RemoteCommandError(
                f"Command failed with exit status {proc.exit_status} on {self.config.host}: {description}",
                proc.exit_status,
                stderr,
            )
        return "".join(stdout_lines)

    async def upload(self, path: str, data: bytes) -> None:
        """
        Write `data` to `path` on the remote host, creating parent directories.

        Raises:
            UploadError: If the SFTP session or the write fails.
        """
        self._log.debug("Uploading %d bytes to %s", len(data), path)
        try:
            async with self._conn.start_sftp_client() as sftp:
                await sftp.makedirs(posixpath.dirname(path), exist_ok=True)
                async with sftp.open(path, "wb") as remote_file:
                    await remote_file.write(data)
        except (asyncssh.Error, OSError) as exc:
            raise UploadError(
                f"Failed to upload {path} to {self.config.host}: {exc}"
            ) from exc

    async def read(self, path: str) -> str:
        """Return the content of a remote file readable by root."""
        return await self.run(
            RemoteCommand(cmd=f"sudo cat {shlex.quote(path)}"), log_output=False
        )

    async def close(self) -> None:
        """
        Close the connection and wait until it is fully shut down.

        Raises:
            ConnectError: If the connection does not shut down cleanly.
        """
        try:
            self._conn.close()
            await self._conn.wait_closed()
        except (asyncssh.Error, OSError) as exc:
            raise ConnectError(
                f"Failed to close connection to {self.config.address}: {exc}",
                self.config.host,
            ) from exc
