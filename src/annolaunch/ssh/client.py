"""Async SSH client for running commands as a cluster user."""

import asyncio
import logging
import shlex
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

import asyncssh

from annolaunch.errors import AuthenticationError, TransportError
from annolaunch.models import Identity

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Raw output of one remote command."""

    stdout: str
    stderr: str
    exit_status: int

    @property
    def failed(self) -> bool:
        """Whether the command reported an error on stderr."""
        return bool(self.stderr.strip())


def join_commands(*argvs: Sequence[str], sep: str = "&&") -> str:
    """Join argument vectors into one shell line, quoting every token."""
    return f" {sep} ".join(shlex.join(argv) for argv in argvs)


class SSHClient:
    """A single authenticated connection to the cluster login host."""

    def __init__(
        self,
        host: str,
        identity: Identity,
        port: int = 22,
        known_hosts: Path | None = None,
        connect_timeout: float = 15,
        command_timeout: float | None = None,
    ) -> None:
        self.host = host
        self.identity = identity
        self.port = port
        self.known_hosts = known_hosts
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._connection: asyncssh.SSHClientConnection | None = None
        self._connect_lock = asyncio.Lock()
        # One in-flight command per connection; later callers queue here.
        self._command_lock = asyncio.Lock()
        self._pending = 0
        # Called when the last running or queued command finishes.
        self.on_idle: Callable[[], None] | None = None

    @property
    def user(self) -> str:
        return self.identity.username

    @property
    def busy(self) -> bool:
        """Whether a command is running or queued on this connection."""
        return self._pending > 0

    def _begin(self) -> None:
        self._pending += 1

    def _end(self) -> None:
        self._pending -= 1
        if self._pending == 0 and self.on_idle is not None:
            self.on_idle()

    @property
    def is_connected(self) -> bool:
        """Check if the connection is active."""
        return self._connection is not None and not self._connection.is_closed()

    def _connect_options(self) -> dict:
        options: dict = {
            "host": self.host,
            "port": self.port,
            "username": self.identity.username,
            # None means don't validate (for development)
            "known_hosts": str(self.known_hosts) if self.known_hosts else None,
            "keepalive_interval": 30,
            "keepalive_count_max": 3,
        }
        if self.identity.private_key:
            key = asyncssh.import_private_key(
                self.identity.private_key, self.identity.passphrase
            )
            options["client_keys"] = [key]
            options["password"] = None
            options["preferred_auth"] = ["publickey"]
        elif self.identity.password is not None:
            options["client_keys"] = None
            options["password"] = self.identity.password
            options["preferred_auth"] = ["password", "keyboard-interactive"]
        else:
            raise AuthenticationError(
                f"No credentials available for {self.identity.username}"
            )
        return options

    async def connect(self) -> None:
        """Establish the SSH connection."""
        async with self._connect_lock:
            if self.is_connected:
                return

            logger.info(f"Connecting to {self.user}@{self.host}:{self.port}")

            try:
                options = self._connect_options()
            except (asyncssh.KeyImportError, ValueError) as e:
                raise AuthenticationError(f"Invalid private key for {self.user}: {e}") from e

            try:
                self._connection = await asyncio.wait_for(
                    asyncssh.connect(**options),
                    timeout=self.connect_timeout,
                )
                logger.info(f"Connected to {self.host} as {self.user}")
            except asyncio.TimeoutError as e:
                logger.error(f"SSH connection timed out after {self.connect_timeout}s")
                raise TransportError(
                    f"SSH connection to {self.host} timed out after {self.connect_timeout}s"
                ) from e
            except asyncssh.PermissionDenied as e:
                logger.error(f"SSH authentication failed for {self.user}: {e}")
                raise AuthenticationError(
                    f"Authentication failed for {self.user}@{self.host}: {e.reason}"
                ) from e
            except (asyncssh.Error, OSError) as e:
                logger.error(f"SSH connection failed: {e}")
                raise TransportError(f"SSH connection to {self.host} failed: {e}") from e

    def close(self) -> None:
        """Close the connection without waiting for the transport to drain."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            logger.info(f"Closed connection to {self.host} for {self.user}")

    async def disconnect(self) -> None:
        """Close the SSH connection."""
        async with self._connect_lock:
            if self._connection is not None:
                connection = self._connection
                self._connection = None
                connection.close()
                await connection.wait_closed()
                logger.info(f"Disconnected from {self.host}")

    async def run_command(
        self,
        command: Sequence[str] | str,
        input: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """
        Run a command on the remote host.

        Args:
            command: An argument vector (quoted here) or a line already built
                with :func:`join_commands`.
            input: Optional text fed to the command's stdin.
            timeout: Overrides the client's command timeout (None = no limit).

        Returns:
            CommandResult with stdout, stderr and exit status. Non-empty
            stderr is not raised here; callers decide what it means.
        """
        if not isinstance(command, str):
            command = shlex.join(command)

        timeout = timeout if timeout is not None else self.command_timeout
        logger.debug(f"[{self.user}] $ {command}")

        self._begin()
        try:
            connection = await self._ready_connection()
            async with self._command_lock:
                try:
                    result = await asyncio.wait_for(
                        connection.run(command, input=input, check=False),
                        timeout=timeout,
                    )
                except asyncio.TimeoutError as e:
                    logger.error(f"Command timed out after {timeout}s: {command[:50]}...")
                    raise TransportError(f"Command timed out after {timeout}s") from e
                except (asyncssh.Error, OSError) as e:
                    logger.error(f"Command execution failed: {e}")
                    # Force a reconnect on the next attempt
                    self._drop(connection)
                    raise TransportError(f"Command execution failed: {e}") from e
        finally:
            self._end()

        stdout = result.stdout or ""
        stderr = result.stderr or ""
        if isinstance(stdout, bytes):
            stdout = stdout.decode(errors="replace")
        if isinstance(stderr, bytes):
            stderr = stderr.decode(errors="replace")
        logger.debug(f"[{self.user}] exit={result.exit_status} stdout={stdout[:200]!r}")
        return CommandResult(
            stdout=stdout,
            stderr=stderr,
            exit_status=result.exit_status or 0,
        )

    async def put_file(self, local_path: Path, remote_path: str) -> None:
        """Upload a local file over SFTP."""
        self._begin()
        try:
            connection = await self._ready_connection()
            async with self._command_lock:
                try:
                    async with connection.start_sftp_client() as sftp:
                        await sftp.put(str(local_path), remote_path)
                except (asyncssh.Error, OSError) as e:
                    logger.error(f"Upload of {local_path} to {remote_path} failed: {e}")
                    raise TransportError(f"Upload to {remote_path} failed: {e}") from e
        finally:
            self._end()
        logger.info(f"Uploaded {local_path.name} to {self.host}:{remote_path}")

    async def _ready_connection(self) -> asyncssh.SSHClientConnection:
        if not self.is_connected:
            await self.connect()

        if self._connection is None:
            raise TransportError("Failed to establish SSH connection")
        return self._connection

    def _drop(self, connection: asyncssh.SSHClientConnection) -> None:
        connection.close()
        if self._connection is connection:
            self._connection = None

    async def __aenter__(self) -> "SSHClient":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.disconnect()
