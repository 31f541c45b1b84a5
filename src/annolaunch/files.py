"""Remote file operations on the cluster, run as the requesting user."""

import logging
import posixpath
import re
from collections.abc import Sequence
from typing import TYPE_CHECKING

from annolaunch.credentials import KeyStore, identity_for
from annolaunch.errors import (
    CommandError,
    MissingCredentialsError,
    NotFoundError,
    SubmissionValidationError,
)
from annolaunch.models import RemoteEntry
from annolaunch.ssh.client import CommandResult, join_commands

if TYPE_CHECKING:
    from annolaunch.ssh.pool import ConnectionPool

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def check_remote_path(path: str, allowed_roots: Sequence[str] = ()) -> str:
    """Validate a user-supplied remote path.

    The path must be absolute, free of ``..`` segments and control
    characters, and inside one of ``allowed_roots`` when any are given.
    """
    if not path or not path.startswith("/"):
        raise SubmissionValidationError(f"Path must be absolute: {path!r}")
    if _CONTROL_CHARS.search(path):
        raise SubmissionValidationError("Path contains control characters")
    if ".." in path.split("/"):
        raise SubmissionValidationError(f"Path must not contain '..': {path!r}")

    if allowed_roots:
        normalized = posixpath.normpath(path)
        for root in allowed_roots:
            root = posixpath.normpath(root)
            if normalized == root or normalized.startswith(root.rstrip("/") + "/"):
                return path
        raise SubmissionValidationError(f"Path is outside the allowed storage: {path}")
    return path


def parse_listing(stdout: str) -> list[RemoteEntry]:
    """Parse ``ls -1 -p`` output; a trailing ``/`` marks a directory."""
    entries = []
    for line in stdout.splitlines():
        if not line.strip():
            continue
        if line.endswith("/"):
            entries.append(RemoteEntry(name=line[:-1], type="directory"))
        else:
            entries.append(RemoteEntry(name=line, type="file"))
    return entries


class RemoteFileService:
    """List, read and remove files under the user's cluster account."""

    def __init__(
        self,
        pool: "ConnectionPool",
        key_store: KeyStore,
        allowed_roots: Sequence[str] = (),
        passphrase: str | None = None,
    ) -> None:
        self.pool = pool
        self.key_store = key_store
        self.allowed_roots = list(allowed_roots)
        self.passphrase = passphrase

    async def _run(self, username: str, command: list[str] | str, context: str) -> CommandResult:
        identity = identity_for(self.key_store, username, passphrase=self.passphrase)
        if identity is None:
            raise MissingCredentialsError(username)
        client = await self.pool.acquire(identity)
        result = await client.run_command(command)
        if result.failed:
            logger.error(f"{context} failed for {username}: {result.stderr.strip()}")
            raise CommandError.from_stderr(result.stderr, context)
        return result

    async def list(self, username: str, path: str) -> list[RemoteEntry]:
        path = check_remote_path(path, self.allowed_roots)
        result = await self._run(username, ["ls", "-1", "-p", "--", path], f"ls {path}")
        return parse_listing(result.stdout)

    async def read(self, username: str, path: str) -> str:
        path = check_remote_path(path, self.allowed_roots)
        result = await self._run(username, ["cat", "--", path], f"cat {path}")
        return result.stdout

    async def read_head(
        self,
        username: str,
        path: str,
        lines: int | None = None,
        grep: str | None = None,
    ) -> str:
        """Read the first lines of a file, optionally filtered by a pattern.

        Raises:
            NotFoundError: If ``grep`` is given and no line matches.
        """
        path = check_remote_path(path, self.allowed_roots)
        head = ["head"]
        if lines is not None:
            if lines < 1:
                raise SubmissionValidationError(f"Line count must be positive: {lines}")
            head += ["-n", str(lines)]
        head += ["--", path]

        if grep is None:
            result = await self._run(username, head, f"head {path}")
            return result.stdout

        command = join_commands(head, ["grep", "-e", grep], sep="|")
        result = await self._run(username, command, f"head {path}")
        if not result.stdout:
            raise NotFoundError(f"No matches found for {grep}")
        return result.stdout

    async def remove(self, username: str, path: str) -> str:
        path = check_remote_path(path, self.allowed_roots)
        result = await self._run(username, ["rm", "--", path], f"rm {path}")
        logger.info(f"Removed {path} for {username}")
        return result.stdout
