"""Per-user SSH key pairs: storage, generation and installation."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Protocol

import asyncssh

from annolaunch.backends.slurm import validate_name
from annolaunch.errors import AuthenticationError, TransportError
from annolaunch.models import Identity, KeyPair

logger = logging.getLogger(__name__)

KEY_COMMENT_SUFFIX = "@annotat3d"


def key_comment(username: str) -> str:
    return f"{username}{KEY_COMMENT_SUFFIX}"


class KeyStore(Protocol):
    """Keyed storage for user key pairs."""

    def put(self, username: str, keys: KeyPair) -> None: ...

    def get(self, username: str) -> KeyPair | None: ...


class InMemoryKeyStore:
    """Key pairs held for the lifetime of the process."""

    def __init__(self) -> None:
        self._keys: dict[str, KeyPair] = {}

    def put(self, username: str, keys: KeyPair) -> None:
        self._keys[username] = keys

    def get(self, username: str) -> KeyPair | None:
        return self._keys.get(username)


class FileKeyStore:
    """Key pairs stored as ``<keys_path>/<user>_id_rsa{,.pub}``.

    Loaded keys are cached in memory.
    """

    def __init__(self, keys_path: Path) -> None:
        self.keys_path = keys_path
        self._cache: dict[str, KeyPair] = {}

    def _private_path(self, username: str) -> Path:
        return self.keys_path / f"{validate_name(username, 'user')}_id_rsa"

    def put(self, username: str, keys: KeyPair) -> None:
        self.keys_path.mkdir(parents=True, exist_ok=True)
        private_path = self._private_path(username)
        public_path = private_path.with_name(private_path.name + ".pub")
        for path in (private_path, public_path):
            if path.exists():
                path.unlink()

        fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(keys.private_key)
        public_path.write_text(keys.public_key)

        self._cache[username] = keys
        logger.info(f"Stored key pair for {username} in {self.keys_path}")

    def get(self, username: str) -> KeyPair | None:
        if username in self._cache:
            return self._cache[username]

        private_path = self._private_path(username)
        public_path = private_path.with_name(private_path.name + ".pub")
        if not private_path.exists() or not public_path.exists():
            return None

        keys = KeyPair(
            public_key=public_path.read_text(),
            private_key=private_path.read_text(),
        )
        self._cache[username] = keys
        return keys


def generate_key_pair(
    username: str,
    passphrase: str | None = None,
    key_size: int = 4096,
) -> KeyPair:
    """Generate an RSA key pair tagged ``<user>@annotat3d``."""
    key = asyncssh.generate_private_key("ssh-rsa", comment=key_comment(username), key_size=key_size)
    if passphrase:
        private = key.export_private_key("openssh", passphrase=passphrase)
    else:
        private = key.export_private_key("openssh")
    public = key.export_public_key("openssh")
    logger.info(f"Generated {key_size}-bit RSA key pair for {username}")
    return KeyPair(public_key=public.decode().strip(), private_key=private.decode())


def merge_authorized_keys(existing: str, public_key: str, comment: str) -> str:
    """Replace any key carrying ``comment`` with ``public_key``."""
    kept = [
        line for line in existing.split("\n")
        if line and comment not in line
    ]
    return "\n".join([*kept, public_key.strip()]) + "\n"


async def install_public_key(
    host: str,
    username: str,
    password: str,
    public_key: str,
    port: int = 22,
    known_hosts: Path | None = None,
    timeout: float = 15,
) -> None:
    """Append a public key to the user's ``~/.ssh/authorized_keys``.

    Authenticates once with the user's password; earlier keys generated by
    this launcher for the same user are replaced.
    """
    try:
        async with await asyncio.wait_for(
            asyncssh.connect(
                host=host,
                port=port,
                username=username,
                password=password,
                client_keys=None,
                known_hosts=str(known_hosts) if known_hosts else None,
            ),
            timeout=timeout,
        ) as conn:
            async with conn.start_sftp_client() as sftp:
                try:
                    await sftp.mkdir(".ssh", asyncssh.SFTPAttrs(permissions=0o700))
                except asyncssh.SFTPFailure:
                    pass  # already exists

                try:
                    async with sftp.open(".ssh/authorized_keys", "r") as f:
                        existing = await f.read()
                except asyncssh.SFTPNoSuchFile:
                    existing = ""

                merged = merge_authorized_keys(existing, public_key, key_comment(username))
                async with sftp.open(".ssh/authorized_keys", "w") as f:
                    await f.write(merged)
                await sftp.chmod(".ssh/authorized_keys", 0o600)
    except asyncio.TimeoutError as e:
        raise TransportError(f"SSH connection to {host} timed out after {timeout}s") from e
    except asyncssh.PermissionDenied as e:
        raise AuthenticationError(f"Authentication failed for {username}@{host}: {e.reason}") from e
    except (asyncssh.Error, OSError) as e:
        raise TransportError(f"Failed to install public key for {username}: {e}") from e

    logger.info(f"Public key installed for {username} on {host}")


async def provision_keys(
    store: KeyStore,
    host: str,
    username: str,
    password: str,
    passphrase: str | None = None,
    port: int = 22,
    known_hosts: Path | None = None,
) -> str:
    """Generate, install and store a key pair; returns the public key."""
    keys = await asyncio.to_thread(generate_key_pair, username, passphrase)
    await install_public_key(
        host, username, password, keys.public_key, port=port, known_hosts=known_hosts
    )
    store.put(username, keys)
    return keys.public_key


def identity_for(store: KeyStore, username: str, passphrase: str | None = None) -> Identity | None:
    """Build a key-based identity from the store, or None without keys."""
    keys = store.get(username)
    if keys is None:
        return None
    return Identity.from_keys(username, keys, passphrase=passphrase)
