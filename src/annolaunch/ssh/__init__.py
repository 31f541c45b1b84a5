"""SSH transport: command execution and connection pooling."""

from annolaunch.ssh.client import CommandResult, SSHClient, join_commands
from annolaunch.ssh.pool import ConnectionPool

__all__ = ["CommandResult", "ConnectionPool", "SSHClient", "join_commands"]
