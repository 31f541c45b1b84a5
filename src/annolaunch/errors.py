"""Error taxonomy for remote job orchestration."""

import json
from typing import Any


class LauncherError(Exception):
    """Base class for all launcher errors."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransportError(LauncherError):
    """Opening or using an SSH connection failed."""

    kind = "transport"


class AuthenticationError(TransportError):
    """The remote host rejected the supplied credentials."""

    kind = "authentication"


class CommandError(LauncherError):
    """A remote command wrote to stderr."""

    kind = "command"

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr

    @classmethod
    def from_stderr(cls, stderr: str, context: str | None = None) -> "CommandError":
        """Build an error from raw stderr, reshaping JSON error bodies when present."""
        text = stderr.strip()
        message = _message_from_json(text) or text
        if context:
            message = f"{context}: {message}"
        return cls(message, stderr=stderr)


class NotFoundError(LauncherError):
    """The queried object does not exist (or a grep matched nothing)."""

    kind = "not_found"


class JobNotFoundError(NotFoundError):
    """The accounting database returned no rows for a job."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class SubmissionValidationError(LauncherError, ValueError):
    """Request parameters were rejected before any remote call."""

    kind = "validation"

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class ParseError(LauncherError):
    """Remote output could not be parsed."""

    kind = "parse"


class TemplateError(LauncherError, ValueError):
    """A script template and its parameters do not match."""

    kind = "template"


class MissingCredentialsError(LauncherError):
    """No key pair is stored for the user."""

    kind = "missing_credentials"

    def __init__(self, username: str) -> None:
        super().__init__("No ssh keys found")
        self.username = username


def _message_from_json(text: str) -> str | None:
    """Extract a readable message from a JSON error body, or None."""
    if not text.startswith(("{", "[")):
        return None
    try:
        body = json.loads(text)
    except json.JSONDecodeError:
        return None

    if isinstance(body, list):
        body = {"errors": body}
    if not isinstance(body, dict):
        return None

    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        parts = []
        for err in errors:
            if isinstance(err, dict):
                parts.append(str(err.get("description") or err.get("error") or err))
            else:
                parts.append(str(err))
        return "; ".join(parts)

    for key in ("error", "message", "detail"):
        value = body.get(key)
        if value:
            return str(value)
    return None
