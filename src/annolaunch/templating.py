"""Batch script templates with ``${TOKEN}`` placeholders."""

import logging
import string
from collections.abc import Iterable, Mapping
from importlib import resources
from pathlib import Path

from annolaunch.errors import TemplateError

logger = logging.getLogger(__name__)


class _PlaceholderTemplate(string.Template):
    """Only ``${TOKEN}`` is a placeholder; bare ``$VAR`` is left to the shell."""

    delimiter = "$"
    pattern = r"""
    \$(?:
      (?P<escaped>\$(?=\{))             |
      \{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\} |
      (?P<named>(?!))                   |
      (?P<invalid>(?!))
    )
    """


class ScriptTemplate:
    """A script body whose placeholder set is checked up front.

    Construct templates at startup: a mismatch between the placeholders in
    the text and the ``required`` token set raises :class:`TemplateError`
    immediately instead of on the first request.
    """

    def __init__(self, text: str, required: Iterable[str] | None = None, name: str = "<string>") -> None:
        self.text = text
        self.name = name
        self._template = _PlaceholderTemplate(text)
        self.tokens = frozenset(
            m.group("braced")
            for m in self._template.pattern.finditer(text)
            if m.group("braced")
        )
        if required is not None:
            self._check_keys(frozenset(required), "required tokens")

    def _check_keys(self, keys: frozenset[str], what: str) -> None:
        missing = sorted(self.tokens - keys)
        extra = sorted(keys - self.tokens)
        if missing or extra:
            parts = []
            if missing:
                parts.append(f"placeholders without a value: {', '.join(missing)}")
            if extra:
                parts.append(f"{what} not in template: {', '.join(extra)}")
            raise TemplateError(f"Template '{self.name}' mismatch ({'; '.join(parts)})")

    def render(self, params: Mapping[str, object]) -> str:
        """Substitute every placeholder; the key set must match exactly."""
        self._check_keys(frozenset(params), "parameters")
        return self._template.substitute({k: str(v) for k, v in params.items()})

    @classmethod
    def from_file(cls, path: Path, required: Iterable[str] | None = None) -> "ScriptTemplate":
        """Load a template from disk."""
        path = path.expanduser()
        try:
            text = path.read_text()
        except OSError as e:
            raise TemplateError(f"Cannot read template {path}: {e}") from e
        logger.info(f"Loaded script template {path}")
        return cls(text, required=required, name=str(path))


def load_builtin(name: str, required: Iterable[str] | None = None) -> ScriptTemplate:
    """Load a template shipped in ``annolaunch/templates``."""
    try:
        text = resources.files("annolaunch").joinpath("templates").joinpath(name).read_text()
    except (FileNotFoundError, OSError) as e:
        raise TemplateError(f"Built-in template '{name}' not found") from e
    return ScriptTemplate(text, required=required, name=name)
