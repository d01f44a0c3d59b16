"""Per-environment variable sets persisted as ``.env.<label>`` files.

Edits happen in memory and reach disk only through :meth:`EnvironmentStore.save`,
which writes atomically.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path

from ..exceptions import EnvFileError, OperationInProgress

logger = logging.getLogger(__name__)

ENV_FILE_PREFIX = ".env."
KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")
LABEL_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass
class EnvironmentSet:
    """Ordered key/value variables for one environment label."""

    label: str
    variables: dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.variables)

    def __contains__(self, key: object) -> bool:
        return key in self.variables

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.variables.get(key, default)

    def as_dict(self) -> dict[str, str]:
        return dict(self.variables)


def validate_key(key: str) -> None:
    if not KEY_PATTERN.match(key):
        raise ValueError(f"Invalid variable name: {key!r}")


def validate_value(value: str) -> None:
    if "\n" in value or "\r" in value:
        raise ValueError("Variable values cannot contain newlines")


def validate_label(label: str) -> None:
    if not label or not LABEL_PATTERN.match(label):
        raise ValueError(f"Invalid environment label: {label!r}")


_ESCAPED = re.compile(r'\\(["\\])')


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        inner = value[1:-1]
        if value[0] == '"':
            return _ESCAPED.sub(r"\1", inner)
        return inner
    return value


def _quote(value: str) -> str:
    """Double-quote ``value`` when it would not read back unchanged."""
    if value == value.strip() and not value.startswith(("'", '"')):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_env_text(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines.

    Blank lines and ``#`` comments are ignored, an ``export`` prefix and
    matching surrounding quotes are stripped, and the last duplicate wins.
    Inside double quotes ``\\\\`` and ``\\"`` are unescaped; single quotes are literal.
    Lines without ``=`` or with an invalid key are skipped.
    """
    variables: dict[str, str] = {}

    for line_number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()

        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not KEY_PATTERN.match(key):
            logger.debug(f"Ignoring malformed line {line_number}: {raw!r}")
            continue

        # Re-inserting moves a duplicate to its last position
        variables.pop(key, None)
        variables[key] = _unquote(value.strip())

    return variables


def format_env_text(variables: dict[str, str]) -> str:
    """Render variables as ``KEY=VALUE`` lines in insertion order.

    Values with surrounding whitespace or a leading quote are written in double
    quotes, with ``\\`` and ``"`` escaped, so :func:`parse_env_text` returns them
    unchanged.
    """
    return "\n".join(f"{key}={_quote(value)}" for key, value in variables.items())


class EnvironmentStore:
    """In-memory environment sets backed by files at the workspace root."""

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self._sets: dict[str, EnvironmentSet] = {}
        self._saved: dict[str, dict[str, str]] = {}
        self._save_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def path_for(self, label: str) -> Path:
        validate_label(label)
        return self.root / f"{ENV_FILE_PREFIX}{label}"

    def load(self, label: str) -> EnvironmentSet:
        """Read ``.env.<label>`` into memory, replacing any unsaved edits.

        A missing file yields an empty set.

        Raises:
            EnvFileError: The file exists but cannot be read.
        """
        path = self.path_for(label)

        if path.exists():
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                raise EnvFileError(path, str(e)) from e
            variables = parse_env_text(text)
        else:
            variables = {}

        env_set = EnvironmentSet(label=label, variables=variables)
        with self._lock:
            self._sets[label] = env_set
            self._saved[label] = dict(variables)

        logger.debug(f"Loaded {len(variables)} variables for '{label}' from {path}")
        return env_set

    def get(self, label: str) -> EnvironmentSet:
        """Return the in-memory set, loading it on first access."""
        with self._lock:
            env_set = self._sets.get(label)
        if env_set is None:
            env_set = self.load(label)
        return env_set

    def set(self, label: str, key: str, value: str) -> None:
        """Set a variable in memory. Call :meth:`save` to persist."""
        validate_key(key)
        validate_value(value)
        env_set = self.get(label)
        with self._lock:
            env_set.variables[key] = value

    def unset(self, label: str, key: str) -> bool:
        """Remove a variable from memory. Returns False if it was not set."""
        env_set = self.get(label)
        with self._lock:
            return env_set.variables.pop(key, None) is not None

    def save(self, label: str) -> Path:
        """Write the set to ``.env.<label>`` atomically.

        Raises:
            OperationInProgress: A save of the same label is already running.
            EnvFileError: The file could not be written. The previous file is
                left untouched and the in-memory set keeps its edits.
        """
        path = self.path_for(label)

        with self._lock:
            save_lock = self._save_locks.setdefault(label, threading.Lock())
        if not save_lock.acquire(blocking=False):
            raise OperationInProgress(f"save of environment '{label}'")

        try:
            env_set = self.get(label)
            with self._lock:
                snapshot = dict(env_set.variables)
            self._write_atomic(path, format_env_text(snapshot))
            with self._lock:
                self._saved[label] = snapshot
            logger.info(f"Saved {len(snapshot)} variables to {path}")
            return path
        finally:
            save_lock.release()

    def _write_atomic(self, path: Path, content: str) -> None:
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f"{path.name}.", suffix=".tmp", dir=path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                f.write(content)
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            raise EnvFileError(path, str(e)) from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug(f"Could not remove temporary file {tmp_name}")

    def is_dirty(self, label: str) -> bool:
        """True if the in-memory set differs from what was last loaded or saved."""
        with self._lock:
            env_set = self._sets.get(label)
            if env_set is None:
                return False
            saved = self._saved.get(label, {})
            return list(env_set.variables.items()) != list(saved.items())

    def labels(self) -> list[str]:
        """Labels with a file on disk or a set in memory, sorted."""
        found: set[str] = set()
        try:
            for entry in self.root.iterdir():
                if entry.is_file() and entry.name.startswith(ENV_FILE_PREFIX):
                    label = entry.name[len(ENV_FILE_PREFIX):]
                    if LABEL_PATTERN.match(label) and not label.endswith(".tmp"):
                        found.add(label)
        except OSError as e:
            logger.debug(f"Cannot list environment files in {self.root}: {e}")
        with self._lock:
            found.update(self._sets)
        return sorted(found)
