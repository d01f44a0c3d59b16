"""Configuration for monodeck.

Configuration is stored at ~/.monodeck/config.toml and organized into sections.

Configuration loading priority:
1. Environment variables (highest)
2. Config file (~/.monodeck/config.toml)
3. Defaults (lowest)

Sections:
    [workspace]  - Workspace root, active environment, discovery settings
    [runner]     - Script execution settings (grace period, run mode)
    [git]        - Git remote and pull policy
    [remote]     - Remote hosting API (base URL, token)
    [ui]         - Logging and display settings

Example:
    from monodeck.config import get_config

    config = get_config()
    print(config.workspace.root)
    print(config.runner.grace_period)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore

import tomli_w

logger = logging.getLogger(__name__)

# Default config location
DEFAULT_CONFIG_DIR = Path.home() / ".monodeck"
DEFAULT_CONFIG_FILE = "config.toml"

DEFAULT_IGNORE_DIRS = [
    "node_modules",
    "dist",
    "build",
    "coverage",
    "__pycache__",
    "vendor",
]

RUN_MODES = ("parallel", "sequential")
PACKAGE_MANAGERS = ("auto", "npm", "yarn", "pnpm")
PULL_STRATEGIES = ("ff-only", "merge", "rebase")

# Singleton instance
_config: MonodeckConfig | None = None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# =============================================================================
# Configuration Sections
# =============================================================================


@dataclass
class WorkspaceSettings:
    """Workspace and discovery settings.

    Attributes:
        root: Monorepo root directory. Empty means the current directory.
        active_environment: Environment label whose variables are overlaid on runs.
        manifest_name: File name that marks a directory as a project.
        max_depth: Maximum directory depth searched below the root.
        ignore_dirs: Directory names never descended into.
        include_root: Treat a manifest at the root itself as a project.
    """

    root: str = ""
    active_environment: str = "dev"
    manifest_name: str = "package.json"
    max_depth: int = 4
    ignore_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_DIRS))
    include_root: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkspaceSettings:
        """Create from dictionary."""
        return cls(
            root=data.get("root", ""),
            active_environment=data.get("active_environment", "dev"),
            manifest_name=data.get("manifest_name", "package.json"),
            max_depth=int(data.get("max_depth", 4)),
            ignore_dirs=list(data.get("ignore_dirs", DEFAULT_IGNORE_DIRS)),
            include_root=_as_bool(data.get("include_root", False)),
        )

    @classmethod
    def from_env(cls) -> WorkspaceSettings:
        """Create from environment variables."""
        return cls(
            root=os.environ.get("MONODECK_ROOT", ""),
            active_environment=os.environ.get("MONODECK_ENV", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "root": self.root,
            "active_environment": self.active_environment,
            "manifest_name": self.manifest_name,
            "max_depth": self.max_depth,
            "ignore_dirs": self.ignore_dirs,
            "include_root": self.include_root,
        }

    @property
    def root_path(self) -> Path:
        """Resolved workspace root."""
        return Path(self.root).expanduser().resolve() if self.root else Path.cwd()


@dataclass
class RunnerSettings:
    """Script execution settings.

    Attributes:
        grace_period: Seconds between SIGTERM and SIGKILL when cancelling.
        default_mode: Run-all mode when none is given (parallel, sequential).
        package_manager: Package manager override (auto, npm, yarn, pnpm).
        last_script: Script name last used with run-all.
    """

    grace_period: float = 2.0
    default_mode: str = "parallel"
    package_manager: str = "auto"
    last_script: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunnerSettings:
        """Create from dictionary."""
        mode = data.get("default_mode", "parallel")
        manager = data.get("package_manager", "auto")
        return cls(
            grace_period=float(data.get("grace_period", 2.0)),
            default_mode=mode if mode in RUN_MODES else "parallel",
            package_manager=manager if manager in PACKAGE_MANAGERS else "auto",
            last_script=data.get("last_script", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "grace_period": self.grace_period,
            "default_mode": self.default_mode,
            "package_manager": self.package_manager,
            "last_script": self.last_script,
        }


@dataclass
class GitSettings:
    """Git settings.

    Attributes:
        remote: Remote used by pull, push and fetch.
        pull_strategy: How pull integrates upstream changes (ff-only, merge, rebase).
        log_limit: Number of commits shown by the log query.
        timeout: Seconds before a git command (pull, push, fetch, clone) is abandoned.
    """

    remote: str = "origin"
    pull_strategy: str = "ff-only"
    log_limit: int = 20
    timeout: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GitSettings:
        """Create from dictionary."""
        strategy = data.get("pull_strategy", "ff-only")
        return cls(
            remote=data.get("remote", "origin"),
            pull_strategy=strategy if strategy in PULL_STRATEGIES else "ff-only",
            log_limit=int(data.get("log_limit", 20)),
            timeout=int(data.get("timeout", 300)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "remote": self.remote,
            "pull_strategy": self.pull_strategy,
            "log_limit": self.log_limit,
            "timeout": self.timeout,
        }


@dataclass
class RemoteSettings:
    """Remote hosting API settings.

    Attributes:
        base_url: Hosting server URL (e.g. https://gitlab.example.com).
        token: Personal access token.
        timeout: HTTP timeout in seconds.
        search: Default search filter for the project list.
    """

    base_url: str = ""
    token: str = ""
    timeout: int = 30
    search: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteSettings:
        """Create from dictionary."""
        return cls(
            base_url=data.get("base_url", ""),
            token=data.get("token", ""),
            timeout=int(data.get("timeout", 30)),
            search=data.get("search", ""),
        )

    @classmethod
    def from_env(cls) -> RemoteSettings:
        """Create from environment variables."""
        return cls(
            base_url=os.environ.get("MONODECK_REMOTE_URL", ""),
            token=os.environ.get(
                "MONODECK_REMOTE_TOKEN", os.environ.get("GITLAB_TOKEN", "")
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (excludes secrets)."""
        return {
            "base_url": self.base_url,
            "timeout": self.timeout,
            "search": self.search,
        }

    @property
    def is_configured(self) -> bool:
        """Check if the remote API is properly configured."""
        return bool(self.base_url and self.token)


@dataclass
class UISettings:
    """Display settings.

    Attributes:
        log_level: Logging level (debug, info, warning, error).
    """

    log_level: str = "warning"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UISettings:
        """Create from dictionary."""
        return cls(log_level=data.get("log_level", "warning"))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"log_level": self.log_level}


# =============================================================================
# Main Configuration Class
# =============================================================================


@dataclass
class MonodeckConfig:
    """Main configuration container.

    Use get_config() to get the singleton instance.
    """

    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    git: GitSettings = field(default_factory=GitSettings)
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    ui: UISettings = field(default_factory=UISettings)

    # Metadata
    config_version: str = "1.0"
    config_path: Path | None = None
    last_modified: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MonodeckConfig:
        """Create configuration from dictionary."""
        return cls(
            workspace=WorkspaceSettings.from_dict(data.get("workspace", {})),
            runner=RunnerSettings.from_dict(data.get("runner", {})),
            git=GitSettings.from_dict(data.get("git", {})),
            remote=RemoteSettings.from_dict(data.get("remote", {})),
            ui=UISettings.from_dict(data.get("ui", {})),
            config_version=data.get("config", {}).get("version", "1.0"),
        )

    def to_dict(self, include_secrets: bool = False) -> dict[str, Any]:
        """Convert configuration to dictionary.

        Args:
            include_secrets: If True, include the remote access token.

        Returns:
            Dictionary representation of configuration.
        """
        result = {
            "config": {
                "version": self.config_version,
            },
            "workspace": self.workspace.to_dict(),
            "runner": self.runner.to_dict(),
            "git": self.git.to_dict(),
            "ui": self.ui.to_dict(),
        }

        if include_secrets:
            result["remote"] = {
                "token": self.remote.token,
                **self.remote.to_dict(),
            }
        else:
            result["remote"] = self.remote.to_dict()

        return result

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        env_workspace = WorkspaceSettings.from_env()
        if env_workspace.root:
            self.workspace.root = env_workspace.root
        if env_workspace.active_environment:
            self.workspace.active_environment = env_workspace.active_environment

        env_remote = RemoteSettings.from_env()
        if env_remote.base_url:
            self.remote.base_url = env_remote.base_url
        if env_remote.token:
            self.remote.token = env_remote.token

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key path.

        Example:
            config.get('runner.grace_period')  # Returns 2.0
        """
        obj: Any = self

        for part in key.split("."):
            if hasattr(obj, part):
                obj = getattr(obj, part)
            elif isinstance(obj, dict) and part in obj:
                obj = obj[part]
            else:
                return default

        return obj

    def set(self, key: str, value: Any) -> bool:
        """Set a configuration value by dotted key path.

        String values are coerced to the type of the current value, so
        ``config.set("runner.grace_period", "5")`` stores ``5.0``.

        Returns:
            True if set successfully, False otherwise.
        """
        parts = key.split(".")
        if len(parts) != 2:
            return False

        section_name, field_name = parts
        if section_name not in ("workspace", "runner", "git", "remote", "ui"):
            return False

        section = getattr(self, section_name)
        if not hasattr(section, field_name):
            return False

        current = getattr(section, field_name)
        try:
            value = _coerce(value, current)
        except ValueError:
            return False

        setattr(section, field_name, value)
        return True


def _coerce(value: Any, current: Any) -> Any:
    """Convert a CLI string to the type of the value it replaces."""
    if not isinstance(value, str):
        return value
    if isinstance(current, bool):
        return _as_bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, list):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


# =============================================================================
# Configuration Loading/Saving
# =============================================================================


def get_config_path() -> Path:
    """Get the path to the configuration file."""
    if custom_path := os.environ.get("MONODECK_CONFIG"):
        return Path(custom_path)

    return DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None, apply_env: bool = True) -> MonodeckConfig:
    """Load configuration from TOML file.

    Args:
        config_path: Path to config file. Uses default if not specified.
        apply_env: Apply environment variable overrides. Pass False to get
            exactly what the file holds, e.g. before writing it back.

    Returns:
        MonodeckConfig with settings from file and environment.
    """
    path = config_path or get_config_path()

    config = MonodeckConfig()
    config.config_path = path

    if path.exists():
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            config = MonodeckConfig.from_dict(data)
            config.config_path = path
            config.last_modified = datetime.fromtimestamp(path.stat().st_mtime)

        except (OSError, tomllib.TOMLDecodeError, ValueError, TypeError) as e:
            logger.error(f"Failed to load config from {path}: {e}")
            config = MonodeckConfig()
            config.config_path = path

    if apply_env:
        config.apply_env_overrides()

    return config


def save_config(config: MonodeckConfig, config_path: Path | None = None) -> bool:
    """Save configuration to TOML file.

    Returns:
        True if saved successfully, False otherwise.
    """
    path = config_path or config.config_path or get_config_path()

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        data = config.to_dict(include_secrets=True)

        with open(path, "wb") as f:
            tomli_w.dump(data, f)

        config.config_path = path
        config.last_modified = datetime.now()
        logger.info(f"Saved config to {path}")
        return True

    except OSError as e:
        logger.error(f"Failed to save config: {e}")
        return False


def update_config(values: dict[str, Any], config_path: Path | None = None) -> bool:
    """Persist individual settings without writing environment overrides.

    The file is re-read as stored, only ``values`` are changed and the result
    is saved, so tokens or roots supplied through environment variables never
    end up on disk. The cached config picks up the new values while keeping
    its environment overrides.

    Args:
        values: Dotted keys mapped to new values.
        config_path: Path to config file. Uses default if not specified.

    Returns:
        True if every key was valid and the file was saved.
    """
    stored = load_config(config_path, apply_env=False)
    for key, value in values.items():
        if not stored.set(key, value):
            logger.warning(f"Unknown or invalid config key: {key}")
            return False

    if not save_config(stored):
        return False

    if _config is not None and _config.config_path == stored.config_path:
        for key, value in values.items():
            _config.set(key, value)
        _config.apply_env_overrides()
    return True


def get_config() -> MonodeckConfig:
    """Get the singleton configuration instance.

    Loads from file on first call, returns cached instance after.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> MonodeckConfig:
    """Force reload configuration from file."""
    global _config
    _config = load_config()
    return _config


def reset_config() -> None:
    """Reset singleton to force reload on next access."""
    global _config
    _config = None


# =============================================================================
# CLI Helpers
# =============================================================================


def mask_secret(value: str) -> str:
    """Mask a secret for display, keeping a short prefix."""
    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return value[:4] + "*" * (len(value) - 4)


def format_config_for_display(config: MonodeckConfig, show_secrets: bool = False) -> str:
    """Format configuration for CLI display.

    Args:
        config: Configuration to format.
        show_secrets: If True, show the token unmasked.
    """
    lines = []
    lines.append("monodeck configuration")
    lines.append("=" * 50)
    lines.append("")

    if config.config_path:
        lines.append(f"Config file: {config.config_path}")
        if config.last_modified:
            lines.append(f"Last modified: {config.last_modified.strftime('%Y-%m-%d %H:%M:%S')}")
        lines.append("")

    for section, values in config.to_dict().items():
        if section == "config":
            continue
        lines.append(f"[{section}]")
        for key, value in values.items():
            if isinstance(value, list):
                value = ", ".join(value)
            lines.append(f"  {key} = {value}")
        if section == "remote":
            token = config.remote.token if show_secrets else mask_secret(config.remote.token)
            lines.append(f"  token = {token or '(not set)'}")
        lines.append("")

    return "\n".join(lines).rstrip()


def list_config_keys() -> list[str]:
    """List all available configuration keys as dotted paths."""
    config = MonodeckConfig()
    keys = []
    for section, values in config.to_dict(include_secrets=True).items():
        if section == "config":
            continue
        keys.extend(f"{section}.{key}" for key in values)
    return keys
