"""Pytest configuration and fixtures for monodeck tests."""

import json
import shutil
import subprocess
import sys
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from monodeck.config import reset_config
from monodeck.utils.errors import set_debug_mode

# Scripts are Python snippets so tests do not depend on node being installed
WEB_SCRIPTS = {
    "build": "print('building web')",
    "test": "import sys; print('web tests failed'); sys.exit(3)",
    "slow": "import time; print('started', flush=True); time.sleep(30)",
    "env": "import os; print(os.environ.get('API_URL', 'unset'))",
}

API_SCRIPTS = {
    "build": "print('building api')",
    "test": "print('api tests passed')",
    "slow": "import time; print('started', flush=True); time.sleep(30)",
}


@pytest.fixture(autouse=True)
def isolated_config(tmp_path_factory, monkeypatch):
    """Point the config file at a temp location and clear monodeck env vars."""
    config_dir = tmp_path_factory.mktemp("config")
    monkeypatch.setenv("MONODECK_CONFIG", str(config_dir / "config.toml"))
    for name in (
        "MONODECK_ROOT",
        "MONODECK_ENV",
        "MONODECK_REMOTE_URL",
        "MONODECK_REMOTE_TOKEN",
        "GITLAB_TOKEN",
        "MONODECK_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    set_debug_mode(False)
    yield config_dir / "config.toml"
    reset_config()
    set_debug_mode(False)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path.resolve()
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


def write_manifest(directory: Path, name: str | None, scripts: dict[str, str]) -> Path:
    """Write a package.json into ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    data: dict = {"version": "1.0.0", "scripts": scripts}
    if name is not None:
        data["name"] = name
    manifest = directory / "package.json"
    manifest.write_text(json.dumps(data, indent=2))
    return manifest


@pytest.fixture
def monorepo(temp_dir: Path) -> Path:
    """A monorepo with two projects and a few directories that must be skipped."""
    write_manifest(temp_dir, "root", {"build": "echo root"})
    write_manifest(temp_dir / "packages" / "web", "web", WEB_SCRIPTS)
    write_manifest(temp_dir / "packages" / "api", "api", API_SCRIPTS)
    write_manifest(temp_dir / "node_modules" / "left-pad", "left-pad", {"build": "x"})
    write_manifest(temp_dir / ".cache" / "hidden", "hidden", {"build": "x"})
    return temp_dir


@pytest.fixture
def manifest_writer():
    return write_manifest


def python_launcher(project, script):
    """Launcher that runs a project's script as ``python -c <script>``."""
    return sys.executable, ["-c", project.scripts[script]]


@pytest.fixture
def launcher():
    return python_launcher


def git(cwd: Path, *args: str) -> str:
    """Run a git command in ``cwd`` and return stdout."""
    cp = subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    )
    return cp.stdout


@pytest.fixture
def temp_git_repo(temp_dir: Path) -> Path:
    """Create a temporary git repository on ``main`` with one commit."""
    git(temp_dir, "init")
    git(temp_dir, "symbolic-ref", "HEAD", "refs/heads/main")
    git(temp_dir, "config", "user.name", "Test User")
    git(temp_dir, "config", "user.email", "test@example.com")
    git(temp_dir, "config", "commit.gpgsign", "false")

    (temp_dir / "README.md").write_text("# Test Repository\n")
    git(temp_dir, "add", "README.md")
    git(temp_dir, "commit", "-m", "Initial commit")

    return temp_dir


@pytest.fixture
def repo_with_remote(temp_dir: Path) -> tuple[Path, Path]:
    """A clone of a bare repository, so pull and push have somewhere to go.

    Returns:
        (working clone, bare remote)
    """
    bare = temp_dir / "remote.git"
    git(temp_dir, "init", "--bare", str(bare))
    git(bare, "symbolic-ref", "HEAD", "refs/heads/main")

    seed = temp_dir / "seed"
    seed.mkdir()
    git(seed, "init")
    git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
    git(seed, "config", "user.name", "Test User")
    git(seed, "config", "user.email", "test@example.com")
    git(seed, "config", "commit.gpgsign", "false")
    (seed / "README.md").write_text("# Seed\n")
    git(seed, "add", "README.md")
    git(seed, "commit", "-m", "Seed commit")
    git(seed, "remote", "add", "origin", str(bare))
    git(seed, "push", "origin", "main")

    work = temp_dir / "work"
    git(temp_dir, "clone", str(bare), str(work))
    git(work, "config", "user.name", "Test User")
    git(work, "config", "user.email", "test@example.com")
    git(work, "config", "commit.gpgsign", "false")
    return work, bare


@pytest.fixture
def git_cmd():
    return git
