"""Tests for the environment store."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from monodeck.exceptions import EnvFileError, OperationInProgress
from monodeck.workspace.environment import (
    EnvironmentSet,
    EnvironmentStore,
    format_env_text,
    parse_env_text,
    validate_key,
    validate_label,
)


# =============================================================================
# Parsing Tests
# =============================================================================


class TestParseEnvText:
    """Tests for KEY=VALUE parsing."""

    def test_basic(self):
        assert parse_env_text("A=1\nB=two") == {"A": "1", "B": "two"}

    def test_comments_and_blank_lines(self):
        text = "# comment\n\nA=1\n   \n# B=2\n"
        assert parse_env_text(text) == {"A": "1"}

    def test_export_prefix(self):
        assert parse_env_text("export API_URL=http://x") == {"API_URL": "http://x"}

    def test_quotes_stripped(self):
        text = "A=\"double\"\nB='single'\nC=\"mismatched'"
        assert parse_env_text(text) == {"A": "double", "B": "single", "C": "\"mismatched'"}

    def test_value_may_contain_equals(self):
        assert parse_env_text("DSN=postgres://u:p@h/db?x=1") == {"DSN": "postgres://u:p@h/db?x=1"}

    def test_empty_value(self):
        assert parse_env_text("EMPTY=") == {"EMPTY": ""}

    def test_last_duplicate_wins(self):
        """The last assignment wins and takes the later position."""
        variables = parse_env_text("A=1\nB=2\nA=3")
        assert variables == {"B": "2", "A": "3"}
        assert list(variables) == ["B", "A"]

    def test_malformed_lines_skipped(self):
        text = "no equals sign\n1BAD=x\nGOOD=yes"
        assert parse_env_text(text) == {"GOOD": "yes"}

    def test_crlf(self):
        assert parse_env_text("A=1\r\nB=2\r\n") == {"A": "1", "B": "2"}


class TestFormatEnvText:
    """Tests for serialization."""

    def test_single_entry(self):
        """A single entry is written as exactly one line."""
        assert format_env_text({"API_URL": "http://x"}) == "API_URL=http://x"

    def test_preserves_order(self):
        assert format_env_text({"Z": "1", "A": "2"}) == "Z=1\nA=2"

    def test_empty(self):
        assert format_env_text({}) == ""

    def test_quotes_values_that_would_change(self):
        text = format_env_text({"SPACED": "  padded  ", "QUOTED": '"hello"', "PLAIN": "a b"})
        assert text == 'SPACED="  padded  "\nQUOTED="\\"hello\\""\nPLAIN=a b'

    @pytest.mark.parametrize(
        "value",
        [
            '"hello"',
            "'x'",
            "  padded  ",
            "# not a comment",
            'back\\"slash',
            "C:\\path\\",
            "'",
            "",
        ],
    )
    def test_round_trip(self, value: str):
        assert parse_env_text(format_env_text({"KEY": value})) == {"KEY": value}


class TestValidation:
    """Tests for key and label validation."""

    @pytest.mark.parametrize("key", ["A", "_x", "my.var", "with-dash", "A1"])
    def test_valid_keys(self, key: str):
        validate_key(key)

    @pytest.mark.parametrize("key", ["", "1A", "has space", "a=b"])
    def test_invalid_keys(self, key: str):
        with pytest.raises(ValueError):
            validate_key(key)

    @pytest.mark.parametrize("label", ["", "../etc", "a/b", "has space"])
    def test_invalid_labels(self, label: str):
        with pytest.raises(ValueError):
            validate_label(label)


class TestEnvironmentSet:
    """Tests for the EnvironmentSet container."""

    def test_container_behaviour(self):
        env_set = EnvironmentSet(label="dev", variables={"A": "1"})
        assert len(env_set) == 1
        assert "A" in env_set
        assert env_set.get("A") == "1"
        assert env_set.get("B", "fallback") == "fallback"

    def test_as_dict_is_copy(self):
        env_set = EnvironmentSet(label="dev", variables={"A": "1"})
        copy = env_set.as_dict()
        copy["B"] = "2"
        assert "B" not in env_set


# =============================================================================
# EnvironmentStore Tests
# =============================================================================


class TestEnvironmentStore:
    """Tests for loading, editing and saving environment files."""

    def test_path_for(self, temp_dir: Path):
        store = EnvironmentStore(temp_dir)
        assert store.path_for("dev") == temp_dir / ".env.dev"

    def test_path_for_rejects_traversal(self, temp_dir: Path):
        store = EnvironmentStore(temp_dir)
        with pytest.raises(ValueError):
            store.path_for("../secrets")

    def test_load_missing_file_is_empty(self, temp_dir: Path):
        env_set = EnvironmentStore(temp_dir).load("dev")
        assert env_set.label == "dev"
        assert len(env_set) == 0

    def test_load_existing(self, temp_dir: Path):
        (temp_dir / ".env.dev").write_text("A=1\nB=2\n")
        env_set = EnvironmentStore(temp_dir).load("dev")
        assert env_set.as_dict() == {"A": "1", "B": "2"}

    def test_set_does_not_touch_disk(self, temp_dir: Path):
        """Edits stay in memory until save."""
        store = EnvironmentStore(temp_dir)
        store.set("dev", "A", "1")
        assert not (temp_dir / ".env.dev").exists()
        assert store.is_dirty("dev")

    def test_save_writes_file(self, temp_dir: Path):
        """Saving an empty env with one entry yields exactly that line."""
        store = EnvironmentStore(temp_dir)
        store.set("dev", "API_URL", "http://x")
        path = store.save("dev")
        assert path == temp_dir / ".env.dev"
        assert path.read_text() == "API_URL=http://x"
        assert not store.is_dirty("dev")

    def test_save_then_load_round_trip(self, temp_dir: Path):
        store = EnvironmentStore(temp_dir)
        store.set("staging", "B", "2")
        store.set("staging", "A", "1")
        store.save("staging")

        reloaded = EnvironmentStore(temp_dir).load("staging")
        assert list(reloaded.variables.items()) == [("B", "2"), ("A", "1")]

    def test_quoted_and_padded_values_survive_reload(self, temp_dir: Path):
        values = {"QUOTED": '"hello"', "SPACED": "  padded  ", "SINGLE": "'x'"}
        store = EnvironmentStore(temp_dir)
        for key, value in values.items():
            store.set("dev", key, value)
        store.save("dev")

        reloaded = EnvironmentStore(temp_dir).load("dev")
        assert reloaded.as_dict() == values

    def test_set_validates(self, temp_dir: Path):
        store = EnvironmentStore(temp_dir)
        with pytest.raises(ValueError):
            store.set("dev", "1bad", "x")
        with pytest.raises(ValueError):
            store.set("dev", "GOOD", "multi\nline")

    def test_unset(self, temp_dir: Path):
        store = EnvironmentStore(temp_dir)
        store.set("dev", "A", "1")
        assert store.unset("dev", "A") is True
        assert store.unset("dev", "A") is False
        assert len(store.get("dev")) == 0

    def test_save_failure_keeps_memory_and_file(self, temp_dir: Path):
        """A failed write raises EnvFileError and leaves no temp file behind."""
        (temp_dir / ".env.dev").write_text("A=old")
        store = EnvironmentStore(temp_dir)
        store.set("dev", "A", "new")

        with patch("monodeck.workspace.environment.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(EnvFileError):
                store.save("dev")

        assert (temp_dir / ".env.dev").read_text() == "A=old"
        assert store.get("dev").get("A") == "new"
        assert [p.name for p in temp_dir.iterdir()] == [".env.dev"]

    def test_concurrent_save_rejected(self, temp_dir: Path):
        """A save while another save of the same label runs is rejected."""
        store = EnvironmentStore(temp_dir)
        store.set("dev", "A", "1")
        store.save("dev")

        lock = store._save_locks["dev"]
        lock.acquire()
        try:
            with pytest.raises(OperationInProgress):
                store.save("dev")
        finally:
            lock.release()

        store.save("dev")

    def test_unreadable_file(self, temp_dir: Path):
        (temp_dir / ".env.bin").write_bytes(b"\xff\xfe\x00bad")
        with pytest.raises(EnvFileError):
            EnvironmentStore(temp_dir).load("bin")

    def test_labels(self, temp_dir: Path):
        (temp_dir / ".env.dev").write_text("A=1")
        (temp_dir / ".env.prod").write_text("A=2")
        (temp_dir / ".env").write_text("A=3")
        (temp_dir / ".env.dev.123.tmp").write_text("")
        store = EnvironmentStore(temp_dir)
        store.set("staging", "A", "1")
        assert store.labels() == ["dev", "prod", "staging"]

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permissions")
    def test_save_into_readonly_dir(self, temp_dir: Path):
        if os.geteuid() == 0:
            pytest.skip("root ignores directory permissions")
        store = EnvironmentStore(temp_dir)
        store.set("dev", "A", "1")
        temp_dir.chmod(0o500)
        try:
            with pytest.raises(EnvFileError):
                store.save("dev")
        finally:
            temp_dir.chmod(0o700)
