"""Tests for microvm.utils module."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from microvm.exceptions import ManagerError
from microvm.utils import (
    ensure_directory,
    kvm_available,
    log,
    parse_int_env,
    remove_path,
    run,
    wait_for_path,
)


class TestLog:
    def test_info(self, capsys):
        log("INFO", "hello")
        out = capsys.readouterr().out
        assert "[INFO]" in out
        assert "hello" in out

    def test_debug_hidden_by_default(self, capsys):
        with patch("microvm.utils._LOG_VERBOSE", False):
            log("DEBUG", "noisy")
        assert capsys.readouterr().out == ""

    def test_debug_when_verbose(self, capsys):
        with patch("microvm.utils._LOG_VERBOSE", True):
            log("DEBUG", "noisy")
        assert "noisy" in capsys.readouterr().out

    def test_unknown_level_uncoloured(self, capsys):
        log("NOTE", "plain")
        assert capsys.readouterr().out == "[NOTE] plain\n"


class TestEnvHelpers:
    def test_parse_int_env_default(self, monkeypatch):
        monkeypatch.delenv("VCPUS", raising=False)
        assert parse_int_env("VCPUS", "2") == 2

    def test_parse_int_env_invalid(self, monkeypatch):
        monkeypatch.setenv("VCPUS", "two")
        with pytest.raises(ManagerError, match="must be an integer"):
            parse_int_env("VCPUS", "2")

    def test_parse_int_env_bounds(self, monkeypatch):
        monkeypatch.setenv("VCPUS", "9")
        with pytest.raises(ManagerError, match="<= 8"):
            parse_int_env("VCPUS", "2", max_val=8)


class TestPaths:
    def test_kvm_available(self, tmp_path):
        device = tmp_path / "kvm"
        assert kvm_available(device) is False
        device.touch()
        assert kvm_available(device) is True

    def test_wait_for_path(self, tmp_path):
        target = tmp_path / "sock"
        assert wait_for_path(target, timeout=0.05, interval=0.01) is False
        target.touch()
        assert wait_for_path(target, timeout=0.05) is True

    def test_ensure_directory(self, tmp_path):
        target = tmp_path / "a" / "b"
        ensure_directory(target)
        ensure_directory(target)
        assert target.is_dir()

    def test_remove_path(self, tmp_path):
        target = tmp_path / "file"
        target.write_text("x")
        assert remove_path(target) is True
        assert remove_path(target) is False


class TestRun:
    def test_passes_through(self):
        with patch("microvm.utils.subprocess.run") as mock_run:
            run(["ip", "link"], check=False, capture_output=True)
        mock_run.assert_called_once_with(["ip", "link"], check=False, text=True, capture_output=True)
