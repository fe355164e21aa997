"""Tests for the command-line interface."""

import signal
import sys
from pathlib import Path
from threading import Event
from unittest.mock import MagicMock

import pytest

from conftest import Origin, unreachable_url
import shellcache
from shellcache import main
from shellcache.cache_store import CacheStorage, init_store
from shellcache.models import StoredResponse


def write_config(tmp_path: Path, origin_url: str, cache_name: str = "topview-shell-v1") -> str:
    path = tmp_path / "config.yaml"
    path.write_text(
        f"origin:\n  url: {origin_url}\n  timeout: 2\n"
        f"cache:\n  name: {cache_name}\n  path: {tmp_path / 'cache.db'}\n"
    )
    return str(path)


def run_cli(monkeypatch, *argv: str) -> None:
    monkeypatch.setattr(sys, "argv", ["shellcache", *argv])
    main()


class TestInstallCommand:
    """Tests for the install subcommand."""

    def test_installs_shell(self, tmp_path: Path, origin: Origin, monkeypatch, capsys) -> None:
        """install caches the shell asset set and reports it."""
        config_path = write_config(tmp_path, origin.url)

        run_cli(monkeypatch, "install", "-c", config_path)

        assert "Installed 3 shell asset(s) into 'topview-shell-v1'" in capsys.readouterr().out
        conn = init_store(str(tmp_path / "cache.db"))
        try:
            assert CacheStorage(conn).count("topview-shell-v1") == 3
        finally:
            conn.close()

    def test_exits_on_install_failure(self, tmp_path: Path, monkeypatch, capsys) -> None:
        """install exits with status 1 when the origin is unreachable."""
        config_path = write_config(tmp_path, unreachable_url())

        with pytest.raises(SystemExit) as exc_info:
            run_cli(monkeypatch, "install", "-c", config_path)

        assert exc_info.value.code == 1
        assert "Install failed" in capsys.readouterr().out

    def test_exits_on_missing_config(self, tmp_path: Path, monkeypatch, capsys) -> None:
        """install exits with status 1 for a missing configuration file."""
        with pytest.raises(SystemExit) as exc_info:
            run_cli(monkeypatch, "install", "-c", str(tmp_path / "nope.yaml"))

        assert exc_info.value.code == 1
        assert "Configuration file not found" in capsys.readouterr().out


class TestListCommand:
    """Tests for the list subcommand."""

    def test_marks_current_and_orphaned(self, tmp_path: Path, monkeypatch, capsys) -> None:
        """list shows entry counts and flags superseded namespaces."""
        conn = init_store(str(tmp_path / "cache.db"))
        storage = CacheStorage(conn)
        storage.open("topview-shell-v1").add_all(
            ["http://shell.test/"], lambda request: StoredResponse(status=200, body=b"old")
        )
        storage.open("topview-shell-v2")
        conn.close()
        config_path = write_config(tmp_path, "http://shell.test", cache_name="topview-shell-v2")

        run_cli(monkeypatch, "list", "-c", config_path, "--entries")

        out = capsys.readouterr().out
        assert "topview-shell-v1 (orphaned): 1 entries" in out
        assert "topview-shell-v2 (current): 0 entries" in out
        assert "  http://shell.test/" in out

    def test_missing_store(self, tmp_path: Path, monkeypatch, capsys) -> None:
        """list exits with status 1 when no store exists yet."""
        config_path = write_config(tmp_path, "http://shell.test")

        with pytest.raises(SystemExit) as exc_info:
            run_cli(monkeypatch, "list", "-c", config_path)

        assert exc_info.value.code == 1
        assert "Cache store not found" in capsys.readouterr().out


class TestShutdownHandler:
    """Tests for the signal handler used by the run command."""

    def test_signal_reaches_proxy(self, monkeypatch) -> None:
        """SIGTERM sets the run loop's event and stops the proxy, even mid-install."""
        event = Event()
        proxy = MagicMock()
        monkeypatch.setattr(shellcache, "_shutdown_event", event)
        monkeypatch.setattr(shellcache, "_proxy", proxy)

        shellcache._handle_shutdown(signal.SIGTERM, None)

        assert event.is_set()
        proxy.request_shutdown.assert_called_once_with()
