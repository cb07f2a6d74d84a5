"""
Tests for the command line interface.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from skumirror import __version__
from skumirror.cli.main import app
from skumirror.config import Settings
from skumirror.store.local import LocalStore
from skumirror.types import CacheKey

from conftest import PNG_BYTES

runner = CliRunner()


def _seed(settings: Settings, key: CacheKey) -> LocalStore:
    store = LocalStore(settings.IMAGES_DIR, public_prefix=settings.PUBLIC_PREFIX)
    store.write(key, PNG_BYTES)
    return store


class TestCliBasics:
    """Tests for informational commands."""

    def test_version(self) -> None:
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_config(self, mock_settings: Settings) -> None:
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "MAX_ATTEMPTS" in result.output

    def test_invalid_config_exits(
        self, mock_env_vars: dict[str, str], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("MAX_ATTEMPTS", "0")
        result = runner.invoke(app, ["check", "SKU123"])
        assert result.exit_code == 1


class TestCliCache:
    """Tests for commands operating on the local cache."""

    def test_check_missing(self, mock_settings: Settings) -> None:
        result = runner.invoke(app, ["check", "SKU123"])
        assert result.exit_code == 1
        assert "missing" in result.output

    def test_check_ready_after_warm_start(self, mock_settings: Settings) -> None:
        _seed(mock_settings, CacheKey("SKU123", 2))
        result = runner.invoke(app, ["check", "SKU123", "2"])
        assert result.exit_code == 0
        assert "SKU123_2.jpg" in result.output

    def test_check_invalid_key(self, mock_settings: Settings) -> None:
        result = runner.invoke(app, ["check", "../etc"])
        assert result.exit_code == 2

    def test_forget(self, mock_settings: Settings) -> None:
        store = _seed(mock_settings, CacheKey("SKU123", 1))

        result = runner.invoke(app, ["forget", "SKU123"])

        assert result.exit_code == 0
        assert "Removed" in result.output
        assert not store.exists(CacheKey("SKU123", 1))

    def test_report(self, mock_settings: Settings) -> None:
        _seed(mock_settings, CacheKey("SKU123", 1))
        result = runner.invoke(app, ["report"])
        assert result.exit_code == 0
        assert "Stored files" in result.output

    def test_fetch_reports_failures(self, mock_settings: Settings) -> None:
        """Test that fetch exits non-zero when a URL cannot be mirrored."""
        result = runner.invoke(app, ["fetch", "SKU123", "ftp://cdn.example.com/a.png"])
        assert result.exit_code == 1
        assert "SKU123_1" in result.output

    def test_unusable_images_dir(self, mock_env_vars: dict[str, str]) -> None:
        Path(mock_env_vars["IMAGES_DIR"]).write_text("not a directory")
        result = runner.invoke(app, ["report"])
        assert result.exit_code == 1
