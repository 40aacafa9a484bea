"""Tests for settings loading and validation."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from filehost.config import (
    AppConfig,
    FileHostSettings,
    TokenSettings,
    get_config,
    load_config,
    parse_size,
    reset_config,
    set_config,
)
from filehost.exceptions import TokenConfigurationError
from filehost.files.service import get_filehost


def _write_settings(tmp_path, text: str) -> Path:
    settings_file = tmp_path / "filehost.settings.yaml"
    settings_file.write_text(text, encoding="utf-8")
    return settings_file


class TestParseSize:
    @pytest.mark.parametrize("value, expected", [
        (1024, 1024),
        ("2048", 2048),
        ("10M", 10 * 1024 * 1024),
        ("512k", 512 * 1024),
        ("1G", 1024 ** 3),
        ("3MB", 3 * 1024 * 1024),
    ])
    def test_valid_sizes(self, value, expected):
        assert parse_size(value) == expected

    @pytest.mark.parametrize("value", ["", "ten", "10T", "-5"])
    def test_invalid_sizes(self, value):
        with pytest.raises(ValueError):
            parse_size(value)


class TestFileHostSettings:
    def test_defaults(self):
        settings = FileHostSettings()
        assert settings.mount_path == "/upload"
        assert settings.storage_path == "data/uploads"
        assert settings.require_tls is True
        assert settings.public_url == "https://localhost/upload"

    @pytest.mark.parametrize("raw, expected", [
        ("files", "/files"),
        ("/files/", "/files"),
        ("  /a/b/ ", "/a/b"),
        ("/", "/upload"),
    ])
    def test_mount_path_is_normalised(self, raw, expected):
        assert FileHostSettings(mount_path=raw).mount_path == expected

    def test_public_url_with_port_and_plain_http(self):
        settings = FileHostSettings(hostname="irc.example.org", port=8080, ssl=False, mount_path="/f")
        assert settings.public_url == "http://irc.example.org:8080/f"

    def test_max_upload_size_accepts_units(self):
        assert FileHostSettings(max_upload_size="1M").max_upload_size == 1024 * 1024

    @pytest.mark.parametrize("value", [0, "0", "lots"])
    def test_max_upload_size_must_be_positive(self, value):
        with pytest.raises(ValidationError):
            FileHostSettings(max_upload_size=value)

    def test_settings_are_immutable(self):
        settings = FileHostSettings()
        with pytest.raises(ValidationError):
            settings.hostname = "elsewhere"


class TestTokenSettings:
    def test_defaults(self):
        tokens = TokenSettings()
        assert tokens.ttl_min_seconds <= tokens.ttl_seconds <= tokens.ttl_max_seconds

    def test_default_ttl_outside_bounds_is_rejected(self):
        with pytest.raises(ValidationError):
            TokenSettings(ttl_seconds=10, ttl_min_seconds=60)

    def test_non_positive_minimum_is_rejected(self):
        with pytest.raises(ValidationError):
            TokenSettings(ttl_min_seconds=0)


class TestLoadConfig:
    def test_yaml_files_are_merged(self, tmp_path):
        settings_file = _write_settings(
            tmp_path,
            "filehost:\n"
            "  hostname: irc.example.org\n"
            "  mount_path: files\n"
            "  max_upload_size: 5M\n"
            "tokens:\n"
            "  issuer: irc.example.org\n"
            "  ttl_seconds: 600\n",
        )
        secrets_file = tmp_path / "filehost.secrets.yaml"
        secrets_file.write_text("tokens:\n  secret_key: from-yaml\n", encoding="utf-8")

        cfg = load_config(settings_path=settings_file, secrets_path=secrets_file)
        assert cfg.filehost.public_url == "https://irc.example.org/files"
        assert cfg.filehost.max_upload_size == 5 * 1024 * 1024
        assert cfg.tokens.issuer == "irc.example.org"
        assert cfg.tokens.ttl_seconds == 600
        assert cfg.secrets.tokens.secret_key == "from-yaml"

    def test_missing_files_give_defaults(self, tmp_path):
        cfg = load_config(
            settings_path=tmp_path / "absent.settings.yaml",
            secrets_path=tmp_path / "absent.secrets.yaml",
        )
        assert cfg == AppConfig()

    def test_relative_storage_path_resolves_from_settings_dir(self, tmp_path):
        settings_file = _write_settings(tmp_path, "filehost:\n  storage_path: store/files\n")
        cfg = load_config(settings_path=settings_file, secrets_path=tmp_path / "none.yaml")
        assert Path(cfg.filehost.storage_path) == tmp_path.resolve() / "store" / "files"

    def test_absolute_storage_path_is_kept(self, tmp_path):
        absolute = tmp_path / "abs" / "uploads"
        settings_file = _write_settings(tmp_path, f"filehost:\n  storage_path: {absolute}\n")
        cfg = load_config(settings_path=settings_file, secrets_path=tmp_path / "none.yaml")
        assert Path(cfg.filehost.storage_path) == absolute

    def test_paths_from_environment(self, tmp_path, monkeypatch):
        settings_file = _write_settings(tmp_path, "filehost:\n  hostname: env.example.org\n")
        monkeypatch.setenv("FILEHOST_SETTINGS", str(settings_file))
        monkeypatch.setenv("FILEHOST_SECRETS", str(tmp_path / "none.yaml"))
        assert load_config().filehost.hostname == "env.example.org"


class TestSnapshots:
    def test_set_config_swaps_runtime(self, configure):
        first = get_filehost()
        assert get_filehost() is first

        configure(hostname="new.example.org")
        second = get_filehost()
        assert second is not first
        assert second.public_url == "https://new.example.org/files"
        # The old runtime is untouched
        assert first.public_url == "https://host/files"

    def test_missing_secret_fails_when_authenticating(self, tmp_path):
        set_config(AppConfig(filehost={"storage_path": str(tmp_path / "s")}))
        with pytest.raises(TokenConfigurationError) as exc_info:
            get_filehost()
        assert "secret" in str(exc_info.value).lower()

    def test_missing_secret_is_fine_without_authentication(self, tmp_path):
        set_config(AppConfig(filehost={"storage_path": str(tmp_path / "s"), "authenticate": False}))
        assert get_filehost().tokens is None

    def test_get_config_loads_once(self, tmp_path, monkeypatch):
        settings_file = _write_settings(tmp_path, "filehost:\n  hostname: once.example.org\n")
        monkeypatch.setenv("FILEHOST_SETTINGS", str(settings_file))
        monkeypatch.setenv("FILEHOST_SECRETS", str(tmp_path / "none.yaml"))
        reset_config()
        first = get_config()
        assert first.filehost.hostname == "once.example.org"
        assert get_config() is first
