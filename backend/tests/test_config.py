"""Tests for YAML settings loading."""
import pytest
from pydantic import ValidationError

from weaver.config import IPFSSettings, WeaverSettings, get_config, load_settings


def write(path, text: str):
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadSettings:
    def test_missing_files_fall_back_to_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "none.yaml", tmp_path / "none.secrets.yaml")
        assert settings == WeaverSettings()
        assert settings.object_store.backend == "local"
        assert settings.ipfs.retries == 5
        assert settings.ipfs.timeout_seconds == 60
        assert settings.ipfs.health_timeout_seconds == 10
        assert settings.uploads.session_ttl_seconds == 24 * 60 * 60
        assert settings.interactions.lifetime_seconds == 15 * 60

    def test_settings_and_secrets_are_merged(self, tmp_path):
        settings_path = write(tmp_path / "weaver.settings.yaml", """
object_store:
  backend: s3
  bucket: memories
  endpoint_url: https://r2.example.com
ipfs:
  node_url: http://ipfs.internal:5001
  retries: 2
  strategies:
    - name: token
      headers:
        Authorization: Bearer abc
logging:
  level: debug
""")
        secrets_path = write(tmp_path / "weaver.secrets.yaml", """
object_store:
  access_key_id: AKIA
  secret_access_key: shh
ipfs:
  api_key: key-1
discord:
  bot_token: bot-1
""")
        settings = load_settings(settings_path, secrets_path)

        assert settings.object_store.backend == "s3"
        assert settings.object_store.bucket == "memories"
        assert settings.ipfs.node_url == "http://ipfs.internal:5001"
        assert settings.ipfs.retries == 2
        assert settings.ipfs.strategies[0].headers == {"Authorization": "Bearer abc"}
        assert settings.logging.level == "debug"
        assert settings.secrets.object_store.access_key_id == "AKIA"
        assert settings.secrets.ipfs.api_key == "key-1"
        assert settings.secrets.discord.bot_token == "bot-1"

    def test_empty_file_is_treated_as_defaults(self, tmp_path):
        settings_path = write(tmp_path / "weaver.settings.yaml", "")
        settings = load_settings(settings_path, tmp_path / "missing.yaml")
        assert settings.server.port == 8000

    def test_invalid_backend_rejected(self, tmp_path):
        settings_path = write(tmp_path / "weaver.settings.yaml", "object_store:\n  backend: ftp\n")
        with pytest.raises(ValidationError):
            load_settings(settings_path, tmp_path / "missing.yaml")

    def test_retries_must_be_positive(self):
        with pytest.raises(ValidationError):
            IPFSSettings(retries=0)


class TestGetConfig:
    def test_is_cached(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        get_config.cache_clear()
        try:
            assert get_config() is get_config()
        finally:
            get_config.cache_clear()
