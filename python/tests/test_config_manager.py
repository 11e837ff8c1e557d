"""
Tests for configuration loading and environment overrides
"""

from pathlib import Path

import pytest

from config_manager import ConfigManager, ConfigurationError, get_config

CONFIG_FILE = Path(__file__).parent.parent / "config.yaml"

ENV_VARS = ("SEP_API_ENABLED", "SEP_API_URL", "SEP_API_TIMEOUT_MS", "REDIS_URL", "DATABASE_URL", "LOG_LEVEL",
            "TRUSTED_PROXIES")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()


class TestDefaults:

    def test_defaults_without_file(self):
        config = ConfigManager.create()
        assert config.registry.enabled is True
        assert config.registry.timeout_ms == 10000
        assert config.registry.cache_ttl_seconds == 7 * 24 * 60 * 60
        assert config.emergency.access_rate_limit == 10
        assert config.emergency.verify_rate_limit == 30
        assert config.emergency.min_response_ms == 200
        assert config.emergency.failed_attempt_threshold == 5
        assert config.security_metrics.thresholds.failed_login_per_ip == 10
        assert config.cache.redis_url == ""
        assert config.api.trusted_proxies == []

    def test_shipped_config_matches_defaults(self):
        config = ConfigManager(str(CONFIG_FILE), apply_env=False)
        assert config.to_dict() == ConfigManager.create().to_dict()

    def test_to_dict_reports_cache_backend(self):
        assert ConfigManager.create().to_dict()['cache']['backend'] == 'memory'
        redis_config = ConfigManager.create({'cache': {'redis_url': 'redis://localhost:6379/0'}})
        assert redis_config.to_dict()['cache']['backend'] == 'redis'


class TestYamlLoading:

    def test_partial_file_keeps_other_defaults(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "registry:\n  enabled: false\n"
            "security_metrics:\n  thresholds:\n    failed_login_per_email: 3\n"
        )
        config = ConfigManager(str(config_file), apply_env=False)
        assert config.registry.enabled is False
        assert config.security_metrics.thresholds.failed_login_per_email == 3
        assert config.security_metrics.thresholds.failed_login_per_ip == 10

    def test_invalid_yaml(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("registry: [unclosed\n")
        with pytest.raises(ConfigurationError):
            ConfigManager(str(config_file), apply_env=False)

    def test_top_level_must_be_mapping(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("- just\n- a list\n")
        with pytest.raises(ConfigurationError):
            ConfigManager(str(config_file), apply_env=False)

    def test_missing_file_uses_defaults(self, tmp_path):
        config = ConfigManager(str(tmp_path / "absent.yaml"), apply_env=False)
        assert config.emergency.access_token_ttl_minutes == 60

    def test_trusted_proxies(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("api:\n  trusted_proxies:\n    - 10.0.0.0/8\n    - ' 127.0.0.1 '\n")
        config = ConfigManager(str(config_file), apply_env=False)
        assert config.api.trusted_proxies == ["10.0.0.0/8", "127.0.0.1"]

    def test_trusted_proxies_must_be_a_list(self):
        with pytest.raises(ConfigurationError):
            ConfigManager.create({'api': {'trusted_proxies': {'proxy': '10.0.0.1'}}})


class TestEnvironmentOverrides:

    def test_registry_can_be_disabled(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SEP_API_ENABLED", "false")
        config = ConfigManager(str(tmp_path / "absent.yaml"))
        assert config.registry.enabled is False

    def test_urls_and_timeout(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SEP_API_URL", "https://registry.internal/select")
        monkeypatch.setenv("SEP_API_TIMEOUT_MS", "2500")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/1")
        monkeypatch.setenv("DATABASE_URL", "sqlite:///override.db")
        config = ConfigManager(str(tmp_path / "absent.yaml"))
        assert config.registry.base_url == "https://registry.internal/select"
        assert config.registry.timeout_ms == 2500
        assert config.cache.redis_url == "redis://cache:6379/1"
        assert config.database.url == "sqlite:///override.db"

    def test_trusted_proxies_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.1, 172.16.0.0/12,")
        config = ConfigManager(str(tmp_path / "absent.yaml"))
        assert config.api.trusted_proxies == ["10.0.0.1", "172.16.0.0/12"]

    def test_non_numeric_timeout(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SEP_API_TIMEOUT_MS", "soon")
        with pytest.raises(ConfigurationError):
            ConfigManager(str(tmp_path / "absent.yaml"))

    def test_bad_log_level(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LOG_LEVEL", "LOUD")
        with pytest.raises(ConfigurationError):
            ConfigManager(str(tmp_path / "absent.yaml"))


class TestValidation:

    @pytest.mark.parametrize("raw", [
        {'registry': {'timeout_ms': 0}},
        {'registry': {'cache_ttl_seconds': -1}},
        {'emergency': {'verify_rate_limit': 0}},
        {'emergency': {'jitter_ms': -5}},
        {'emergency': {'failed_attempt_threshold': 0}},
        {'security_metrics': {'max_alerts': 0}},
    ])
    def test_invalid_values(self, raw):
        with pytest.raises(ConfigurationError):
            ConfigManager.create(raw)


def test_get_config_is_singleton(tmp_path):
    path = str(tmp_path / "absent.yaml")
    assert get_config(path) is get_config(path)
