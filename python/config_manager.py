"""
Configuration Management Module
Loads and validates configuration from config.yaml, with environment overrides
"""

import os
import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class RegistryConfig:
    """Professional license registry (SEP) settings"""
    base_url: str = "https://search.sep.gob.mx/solr/cedulasCore/select"
    timeout_ms: int = 10000
    cache_ttl_seconds: int = 7 * 24 * 60 * 60  # licenses rarely change
    enabled: bool = True
    rows: int = 10


@dataclass
class CacheConfig:
    """Cache backend settings"""
    redis_url: str = ""
    default_ttl_seconds: int = 900
    cleanup_interval_seconds: int = 60


@dataclass
class EmergencyConfig:
    """Emergency access endpoint settings"""
    access_rate_limit: int = 10
    verify_rate_limit: int = 30
    rate_window_seconds: int = 60
    min_response_ms: int = 200
    jitter_ms: int = 100
    failed_attempt_window_seconds: int = 300
    failed_attempt_threshold: int = 5
    access_token_ttl_minutes: int = 60
    sweep_interval_seconds: int = 300


@dataclass
class AlertThresholds:
    """Per-key alert thresholds for security metrics"""
    failed_login_per_ip: int = 10
    failed_login_per_email: int = 5
    emergency_access_per_user: int = 20
    rate_limit_hits_per_ip: int = 50
    invalid_tokens_per_ip: int = 20


@dataclass
class SecurityMetricsConfig:
    """Security metrics and alerting settings"""
    thresholds: AlertThresholds = field(default_factory=AlertThresholds)
    max_alerts: int = 1000
    cleanup_interval_seconds: int = 3600
    counter_idle_hours: int = 24
    alert_retention_days: int = 7


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    security_log_dir: str = "logs"
    security_log_file: bool = False
    security_log_console: bool = True


@dataclass
class ApiConfig:
    """HTTP API settings"""
    # Peers allowed to set X-Forwarded-For / X-Real-IP (IPs, CIDR ranges or host names)
    trusted_proxies: List[str] = field(default_factory=list)


@dataclass
class DatabaseConfig:
    """Database configuration"""
    url: str = "sqlite:///vida_emergency.db"
    echo: bool = False


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


def _env_bool(value: str) -> bool:
    return value.strip().lower() not in ("false", "0", "no", "off", "")


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None, apply_env: bool = True):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
            apply_env: Apply environment variable overrides after loading
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.registry: RegistryConfig = RegistryConfig()
        self.cache: CacheConfig = CacheConfig()
        self.emergency: EmergencyConfig = EmergencyConfig()
        self.security_metrics: SecurityMetricsConfig = SecurityMetricsConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.database: DatabaseConfig = DatabaseConfig()
        self.api: ApiConfig = ApiConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

        if apply_env:
            self._apply_env_overrides()
        self._validate()

    @classmethod
    def create(cls, raw: Optional[Dict[str, Any]] = None) -> 'ConfigManager':
        """Build a configuration from a dict without touching disk or env.

        Used by tests and by callers that assemble configuration themselves.
        """
        instance = cls.__new__(cls)
        instance.config_path = None
        instance._raw_config = raw or {}
        instance._parse_all()
        instance._validate()
        return instance

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_all()

    def _parse_all(self) -> None:
        self._parse_registry()
        self._parse_cache()
        self._parse_emergency()
        self._parse_security_metrics()
        self._parse_logging()
        self._parse_database()
        self._parse_api()

    def _parse_registry(self) -> None:
        """Parse registry configuration"""
        cfg = self._raw_config.get('registry', {}) or {}
        defaults = RegistryConfig()
        self.registry = RegistryConfig(
            base_url=cfg.get('base_url', defaults.base_url),
            timeout_ms=int(cfg.get('timeout_ms', defaults.timeout_ms)),
            cache_ttl_seconds=int(cfg.get('cache_ttl_seconds', defaults.cache_ttl_seconds)),
            enabled=bool(cfg.get('enabled', defaults.enabled)),
            rows=int(cfg.get('rows', defaults.rows))
        )

    def _parse_cache(self) -> None:
        """Parse cache configuration"""
        cfg = self._raw_config.get('cache', {}) or {}
        defaults = CacheConfig()
        self.cache = CacheConfig(
            redis_url=cfg.get('redis_url', defaults.redis_url) or "",
            default_ttl_seconds=int(cfg.get('default_ttl_seconds', defaults.default_ttl_seconds)),
            cleanup_interval_seconds=int(cfg.get('cleanup_interval_seconds',
                                                 defaults.cleanup_interval_seconds))
        )

    def _parse_emergency(self) -> None:
        """Parse emergency access configuration"""
        cfg = self._raw_config.get('emergency', {}) or {}
        defaults = EmergencyConfig()
        self.emergency = EmergencyConfig(
            **{
                name: int(cfg.get(name, getattr(defaults, name)))
                for name in defaults.__dataclass_fields__
            }
        )

    def _parse_security_metrics(self) -> None:
        """Parse security metrics configuration"""
        cfg = self._raw_config.get('security_metrics', {}) or {}
        threshold_cfg = cfg.get('thresholds', {}) or {}
        default_thresholds = AlertThresholds()
        thresholds = AlertThresholds(
            **{
                name: int(threshold_cfg.get(name, getattr(default_thresholds, name)))
                for name in default_thresholds.__dataclass_fields__
            }
        )
        defaults = SecurityMetricsConfig()
        self.security_metrics = SecurityMetricsConfig(
            thresholds=thresholds,
            max_alerts=int(cfg.get('max_alerts', defaults.max_alerts)),
            cleanup_interval_seconds=int(cfg.get('cleanup_interval_seconds',
                                                 defaults.cleanup_interval_seconds)),
            counter_idle_hours=int(cfg.get('counter_idle_hours', defaults.counter_idle_hours)),
            alert_retention_days=int(cfg.get('alert_retention_days', defaults.alert_retention_days))
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {}) or {}
        defaults = LoggingConfig()
        self.logging = LoggingConfig(
            level=cfg.get('level', defaults.level),
            format=cfg.get('format', defaults.format),
            security_log_dir=cfg.get('security_log_dir', defaults.security_log_dir),
            security_log_file=bool(cfg.get('security_log_file', defaults.security_log_file)),
            security_log_console=bool(cfg.get('security_log_console', defaults.security_log_console))
        )

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {}) or {}
        defaults = DatabaseConfig()
        self.database = DatabaseConfig(
            url=cfg.get('url', defaults.url),
            echo=bool(cfg.get('echo', defaults.echo))
        )

    def _parse_api(self) -> None:
        """Parse HTTP API configuration"""
        cfg = self._raw_config.get('api', {}) or {}
        proxies = cfg.get('trusted_proxies') or []
        if isinstance(proxies, str):
            proxies = [proxies]
        if not isinstance(proxies, list):
            raise ConfigurationError("api.trusted_proxies must be a list")
        self.api = ApiConfig(trusted_proxies=[str(p).strip() for p in proxies if str(p).strip()])

    def _apply_env_overrides(self) -> None:
        """Environment variables win over config.yaml"""
        if 'SEP_API_ENABLED' in os.environ:
            self.registry.enabled = _env_bool(os.environ['SEP_API_ENABLED'])
        if os.getenv('SEP_API_URL'):
            self.registry.base_url = os.environ['SEP_API_URL']
        if os.getenv('SEP_API_TIMEOUT_MS'):
            try:
                self.registry.timeout_ms = int(os.environ['SEP_API_TIMEOUT_MS'])
            except ValueError:
                raise ConfigurationError("SEP_API_TIMEOUT_MS must be an integer")
        if os.getenv('REDIS_URL'):
            self.cache.redis_url = os.environ['REDIS_URL']
        if os.getenv('DATABASE_URL'):
            self.database.url = os.environ['DATABASE_URL']
        if os.getenv('LOG_LEVEL'):
            self.logging.level = os.environ['LOG_LEVEL']
        if os.getenv('TRUSTED_PROXIES'):
            self.api.trusted_proxies = [
                p.strip() for p in os.environ['TRUSTED_PROXIES'].split(',') if p.strip()
            ]

    def _validate(self) -> None:
        """Validate configuration values"""
        if self.registry.timeout_ms <= 0:
            raise ConfigurationError("registry.timeout_ms must be positive")
        if self.registry.cache_ttl_seconds <= 0:
            raise ConfigurationError("registry.cache_ttl_seconds must be positive")
        if not self.registry.base_url.startswith(("http://", "https://")):
            raise ConfigurationError("registry.base_url must be an http(s) URL")
        if self.emergency.access_rate_limit < 1 or self.emergency.verify_rate_limit < 1:
            raise ConfigurationError("emergency rate limits must be at least 1")
        if self.emergency.min_response_ms < 0 or self.emergency.jitter_ms < 0:
            raise ConfigurationError("emergency timing values must not be negative")
        if self.emergency.failed_attempt_threshold < 1:
            raise ConfigurationError("emergency.failed_attempt_threshold must be at least 1")
        if self.security_metrics.max_alerts < 1:
            raise ConfigurationError("security_metrics.max_alerts must be at least 1")
        if self.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Unknown log level: {self.logging.level}")

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return {
            'registry': {
                'base_url': self.registry.base_url,
                'timeout_ms': self.registry.timeout_ms,
                'cache_ttl_seconds': self.registry.cache_ttl_seconds,
                'enabled': self.registry.enabled,
                'rows': self.registry.rows
            },
            'cache': {
                'backend': 'redis' if self.cache.redis_url else 'memory',
                'default_ttl_seconds': self.cache.default_ttl_seconds,
                'cleanup_interval_seconds': self.cache.cleanup_interval_seconds
            },
            'emergency': dict(vars(self.emergency)),
            'security_metrics': {
                'thresholds': dict(vars(self.security_metrics.thresholds)),
                'max_alerts': self.security_metrics.max_alerts,
                'cleanup_interval_seconds': self.security_metrics.cleanup_interval_seconds
            },
            'logging': {
                'level': self.logging.level
            },
            'api': {
                'trusted_proxies': list(self.api.trusted_proxies)
            }
        }


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
