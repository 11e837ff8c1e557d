"""
Integration Security Tests for the emergency access service

End-to-end tests that verify security across components:
- Security event logging and log injection resistance
- Secrets (QR tokens) kept out of the logs
- Configuration validation
"""

import json

import pytest

from config_manager import ConfigManager, ConfigurationError
from emergency_access import InputValidationError, validate_access_input
from log_utils import mask_token, sanitize_for_logging
from security_logger import SecurityEvent, SecurityLogger, get_security_logger, reset_security_logger

from conftest import QR_TOKEN


class TestSecurityLoggerIntegration:
    """Tests for security event logging"""

    @pytest.fixture
    def temp_log_dir(self, tmp_path):
        """Create temp directory for logs"""
        log_dir = tmp_path / "logs"
        log_dir.mkdir()
        return log_dir

    @pytest.fixture(autouse=True)
    def reset_logger(self):
        """Reset logger before each test"""
        reset_security_logger()
        yield
        reset_security_logger()

    def _read_events(self, log_dir):
        content = (log_dir / "security.log").read_text(encoding='utf-8')
        return [json.loads(line.split(" - ", 3)[3]) for line in content.strip().split('\n')]

    def test_security_logger_creates_log_file(self, temp_log_dir):
        """Test that security logger creates security.log file"""
        logger = SecurityLogger(log_dir=str(temp_log_dir))
        logger.log_validation_failure(
            field="qrToken",
            error_code="INVALID_QR_TOKEN",
            input_value="test",
            source="test"
        )
        logger.close()

        assert (temp_log_dir / "security.log").exists()

    def test_security_logger_sanitizes_input(self, temp_log_dir):
        """Test that logged input is sanitized - newlines converted to spaces"""
        logger = SecurityLogger(log_dir=str(temp_log_dir))

        malicious_input = "test\nFAKE LOG ENTRY\n"
        logger.log_validation_failure(
            field="accessorName",
            error_code="INVALID",
            input_value=malicious_input,
            source="test"
        )
        logger.close()

        lines = (temp_log_dir / "security.log").read_text().strip().split('\n')
        assert len(lines) == 1, "Should be single log line, newlines should be sanitized"

    def test_long_input_is_truncated(self, temp_log_dir):
        logger = SecurityLogger(log_dir=str(temp_log_dir))
        logger.log_validation_failure(field="accessorName", error_code="TOO_LONG", input_value="x" * 500)
        logger.close()

        event = self._read_events(temp_log_dir)[0]
        assert event['sanitized_input'].endswith("...(truncated)")
        assert len(event['sanitized_input']) < 100

    def test_context_values_are_sanitized(self, temp_log_dir):
        logger = SecurityLogger(log_dir=str(temp_log_dir))
        logger.log_credential_rejection("10.0.0.1", "DOCTOR\r\nADMIN", ["bad\nline", 3])
        logger.close()

        event = self._read_events(temp_log_dir)[0]
        assert event['event_type'] == "INVALID_CREDENTIALS"
        assert event['context']['accessor_role'] == "DOCTOR ADMIN"
        assert event['context']['errors'] == ["bad line", 3]
        assert event['context']['blocked'] is True

    def test_rate_limit_event_masks_qr_token(self, temp_log_dir):
        logger = SecurityLogger(log_dir=str(temp_log_dir))
        logger.log_rate_limit_exceeded("10.0.0.1", "/api/v1/emergency/access", QR_TOKEN)
        logger.close()

        content = (temp_log_dir / "security.log").read_text()
        assert QR_TOKEN not in content
        assert QR_TOKEN[:8] in content
        assert "RATE_LIMIT_EXCEEDED" in content

    def test_alert_severity_maps_to_log_level(self, temp_log_dir):
        logger = SecurityLogger(log_dir=str(temp_log_dir))
        logger.log_alert("FAILED_LOGIN_PER_IP", "critical", "20 failed logins", {"ip": "10.0.0.1"})
        logger.close()

        content = (temp_log_dir / "security.log").read_text()
        assert "SECURITY - CRITICAL" in content
        assert "SECURITY_ALERT" in content

    def test_security_event_to_json(self):
        """Test SecurityEvent JSON serialization"""
        event = SecurityEvent(
            event_type="FAILED_ACCESS_PATTERN",
            severity="WARNING",
            error_code="MULTIPLE_FAILED_ATTEMPTS",
            source="attempt_tracker"
        )

        data = json.loads(event.to_json())
        assert data['event_type'] == "FAILED_ACCESS_PATTERN"
        assert data['severity'] == "WARNING"
        assert data['timestamp']

    def test_global_logger_is_shared(self, temp_log_dir):
        first = get_security_logger(log_dir=str(temp_log_dir))
        assert get_security_logger() is first
        reset_security_logger()
        assert get_security_logger() is not first


class TestEndToEndSecurityFlow:
    """End-to-end security tests"""

    def test_log_injection_in_accessor_name_is_neutralised(self):
        request = validate_access_input({
            'qrToken': QR_TOKEN,
            'accessorName': "Ana\n2026-01-01 - SECURITY - INFO - forged",
            'accessorRole': 'NURSE',
        })
        assert '\n' not in sanitize_for_logging(request.accessor_name)

    def test_qr_token_never_logged_in_full(self):
        assert mask_token(QR_TOKEN) == QR_TOKEN[:8] + "..."
        assert mask_token("abc") == "ab..."
        assert mask_token(None) == ""

    @pytest.mark.parametrize("token", [
        "'; DROP TABLE patient_profiles--",
        "../../etc/passwd",
        "a0b1c2d3-e4f5-4a6b-8c7d-9e0f1a2b3c4d\n",
        "<script>alert(1)</script>",
    ])
    def test_hostile_qr_tokens_rejected(self, token):
        with pytest.raises(InputValidationError) as exc_info:
            validate_access_input({'qrToken': token, 'accessorName': 'Ana', 'accessorRole': 'NURSE'})
        assert exc_info.value.field == "qrToken"


class TestConfigValidationSecurity:
    """Tests for configuration validation security"""

    @pytest.fixture(autouse=True)
    def reset_config(self):
        """Reset config before each test"""
        ConfigManager.reset_instance()
        yield
        ConfigManager.reset_instance()

    def test_zero_rate_limit_rejected(self, tmp_path):
        """A zero rate limit would disable the public endpoint"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("emergency:\n  access_rate_limit: 0\n")

        with pytest.raises(ConfigurationError) as exc_info:
            ConfigManager(str(config_file), apply_env=False)

        assert "rate limits" in str(exc_info.value)

    def test_negative_response_floor_rejected(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("emergency:\n  min_response_ms: -1\n")

        with pytest.raises(ConfigurationError):
            ConfigManager(str(config_file), apply_env=False)

    def test_non_http_registry_url_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigManager.create({'registry': {'base_url': 'file:///etc/passwd'}})

        assert "base_url" in str(exc_info.value)
