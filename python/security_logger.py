"""
Security Event Logging Module

Provides structured logging for security-related events including:
- Emergency access rejections (bad credentials, unknown QR tokens)
- Rate limit hits on the public endpoints
- Repeated failed attempts from one source (enumeration patterns)
- Threshold alerts raised by security metrics

SECURITY: Ensures sensitive data is sanitized before logging.
"""

import logging
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field as dataclass_field

from log_utils import sanitize_for_logging, mask_token


@dataclass
class SecurityEvent:
    """Structured security event for logging"""
    event_type: str  # e.g., RATE_LIMIT_EXCEEDED, INVALID_CREDENTIALS, FAILED_ACCESS_PATTERN
    severity: str  # INFO, WARNING, ERROR, CRITICAL
    field_name: str = ""
    error_code: str = ""
    sanitized_input: str = ""  # First 50 chars, sanitized
    source: str = ""  # Module/function that detected the event
    source_ip: str = ""
    additional_context: Dict[str, Any] = dataclass_field(default_factory=dict)
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            'timestamp': self.timestamp,
            'event_type': self.event_type,
            'severity': self.severity,
            'field': self.field_name,
            'error_code': self.error_code,
            'sanitized_input': self.sanitized_input,
            'source': self.source,
            'source_ip': self.source_ip,
            'context': self.additional_context
        }

    def to_json(self) -> str:
        """Convert to JSON string"""
        return json.dumps(self.to_dict(), ensure_ascii=False)


class SecurityLogger:
    """Handles security event logging with structured output

    Features:
    - Dedicated 'security' logger, optional security.log file
    - JSON-formatted events for easy parsing
    - Automatic sanitization of caller-supplied data
    """

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.INFO,
        enable_console: bool = False,
        enable_file: bool = True,
        logger_name: str = "security"
    ):
        """Initialize security logger

        Args:
            log_dir: Directory for log files
            log_level: Minimum log level to record
            enable_console: Also output to console
            enable_file: Write to security.log file
            logger_name: Name of the underlying logging.Logger
        """
        self.log_dir = Path(log_dir)

        self.logger = logging.getLogger(logger_name)
        self.logger.setLevel(log_level)
        self.logger.handlers.clear()  # Remove any existing handlers

        formatter = logging.Formatter(
            '%(asctime)s - SECURITY - %(levelname)s - %(message)s'
        )

        if enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            security_log_path = self.log_dir / "security.log"
            file_handler = logging.FileHandler(security_log_path, encoding='utf-8')
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        if enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(log_level)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

    def close(self) -> None:
        """Detach and close handlers (file handles in particular)"""
        for handler in list(self.logger.handlers):
            handler.close()
            self.logger.removeHandler(handler)

    def _sanitize_input(self, text: str, max_length: int = 50) -> str:
        """Sanitize input for safe logging

        Args:
            text: Input text to sanitize
            max_length: Maximum length to include

        Returns:
            Sanitized text safe for logging
        """
        if not text:
            return ""
        sanitized = sanitize_for_logging(text)
        if len(sanitized) > max_length:
            return sanitized[:max_length] + "...(truncated)"
        return sanitized

    def _sanitize_context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Sanitize all values in a context dictionary for safe logging

        Args:
            context: Dictionary with context data

        Returns:
            Sanitized dictionary safe for JSON logging
        """
        if not context:
            return {}

        sanitized = {}
        for key, value in context.items():
            safe_key = self._sanitize_input(str(key), max_length=100) if key else "unknown"

            if value is None or isinstance(value, (bool, int, float)):
                sanitized[safe_key] = value
            elif isinstance(value, str):
                sanitized[safe_key] = self._sanitize_input(value, max_length=200)
            elif isinstance(value, dict):
                sanitized[safe_key] = self._sanitize_context(value)
            elif isinstance(value, (list, tuple)):
                sanitized[safe_key] = [
                    item if isinstance(item, (bool, int, float, type(None)))
                    else self._sanitize_input(str(item), max_length=200)
                    for item in value
                ]
            else:
                sanitized[safe_key] = self._sanitize_input(str(value), max_length=200)

        return sanitized

    def log_security_event(
        self,
        event_type: str,
        severity: str = "WARNING",
        field: str = "",
        error_code: str = "",
        input_value: str = "",
        source: str = "",
        source_ip: str = "",
        blocked: bool = True,
        additional_context: Optional[Dict[str, Any]] = None
    ) -> SecurityEvent:
        """Log a security event

        Args:
            event_type: Type of security event
            severity: INFO, WARNING, ERROR, or CRITICAL
            field: Related field if applicable
            error_code: Error code
            input_value: Suspicious input (will be sanitized)
            source: Source module/function
            source_ip: Caller IP address
            blocked: Whether the request was refused
            additional_context: Additional context (will be sanitized)

        Returns:
            The event that was written
        """
        context = self._sanitize_context(additional_context)
        context['blocked'] = blocked

        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            field_name=field,
            error_code=error_code,
            sanitized_input=self._sanitize_input(input_value),
            source=source,
            source_ip=self._sanitize_input(source_ip, max_length=64),
            additional_context=context
        )

        level = {
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
            "CRITICAL": logging.CRITICAL,
        }.get(severity.upper(), logging.WARNING)
        self.logger.log(level, event.to_json())
        return event

    def log_validation_failure(
        self,
        field: str,
        error_code: str,
        input_value: str,
        source: str = "",
        source_ip: str = ""
    ) -> SecurityEvent:
        """Log rejected request input (400 before any credential work)"""
        return self.log_security_event(
            event_type="VALIDATION_FAILED",
            severity="WARNING",
            field=field,
            error_code=error_code,
            input_value=input_value,
            source=source,
            source_ip=source_ip
        )

    def log_rate_limit_exceeded(self, source_ip: str, endpoint: str, qr_token: str = "") -> SecurityEvent:
        """Log a refused request on a rate-limited endpoint"""
        return self.log_security_event(
            event_type="RATE_LIMIT_EXCEEDED",
            severity="WARNING",
            error_code="RATE_LIMIT_EXCEEDED",
            source="rate_limit",
            source_ip=source_ip,
            additional_context={"endpoint": endpoint, "qr_token": mask_token(qr_token)}
        )

    def log_credential_rejection(
        self,
        source_ip: str,
        role: str,
        errors: List[str],
        error_code: str = "INVALID_CREDENTIALS"
    ) -> SecurityEvent:
        """Log an emergency access refused because of the claimed credentials"""
        return self.log_security_event(
            event_type=error_code,
            severity="WARNING",
            field="accessorLicense",
            error_code=error_code,
            source="emergency_access",
            source_ip=source_ip,
            additional_context={"accessor_role": role, "errors": errors}
        )

    def log_failed_access_pattern(self, source_ip: str, attempts: int, elapsed_seconds: float) -> SecurityEvent:
        """Log repeated failed emergency access attempts from one source"""
        return self.log_security_event(
            event_type="FAILED_ACCESS_PATTERN",
            severity="WARNING",
            error_code="MULTIPLE_FAILED_ATTEMPTS",
            source="attempt_tracker",
            source_ip=source_ip,
            blocked=False,
            additional_context={"attempts": attempts, "elapsed_seconds": round(elapsed_seconds, 1)}
        )

    def log_alert(self, alert_type: str, severity: str, message: str,
                  context: Optional[Dict[str, Any]] = None) -> SecurityEvent:
        """Log a threshold alert raised by security metrics"""
        level = {"low": "INFO", "medium": "WARNING", "high": "ERROR", "critical": "CRITICAL"}
        return self.log_security_event(
            event_type="SECURITY_ALERT",
            severity=level.get(severity, "WARNING"),
            error_code=alert_type,
            input_value=message,
            source="security_metrics",
            blocked=False,
            additional_context=context
        )


# Global security logger instance
_security_logger: Optional[SecurityLogger] = None


def get_security_logger(
    log_dir: str = "logs",
    enable_console: bool = False,
    enable_file: bool = False
) -> SecurityLogger:
    """Get or create the global security logger instance

    Args:
        log_dir: Directory for log files
        enable_console: Also output to console
        enable_file: Write to security.log

    Returns:
        SecurityLogger instance
    """
    global _security_logger
    if _security_logger is None:
        _security_logger = SecurityLogger(
            log_dir=log_dir,
            enable_console=enable_console,
            enable_file=enable_file
        )
    return _security_logger


def reset_security_logger() -> None:
    """Reset the global security logger (for testing)"""
    global _security_logger
    if _security_logger is not None:
        _security_logger.close()
    _security_logger = None
