"""
Security Metrics and Alerting

Counts security-relevant events per category and per key (IP, "email:x",
"user:x", "patient:x", "admin:x", "type:x") and raises threshold alerts:

    count >= threshold        -> medium
    count >= 1.5 x threshold  -> high
    count >= 2 x threshold    -> critical

Suspicious activity always raises a high alert. Alerts are kept in a bounded
buffer, written to the security log and fanned out to ``on_alert`` callbacks.
Telemetry never breaks the request path: callback errors are logged and
swallowed.

Counters are also exported to Prometheus as
``vida_security_events_total{category}`` and
``vida_security_alerts_total{type,severity}``.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from prometheus_client import Counter

from config_manager import AlertThresholds
from log_utils import mask_token
from periodic import PeriodicTask
from security_logger import SecurityLogger

logger = logging.getLogger(__name__)

SECURITY_EVENTS_TOTAL = Counter(
    'vida_security_events_total',
    'Security events recorded, by category',
    ['category']
)

SECURITY_ALERTS_TOTAL = Counter(
    'vida_security_alerts_total',
    'Security alerts raised, by type and severity',
    ['type', 'severity']
)


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MetricCategory(str, Enum):
    FAILED_LOGINS = "failed_logins"
    SUCCESSFUL_LOGINS = "successful_logins"
    EMERGENCY_ACCESSES = "emergency_accesses"
    RATE_LIMIT_HITS = "rate_limit_hits"
    INVALID_TOKENS = "invalid_tokens"
    MFA_FAILURES = "mfa_failures"
    PASSWORD_RESETS = "password_resets"
    SUSPICIOUS_ACTIVITIES = "suspicious_activities"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MetricCounter:
    count: int = 0
    last_updated: datetime = field(default_factory=_utcnow)
    details: Dict[str, int] = field(default_factory=dict)


@dataclass
class SecurityAlert:
    type: str
    severity: AlertSeverity
    message: str
    timestamp: datetime
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'severity': self.severity.value,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
            'context': self.context
        }


def severity_for(current: int, threshold: int) -> AlertSeverity:
    if current >= threshold * 2:
        return AlertSeverity.CRITICAL
    if current >= threshold * 1.5:
        return AlertSeverity.HIGH
    return AlertSeverity.MEDIUM


class SecurityMetrics:
    """In-process security counters with threshold alerting"""

    def __init__(
        self,
        thresholds: Optional[AlertThresholds] = None,
        max_alerts: int = 1000,
        security_logger: Optional[SecurityLogger] = None,
        cleanup_interval_seconds: float = 3600,
        counter_idle_hours: int = 24,
        alert_retention_days: int = 7,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.thresholds = thresholds or AlertThresholds()
        self.max_alerts = max_alerts
        self.security_logger = security_logger
        self.counter_idle = timedelta(hours=counter_idle_hours)
        self.alert_retention = timedelta(days=alert_retention_days)
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[MetricCategory, MetricCounter] = {
            category: MetricCounter(last_updated=clock()) for category in MetricCategory
        }
        self._alerts: Deque[SecurityAlert] = deque(maxlen=max_alerts)
        self._callbacks: List[Callable[[SecurityAlert], None]] = []
        self._sweeper = PeriodicTask("security-metrics-cleanup", cleanup_interval_seconds,
                                     self.cleanup_old_metrics)

    # ============================================
    # RECORDING
    # ============================================

    def record_failed_login(self, ip: str, email: Optional[str] = None, reason: Optional[str] = None) -> None:
        keys = [ip] + ([f"email:{email}"] if email else [])
        counts = self._increment(MetricCategory.FAILED_LOGINS, *keys)
        logger.info("Failed login attempt from %s (reason: %s)", ip, reason or "unknown")

        self._check_threshold("FAILED_LOGIN_PER_IP", counts[ip],
                              self.thresholds.failed_login_per_ip, {'ip': ip, 'email': email})
        if email:
            self._check_threshold("FAILED_LOGIN_PER_EMAIL", counts[f"email:{email}"],
                                  self.thresholds.failed_login_per_email, {'ip': ip, 'email': email})

    def record_successful_login(self, ip: str, user_id: str, email: Optional[str] = None) -> None:
        """Count a login and forgive earlier failures for this IP and identity"""
        self._increment(MetricCategory.SUCCESSFUL_LOGINS, ip, f"user:{user_id}")
        with self._lock:
            details = self._counters[MetricCategory.FAILED_LOGINS].details
            details.pop(ip, None)
            details.pop(f"email:{user_id}", None)
            if email:
                details.pop(f"email:{email}", None)
        logger.info("Successful login from %s for user %s", ip, user_id)

    def record_emergency_access(self, ip: str, patient_id: str, access_type: str) -> None:
        counts = self._increment(MetricCategory.EMERGENCY_ACCESSES, ip, f"patient:{patient_id}")
        logger.info("Emergency access (%s) to patient %s from %s", access_type, patient_id, ip)
        self._check_threshold("EMERGENCY_ACCESS_PER_USER", counts[f"patient:{patient_id}"],
                              self.thresholds.emergency_access_per_user,
                              {'patient_id': patient_id, 'ip': ip})

    def record_rate_limit_hit(self, ip: str, path: str) -> None:
        counts = self._increment(MetricCategory.RATE_LIMIT_HITS, ip)
        logger.warning("Rate limit hit from %s on %s", ip, path)
        self._check_threshold("RATE_LIMIT_HITS_PER_IP", counts[ip],
                              self.thresholds.rate_limit_hits_per_ip, {'ip': ip, 'path': path})

    def record_invalid_token(self, ip: str, token_type: str, reason: str) -> None:
        counts = self._increment(MetricCategory.INVALID_TOKENS, ip)
        logger.info("Invalid %s token from %s: %s", token_type, ip, reason)
        self._check_threshold("INVALID_TOKENS_PER_IP", counts[ip],
                              self.thresholds.invalid_tokens_per_ip, {'ip': ip, 'token_type': token_type})

    def record_mfa_failure(self, ip: str, admin_id: str) -> None:
        self._increment(MetricCategory.MFA_FAILURES, ip, f"admin:{admin_id}")
        logger.info("MFA verification failed for admin %s from %s", admin_id, ip)

    def record_password_reset(self, ip: str, email: str) -> None:
        self._increment(MetricCategory.PASSWORD_RESETS, ip, f"email:{email}")
        logger.info("Password reset requested from %s", ip)

    def record_suspicious_activity(self, activity_type: str, ip: str,
                                   details: Optional[Dict[str, Any]] = None) -> None:
        self._increment(MetricCategory.SUSPICIOUS_ACTIVITIES, ip, f"type:{activity_type}")
        logger.warning("Suspicious activity %s from %s", activity_type, ip)
        context = {'ip': ip, 'type': activity_type}
        context.update(details or {})
        self._create_alert(SecurityAlert(
            type="SUSPICIOUS_ACTIVITY",
            severity=AlertSeverity.HIGH,
            message=f"Suspicious activity detected: {activity_type}",
            timestamp=self._clock(),
            context=context
        ))

    # ============================================
    # QUERIES
    # ============================================

    def get_metrics_summary(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            counts = {category.value: counter.count for category, counter in self._counters.items()}
            active_alerts = sum(1 for alert in self._alerts if now - alert.timestamp < timedelta(hours=1))
            top_offenders = self._top_offenders(MetricCategory.FAILED_LOGINS, 5)
        summary = dict(counts)
        summary['active_alerts'] = active_alerts
        summary['top_offending_ips'] = top_offenders
        return summary

    def get_recent_alerts(self, limit: int = 20) -> List[SecurityAlert]:
        with self._lock:
            alerts = sorted(self._alerts, key=lambda alert: alert.timestamp, reverse=True)
        return alerts[:limit]

    def get_ip_metrics(self, ip: str) -> Dict[str, int]:
        with self._lock:
            return {
                'failed_logins': self._counters[MetricCategory.FAILED_LOGINS].details.get(ip, 0),
                'rate_limit_hits': self._counters[MetricCategory.RATE_LIMIT_HITS].details.get(ip, 0),
                'invalid_tokens': self._counters[MetricCategory.INVALID_TOKENS].details.get(ip, 0),
                'suspicious_activities': self._counters[MetricCategory.SUSPICIOUS_ACTIVITIES].details.get(ip, 0),
            }

    def get_count(self, category: MetricCategory, key: Optional[str] = None) -> int:
        with self._lock:
            counter = self._counters[category]
            return counter.count if key is None else counter.details.get(key, 0)

    def on_alert(self, callback: Callable[[SecurityAlert], None]) -> None:
        self._callbacks.append(callback)

    # ============================================
    # MAINTENANCE
    # ============================================

    def cleanup_old_metrics(self) -> None:
        """Zero counters idle for a day and drop week-old alerts"""
        now = self._clock()
        counter_cutoff = now - self.counter_idle
        alert_cutoff = now - self.alert_retention

        with self._lock:
            reset = 0
            for counter in self._counters.values():
                if counter.last_updated < counter_cutoff:
                    counter.count = 0
                    counter.details.clear()
                    counter.last_updated = now
                    reset += 1
            kept = [alert for alert in self._alerts if alert.timestamp > alert_cutoff]
            pruned = len(self._alerts) - len(kept)
            self._alerts = deque(kept, maxlen=self.max_alerts)

        logger.info("Security metrics cleanup: %d counters reset, %d alerts pruned", reset, pruned)

    def start(self) -> None:
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()

    # ============================================
    # INTERNALS
    # ============================================

    def _increment(self, category: MetricCategory, *keys: str) -> Dict[str, int]:
        """Count one event under every key; returns the new per-key counts"""
        now = self._clock()
        with self._lock:
            counter = self._counters[category]
            counter.count += 1
            counter.last_updated = now
            counts = {}
            for key in keys:
                counter.details[key] = counter.details.get(key, 0) + 1
                counts[key] = counter.details[key]
        SECURITY_EVENTS_TOTAL.labels(category=category.value).inc()
        return counts

    def _top_offenders(self, category: MetricCategory, limit: int) -> List[Dict[str, Any]]:
        # Plain IP keys only; prefixed identity keys contain ':'
        entries = [
            {'ip': key, 'count': count}
            for key, count in self._counters[category].details.items()
            if ':' not in key
        ]
        entries.sort(key=lambda entry: entry['count'], reverse=True)
        return entries[:limit]

    def _check_threshold(self, alert_type: str, current: int, threshold: int,
                         context: Dict[str, Any]) -> None:
        if current < threshold:
            return
        severity = severity_for(current, threshold)
        self._create_alert(SecurityAlert(
            type=alert_type,
            severity=severity,
            message=f"Threshold exceeded: {alert_type} ({current}/{threshold})",
            timestamp=self._clock(),
            context={k: v for k, v in context.items() if v is not None}
        ))

    def _create_alert(self, alert: SecurityAlert) -> None:
        with self._lock:
            self._alerts.append(alert)

        SECURITY_ALERTS_TOTAL.labels(type=alert.type, severity=alert.severity.value).inc()
        if self.security_logger is not None:
            context = dict(alert.context)
            if 'qr_token' in context:
                context['qr_token'] = mask_token(str(context['qr_token']))
            self.security_logger.log_alert(alert.type, alert.severity.value, alert.message, context)
        else:
            logger.warning("ALERT [%s]: %s", alert.severity.value.upper(), alert.message)

        for callback in list(self._callbacks):
            try:
                callback(alert)
            except Exception:
                logger.exception("Error in alert callback")
