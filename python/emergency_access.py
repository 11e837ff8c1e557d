"""
Emergency Access Orchestration

Request handling for the public, unauthenticated QR-scan endpoint. One call
of ``handle_access`` runs, in order:

1. Rate limit per source IP (fixed window, 10/min). Over the limit: refused,
   logged, counted. Nothing else runs.
2. Input validation. Malformed input is rejected with field-level detail.
3. Format-only credential check. Garbage credentials fail fast (no registry
   call, no delay) but are logged and tracked.
4. Registry-backed verification. A registry NOT_FOUND is a hard rejection;
   an unavailable registry only lowers the trust level.
5. Patient resolution by QR token. An unknown token is answered only after
   the minimum response time so latency does not reveal which tokens exist.
6. Grant: access-history record, disclosure, trust annotations. Metrics and
   representative notification are fire-and-forget.

Every result is an ``AccessOutcome`` tagged with ``AccessOutcomeKind``;
the HTTP layer only maps it to a response.
"""

import asyncio
import logging
import math
import random
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set

from attempt_tracker import FailedAttemptEntry, FailedAttemptTracker
from credential_validation import (
    CredentialEvaluator,
    TrustLevel,
    get_alert_message_for_trust_level,
    validate_professional_credentials,
)
from license_format import normalize_license
from log_utils import mask_token, sanitize_for_logging
from rate_limit import FixedWindowRateLimiter
from security_logger import SecurityLogger
from security_metrics import SecurityMetrics

logger = logging.getLogger(__name__)

ACCESS_PATH = "/api/v1/emergency/access"
VERIFY_PATH = "/api/v1/emergency/verify"

UUID_PATTERN = re.compile(r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$')

ACCESSOR_NAME_MAX = 100
ACCESSOR_ROLE_MAX = 50
LICENSE_MAX = 50
INSTITUTION_NAME_MAX = 200
LOCATION_NAME_MAX = 200

GENERIC_SERVER_ERROR = "An internal error occurred. Please try again."


# ============================================
# INPUT
# ============================================

class InputValidationError(ValueError):
    """Raised when input validation fails

    Attributes:
        field: The field that failed validation
        code: Error code for programmatic handling
        message: Human-readable error message
        suggestion: Optional suggestion for fixing the error
    """
    def __init__(self, message: str, field: str = "unknown", code: str = "VALIDATION_ERROR", suggestion: str = ""):
        self.field = field
        self.code = code
        self.suggestion = suggestion
        super().__init__(message)


@dataclass
class AccessInput:
    """Validated emergency access request"""
    qr_token: str
    accessor_name: str
    accessor_role: str
    accessor_license: Optional[str] = None
    institution_id: Optional[str] = None
    institution_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_name: Optional[str] = None


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and UUID_PATTERN.fullmatch(value) is not None


def _optional_string(payload: Dict[str, Any], key: str, max_length: int) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InputValidationError(
            f"{key} must be a string",
            field=key,
            code="INVALID_TYPE",
            suggestion=f"Send {key} as text"
        )
    if len(value) > max_length:
        raise InputValidationError(
            f"{key} too long ({len(value)} chars, maximum {max_length})",
            field=key,
            code="TOO_LONG",
            suggestion=f"Shorten {key} to {max_length} characters or less"
        )
    return value.strip() or None


def _required_string(payload: Dict[str, Any], key: str, max_length: int, label: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InputValidationError(
            f"{label} is required",
            field=key,
            code="REQUIRED",
            suggestion=f"Provide the {label.lower()}"
        )
    value = value.strip()
    if len(value) > max_length:
        raise InputValidationError(
            f"{label} too long ({len(value)} chars, maximum {max_length})",
            field=key,
            code="TOO_LONG",
            suggestion=f"Shorten to {max_length} characters or less"
        )
    return value


def _optional_coordinate(payload: Dict[str, Any], key: str, limit: float) -> Optional[float]:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        number = None
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = None
    if number is None or not math.isfinite(number) or not -limit <= number <= limit:
        raise InputValidationError(
            f"{key} must be a number between {-limit:g} and {limit:g}",
            field=key,
            code="OUT_OF_RANGE",
            suggestion=f"Send {key} in decimal degrees"
        )
    return number


def validate_access_input(payload: Any) -> AccessInput:
    """Validate the raw emergency access request body

    Args:
        payload: Decoded JSON body

    Returns:
        AccessInput with trimmed strings

    Raises:
        InputValidationError: If validation fails with detailed error info
    """
    if not isinstance(payload, dict):
        raise InputValidationError(
            "Request body must be a JSON object",
            field="body",
            code="INVALID_BODY",
            suggestion="Send the access request as a JSON object"
        )

    qr_token = payload.get('qrToken')
    if not is_uuid(qr_token):
        raise InputValidationError(
            "Invalid QR token",
            field="qrToken",
            code="INVALID_QR_TOKEN",
            suggestion="Scan the patient's QR code again"
        )

    institution_id = payload.get('institutionId')
    if institution_id is not None and not is_uuid(institution_id):
        raise InputValidationError(
            "Invalid institution id",
            field="institutionId",
            code="INVALID_INSTITUTION_ID",
            suggestion="Omit institutionId or send a valid UUID"
        )

    return AccessInput(
        qr_token=qr_token.lower(),
        accessor_name=_required_string(payload, 'accessorName', ACCESSOR_NAME_MAX, "Accessor name"),
        accessor_role=_required_string(payload, 'accessorRole', ACCESSOR_ROLE_MAX, "Accessor role"),
        accessor_license=_optional_string(payload, 'accessorLicense', LICENSE_MAX),
        institution_id=institution_id,
        institution_name=_optional_string(payload, 'institutionName', INSTITUTION_NAME_MAX),
        latitude=_optional_coordinate(payload, 'latitude', 90),
        longitude=_optional_coordinate(payload, 'longitude', 180),
        location_name=_optional_string(payload, 'locationName', LOCATION_NAME_MAX)
    )


# ============================================
# COLLABORATORS
# ============================================

@dataclass
class NewAccessRecord:
    """Everything persisted about a granted emergency access"""
    access_token: str
    patient_id: str
    accessor_name: str
    accessor_role: str
    accessor_license: Optional[str]
    institution_id: Optional[str]
    institution_name: Optional[str]
    ip_address: str
    user_agent: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    location_name: Optional[str]
    trust_level: str
    credentials_verified: bool
    credential_warnings: List[str]
    registry_verification: Dict[str, Any]
    data_accessed: List[str]
    accessed_at: datetime
    expires_at: datetime


class PatientDirectory(Protocol):
    async def find_by_qr_token(self, qr_token: str) -> Optional[Dict[str, Any]]:
        ...


class AccessStore(Protocol):
    async def record_access(self, record: NewAccessRecord) -> None:
        ...

    async def get_valid_access(self, access_token: str) -> Optional[Dict[str, Any]]:
        ...

    async def get_access_history(self, patient_id: str) -> List[Dict[str, Any]]:
        ...


class AccessNotifier(Protocol):
    async def notify(self, patient: Dict[str, Any], message: str, record: NewAccessRecord) -> None:
        ...


class LoggingNotifier:
    """Notifier that only writes the representative alert to the log"""

    async def notify(self, patient: Dict[str, Any], message: str, record: NewAccessRecord) -> None:
        logger.info("Representative notification for patient %s: %s",
                    patient.get('id'), sanitize_for_logging(message))


# ============================================
# OUTCOME
# ============================================

class AccessOutcomeKind(str, Enum):
    GRANTED = "GRANTED"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    PATIENT_NOT_FOUND = "PATIENT_NOT_FOUND"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_VALID = "TOKEN_VALID"
    SERVER_ERROR = "SERVER_ERROR"


DEFAULT_STATUS = {
    AccessOutcomeKind.GRANTED: 200,
    AccessOutcomeKind.TOKEN_VALID: 200,
    AccessOutcomeKind.INVALID_INPUT: 400,
    AccessOutcomeKind.INVALID_CREDENTIALS: 400,
    AccessOutcomeKind.INVALID_TOKEN: 401,
    AccessOutcomeKind.PATIENT_NOT_FOUND: 404,
    AccessOutcomeKind.RATE_LIMITED: 429,
    AccessOutcomeKind.SERVER_ERROR: 500,
}

ERROR_CODES = {
    AccessOutcomeKind.RATE_LIMITED: "RATE_LIMIT_EXCEEDED",
    AccessOutcomeKind.INVALID_INPUT: "VALIDATION_ERROR",
    AccessOutcomeKind.INVALID_CREDENTIALS: "INVALID_CREDENTIALS",
    AccessOutcomeKind.PATIENT_NOT_FOUND: "PATIENT_NOT_FOUND",
    AccessOutcomeKind.INVALID_TOKEN: "INVALID_TOKEN",
    AccessOutcomeKind.SERVER_ERROR: "SERVER_ERROR",
}


@dataclass
class AccessOutcome:
    kind: AccessOutcomeKind
    message: str
    data: Optional[Dict[str, Any]] = None
    details: List[str] = field(default_factory=list)
    error_field: Optional[str] = None
    code: Optional[str] = None
    status_code: Optional[int] = None
    retry_after: Optional[float] = None

    def __post_init__(self):
        if self.status_code is None:
            self.status_code = DEFAULT_STATUS[self.kind]
        if self.code is None and self.kind in ERROR_CODES:
            self.code = ERROR_CODES[self.kind]

    @property
    def success(self) -> bool:
        return self.kind in (AccessOutcomeKind.GRANTED, AccessOutcomeKind.TOKEN_VALID)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            body: Dict[str, Any] = {'success': True, 'data': self.data or {}}
            if self.message:
                body['message'] = self.message
            return body
        error: Dict[str, Any] = {'code': self.code, 'message': self.message}
        if self.details:
            error['details'] = self.details
        if self.error_field:
            error["field"] = self.error_field
        return {'success': False, 'error': error}


def _isoformat(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def build_disclosure(patient: Dict[str, Any]) -> Dict[str, Any]:
    """Emergency data shown to the accessor"""
    return {
        'patient': {
            'name': patient.get('name'),
            'dateOfBirth': _isoformat(patient.get('date_of_birth')),
            'sex': patient.get('sex'),
            'bloodType': patient.get('blood_type'),
        },
        'medicalInfo': {
            'allergies': patient.get('allergies') or [],
            'conditions': patient.get('conditions') or [],
            'medications': patient.get('medications') or [],
        },
        'donation': {
            'isOrganDonor': bool(patient.get('is_organ_donor')),
        },
    }


# ============================================
# SERVICE
# ============================================

class EmergencyAccessService:
    """Orchestrates the emergency access and token verification endpoints"""

    def __init__(
        self,
        evaluator: CredentialEvaluator,
        patient_directory: PatientDirectory,
        access_store: AccessStore,
        metrics: SecurityMetrics,
        attempt_tracker: FailedAttemptTracker,
        access_limiter: FixedWindowRateLimiter,
        verify_limiter: FixedWindowRateLimiter,
        security_logger: SecurityLogger,
        notifier: Optional[AccessNotifier] = None,
        min_response_ms: int = 200,
        jitter_ms: int = 100,
        access_token_ttl_minutes: int = 60
    ):
        self.evaluator = evaluator
        self.patient_directory = patient_directory
        self.access_store = access_store
        self.metrics = metrics
        self.attempt_tracker = attempt_tracker
        self.access_limiter = access_limiter
        self.verify_limiter = verify_limiter
        self.security_logger = security_logger
        self.notifier = notifier
        self.min_response_ms = min_response_ms
        self.jitter_ms = jitter_ms
        self.access_token_ttl = timedelta(minutes=access_token_ttl_minutes)
        self._background: Set[asyncio.Task] = set()

        self.attempt_tracker.add_threshold_callback(self._on_failed_attempt_threshold)

    async def handle_access(self, payload: Any, ip: str, user_agent: Optional[str] = None) -> AccessOutcome:
        """Process one emergency access request"""
        started = time.monotonic()
        ip = ip or "unknown"

        limit = self.access_limiter.check(ip)
        if not limit.allowed:
            qr_token = payload.get('qrToken') if isinstance(payload, dict) else None
            self.security_logger.log_rate_limit_exceeded(ip, ACCESS_PATH,
                                                         qr_token if isinstance(qr_token, str) else "")
            self._safe_metric(self.metrics.record_rate_limit_hit, ip, ACCESS_PATH)
            return AccessOutcome(
                kind=AccessOutcomeKind.RATE_LIMITED,
                message="Too many emergency access attempts. Please wait a minute and try again.",
                retry_after=limit.retry_after
            )

        try:
            return await self._process_access(payload, ip, user_agent, started)
        except Exception:
            logger.exception("Unexpected error during emergency access from %s", ip)
            return AccessOutcome(kind=AccessOutcomeKind.SERVER_ERROR, message=GENERIC_SERVER_ERROR)

    async def _process_access(self, payload: Any, ip: str, user_agent: Optional[str],
                              started: float) -> AccessOutcome:
        try:
            request = validate_access_input(payload)
        except InputValidationError as e:
            raw = payload.get(e.field) if isinstance(payload, dict) else payload
            self.security_logger.log_validation_failure(
                field=e.field,
                error_code=e.code,
                input_value="" if raw is None else str(raw),
                source="emergency_access",
                source_ip=ip
            )
            return AccessOutcome(
                kind=AccessOutcomeKind.INVALID_INPUT,
                message=str(e),
                error_field=e.field,
                details=[e.suggestion] if e.suggestion else []
            )

        basic = validate_professional_credentials(
            request.accessor_role, request.accessor_license, request.institution_name
        )
        if not basic.is_valid:
            self.security_logger.log_credential_rejection(ip, request.accessor_role, basic.errors)
            self.attempt_tracker.record_failure(ip)
            return AccessOutcome(
                kind=AccessOutcomeKind.INVALID_CREDENTIALS,
                message=basic.errors[0] if basic.errors else "Invalid professional credentials",
                details=list(basic.errors)
            )

        evaluation = await self.evaluator.evaluate(
            request.accessor_role,
            request.accessor_license,
            request.accessor_name,
            request.institution_name
        )
        assessment = evaluation.assessment
        trust_level = evaluation.trust_level
        self._log_registry_outcome(request, assessment)

        if not assessment.is_valid:
            self.security_logger.log_credential_rejection(
                ip, request.accessor_role, assessment.errors, error_code="REGISTRY_NOT_FOUND"
            )
            self.attempt_tracker.record_failure(ip)
            await self._pad_response(started)
            return AccessOutcome(
                kind=AccessOutcomeKind.INVALID_CREDENTIALS,
                message=assessment.errors[0] if assessment.errors else "Invalid professional credentials",
                details=list(assessment.errors),
                status_code=403
            )

        if assessment.warnings:
            logger.warning("SECURITY: Emergency access with credential warnings from %s (%s, trust %s): %s",
                           ip, sanitize_for_logging(request.accessor_role), trust_level.value,
                           "; ".join(assessment.warnings))

        patient = await self.patient_directory.find_by_qr_token(request.qr_token)
        if patient is None:
            self.attempt_tracker.record_failure(ip)
            self._safe_metric(self.metrics.record_invalid_token, ip, "qr", "patient not found")
            self.security_logger.log_security_event(
                event_type="INVALID_TOKEN",
                severity="WARNING",
                field="qrToken",
                error_code="PATIENT_NOT_FOUND",
                source="emergency_access",
                source_ip=ip,
                additional_context={'qr_token': mask_token(request.qr_token)}
            )
            await self._pad_response(started)
            return AccessOutcome(
                kind=AccessOutcomeKind.PATIENT_NOT_FOUND,
                message="Patient not found"
            )

        return await self._grant(request, patient, assessment, trust_level, ip, user_agent)

    async def _grant(self, request: AccessInput, patient: Dict[str, Any], assessment,
                     trust_level: TrustLevel, ip: str, user_agent: Optional[str]) -> AccessOutcome:
        accessed_at = datetime.now(timezone.utc)
        disclosure = build_disclosure(patient)
        registry_summary = assessment.registry_summary()
        record = NewAccessRecord(
            access_token=str(uuid.uuid4()),
            patient_id=str(patient['id']),
            accessor_name=request.accessor_name,
            accessor_role=request.accessor_role,
            accessor_license=normalize_license(request.accessor_license) or None,
            institution_id=request.institution_id,
            institution_name=request.institution_name,
            ip_address=ip,
            user_agent=user_agent,
            latitude=request.latitude,
            longitude=request.longitude,
            location_name=request.location_name,
            trust_level=trust_level.value,
            credentials_verified=assessment.is_verified,
            credential_warnings=list(assessment.warnings),
            registry_verification=registry_summary,
            data_accessed=list(disclosure.keys()),
            accessed_at=accessed_at,
            expires_at=accessed_at + self.access_token_ttl
        )
        await self.access_store.record_access(record)

        self._safe_metric(self.metrics.record_emergency_access, ip, record.patient_id, "QR_SCAN")
        if self.notifier is not None:
            message = get_alert_message_for_trust_level(trust_level, request.accessor_name, request.accessor_role)
            self._spawn(self._notify(patient, message, record))

        logger.info("Emergency access granted to patient %s (trust %s)", record.patient_id, trust_level.value)

        data = dict(disclosure)
        data.update({
            'accessToken': record.access_token,
            'expiresAt': record.expires_at.isoformat(),
            'trustLevel': trust_level.value,
            'credentialWarnings': list(assessment.warnings),
            'registryVerification': registry_summary,
        })
        return AccessOutcome(
            kind=AccessOutcomeKind.GRANTED,
            message="Emergency access granted",
            data=data
        )

    async def verify_access_token(self, access_token: str, ip: str) -> AccessOutcome:
        """Check an access token issued by a previous grant"""
        ip = ip or "unknown"
        limit = self.verify_limiter.check(ip)
        if not limit.allowed:
            self.security_logger.log_rate_limit_exceeded(ip, VERIFY_PATH)
            self._safe_metric(self.metrics.record_rate_limit_hit, ip, VERIFY_PATH)
            return AccessOutcome(
                kind=AccessOutcomeKind.RATE_LIMITED,
                message="Too many requests. Please try again later.",
                retry_after=limit.retry_after
            )

        if not is_uuid(access_token):
            return AccessOutcome(
                kind=AccessOutcomeKind.INVALID_INPUT,
                message="Invalid access token",
                error_field="accessToken"
            )

        try:
            access = await self.access_store.get_valid_access(access_token.lower())
        except Exception:
            logger.exception("Error verifying access token")
            return AccessOutcome(kind=AccessOutcomeKind.SERVER_ERROR, message=GENERIC_SERVER_ERROR)

        if access is None:
            self._safe_metric(self.metrics.record_invalid_token, ip, "emergency_access", "unknown or expired")
            return AccessOutcome(
                kind=AccessOutcomeKind.INVALID_TOKEN,
                message="Invalid or expired access token"
            )

        return AccessOutcome(
            kind=AccessOutcomeKind.TOKEN_VALID,
            message="",
            data={
                'valid': True,
                'expiresAt': _isoformat(access['expires_at']),
                'accessedAt': _isoformat(access['accessed_at']),
            }
        )

    async def get_access_history(self, patient_id: str) -> List[Dict[str, Any]]:
        """Past emergency accesses to a patient's data, newest first"""
        history = await self.access_store.get_access_history(patient_id)
        return [
            {
                'id': entry.get('id'),
                'accessorName': entry.get('accessor_name'),
                'accessorRole': entry.get('accessor_role'),
                'institutionName': entry.get('institution_name'),
                'locationName': entry.get('location_name'),
                'trustLevel': entry.get('trust_level'),
                'credentialsVerified': entry.get('credentials_verified'),
                'accessedAt': _isoformat(entry.get('accessed_at')),
                'dataAccessed': entry.get('data_accessed') or [],
            }
            for entry in history
        ]

    async def aclose(self) -> None:
        """Wait for pending notifications"""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ============================================
    # INTERNALS
    # ============================================

    async def _pad_response(self, started: float) -> None:
        """Hold a failed request until the minimum response time has passed"""
        deadline = started + (self.min_response_ms + random.uniform(0, self.jitter_ms)) / 1000.0
        # the event loop may wake a timer up to one clock tick early
        remaining = deadline - time.monotonic()
        while remaining > 0:
            await asyncio.sleep(remaining)
            remaining = deadline - time.monotonic()

    def _on_failed_attempt_threshold(self, entry: FailedAttemptEntry) -> None:
        self.metrics.record_suspicious_activity(
            "EMERGENCY_TOKEN_ENUMERATION",
            entry.ip,
            {'attempts': entry.count}
        )

    def _log_registry_outcome(self, request: AccessInput, assessment) -> None:
        details = assessment.registry_details
        if details is None:
            return
        license_number = sanitize_for_logging(normalize_license(request.accessor_license))
        if not details.found:
            logger.warning("License %s not found in registry", license_number)
            return
        logger.info("License verified: %s - %s (%s)", license_number,
                    sanitize_for_logging(details.professional_name or ""), sanitize_for_logging(details.title or ""))
        if not details.is_health_professional:
            logger.warning("SECURITY: License %s is not a health profession: %s",
                           license_number, sanitize_for_logging(details.title or ""))
        if details.name_matches is False:
            logger.warning("SECURITY: Name mismatch for license %s (provided: %s, registry: %s)",
                           license_number, sanitize_for_logging(request.accessor_name),
                           sanitize_for_logging(details.professional_name or ""))

    def _safe_metric(self, record, *args) -> None:
        try:
            record(*args)
        except Exception:
            logger.exception("Security metrics recording failed")

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _notify(self, patient: Dict[str, Any], message: str, record: NewAccessRecord) -> None:
        try:
            await self.notifier.notify(patient, message, record)
        except Exception:
            logger.exception("Representative notification failed for patient %s", record.patient_id)
