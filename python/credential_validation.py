"""
Credential Trust Evaluation

Turns the credentials claimed by an anonymous emergency accessor into a
discrete trust level:

    UNVERIFIED < LOW < MEDIUM < HIGH < VERIFIED

Role policy (fixed sets, case-insensitive):
- DOCTOR, NURSE: license required
- PARAMEDIC, EMERGENCY_TECH: license recommended
- anything else (OTHER): no license required

Two paths exist. ``validate_professional_credentials`` and
``get_access_trust_level`` are synchronous and format-only, so they never wait
on the network. ``CredentialEvaluator`` consults the registry and is the only
way to reach VERIFIED.

Only a hard format failure on a required license, or the registry
authoritatively reporting the license as unknown, invalidates an assessment.
Everything else is a warning and never blocks emergency access.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from rapidfuzz import fuzz

from license_format import validate_license_format
from registry_client import RegistryClient, VerificationErrorKind

logger = logging.getLogger(__name__)

ROLES_REQUIRING_LICENSE = frozenset({'DOCTOR', 'NURSE'})
ROLES_LICENSE_RECOMMENDED = frozenset({'PARAMEDIC', 'EMERGENCY_TECH'})

REGISTRY_CHECK_WARNING = "License format is valid but was not checked against the registry"


class TrustLevel(str, Enum):
    """Assurance tier of an emergency access, totally ordered"""
    UNVERIFIED = "UNVERIFIED"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    VERIFIED = "VERIFIED"

    @property
    def rank(self) -> int:
        return _TRUST_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, TrustLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, TrustLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, TrustLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, TrustLevel):
            return NotImplemented
        return self.rank >= other.rank


_TRUST_ORDER = [TrustLevel.UNVERIFIED, TrustLevel.LOW, TrustLevel.MEDIUM, TrustLevel.HIGH, TrustLevel.VERIFIED]


class RolePolicy(str, Enum):
    REQUIRES_LICENSE = "REQUIRES_LICENSE"
    LICENSE_RECOMMENDED = "LICENSE_RECOMMENDED"
    NO_LICENSE_REQUIRED = "NO_LICENSE_REQUIRED"


class CredentialErrorKind(str, Enum):
    LICENSE_REQUIRED = "LICENSE_REQUIRED"
    INVALID_FORMAT = "INVALID_FORMAT"
    NOT_FOUND_IN_REGISTRY = "NOT_FOUND_IN_REGISTRY"


def classify_role(role: Optional[str]) -> RolePolicy:
    normalized = (role or "").strip().upper()
    if normalized in ROLES_REQUIRING_LICENSE:
        return RolePolicy.REQUIRES_LICENSE
    if normalized in ROLES_LICENSE_RECOMMENDED:
        return RolePolicy.LICENSE_RECOMMENDED
    return RolePolicy.NO_LICENSE_REQUIRED


def _has_value(value: Optional[str]) -> bool:
    return bool(value and value.strip())


@dataclass
class RegistryDetails:
    """What the registry said about the claimed license"""
    found: bool
    professional_name: Optional[str] = None
    title: Optional[str] = None
    institution: Optional[str] = None
    year_registered: Optional[int] = None
    is_health_professional: Optional[bool] = None
    name_matches: Optional[bool] = None
    name_similarity: Optional[float] = None  # informational only

    def to_dict(self) -> Dict[str, Any]:
        return {
            'found': self.found,
            'professionalName': self.professional_name,
            'title': self.title,
            'institution': self.institution,
            'yearRegistered': self.year_registered,
            'isHealthProfessional': self.is_health_professional,
            'nameMatches': self.name_matches,
            'nameSimilarity': self.name_similarity
        }


@dataclass
class CredentialAssessment:
    """Per-request credential assessment; never persisted directly"""
    is_valid: bool
    is_verified: bool
    requires_license: bool
    license_recommended: bool
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    error_kinds: List[CredentialErrorKind] = field(default_factory=list)
    registry_details: Optional[RegistryDetails] = None
    registry_error: Optional[VerificationErrorKind] = None

    def add_error(self, kind: CredentialErrorKind, message: str) -> None:
        self.is_valid = False
        self.errors.append(message)
        self.error_kinds.append(kind)

    def registry_summary(self) -> Dict[str, Any]:
        """Registry verification summary for responses and audit records"""
        if self.registry_details is not None:
            summary = self.registry_details.to_dict()
        else:
            summary = {'found': False}
        summary['verified'] = self.is_verified
        summary['unavailableReason'] = self.registry_error.value if self.registry_error else None
        return summary


@dataclass
class CredentialEvaluation:
    assessment: CredentialAssessment
    trust_level: TrustLevel


def validate_professional_credentials(
    role: str,
    license_number: Optional[str] = None,
    institution_name: Optional[str] = None
) -> CredentialAssessment:
    """Format-only credential check (no I/O)

    Args:
        role: Accessor role (DOCTOR, NURSE, PARAMEDIC, ...)
        license_number: Claimed professional license
        institution_name: Claimed institution

    Returns:
        CredentialAssessment with is_verified always False
    """
    policy = classify_role(role)
    role_name = (role or "").strip().upper()
    has_license = _has_value(license_number)

    result = CredentialAssessment(
        is_valid=True,
        is_verified=False,
        requires_license=policy is RolePolicy.REQUIRES_LICENSE,
        license_recommended=policy is RolePolicy.LICENSE_RECOMMENDED
    )

    if result.requires_license:
        if not has_license:
            result.add_error(CredentialErrorKind.LICENSE_REQUIRED,
                             f"Role {role_name} requires a professional license")
        elif not validate_license_format(license_number):
            result.add_error(CredentialErrorKind.INVALID_FORMAT,
                             "Invalid professional license format (must be 7-8 digits)")
        else:
            result.warnings.append(REGISTRY_CHECK_WARNING)

    if result.license_recommended and not has_license:
        result.warnings.append(f"A professional license is recommended for role {role_name}")

    if has_license and not result.requires_license and not validate_license_format(license_number):
        result.warnings.append("Invalid professional license format")

    if not _has_value(institution_name):
        result.warnings.append("No institution name provided")

    return result


def get_access_trust_level(
    role: str,
    license_number: Optional[str] = None,
    institution_name: Optional[str] = None
) -> TrustLevel:
    """Trust level from role policy and license format alone"""
    policy = classify_role(role)
    has_valid_license = _has_value(license_number) and validate_license_format(license_number)
    has_institution = _has_value(institution_name)

    if policy is RolePolicy.REQUIRES_LICENSE:
        if has_valid_license and has_institution:
            return TrustLevel.HIGH
        if has_valid_license:
            return TrustLevel.MEDIUM
        return TrustLevel.UNVERIFIED

    if policy is RolePolicy.LICENSE_RECOMMENDED:
        if has_valid_license and has_institution:
            return TrustLevel.HIGH
        if has_institution:
            return TrustLevel.MEDIUM
        return TrustLevel.LOW

    return TrustLevel.LOW if has_institution else TrustLevel.UNVERIFIED


def trust_level_from_assessment(
    assessment: CredentialAssessment,
    license_number: Optional[str] = None,
    institution_name: Optional[str] = None
) -> TrustLevel:
    """Trust level from a registry-backed assessment

    VERIFIED needs a registry record with a health title and a name that
    matches (or was not given). Any other registry hit is HIGH. Without a
    registry confirmation a format-valid license gives MEDIUM with an
    institution and LOW without.
    """
    details = assessment.registry_details
    if assessment.is_verified and details is not None and details.found:
        if details.is_health_professional and details.name_matches is not False:
            return TrustLevel.VERIFIED
        return TrustLevel.HIGH

    if assessment.is_valid and _has_value(license_number) and validate_license_format(license_number):
        return TrustLevel.MEDIUM if _has_value(institution_name) else TrustLevel.LOW

    return TrustLevel.UNVERIFIED


def name_similarity(claimed_name: Optional[str], registry_name: str) -> Optional[float]:
    """Token-sort similarity (0-100) between claimed and registered names"""
    if not _has_value(claimed_name) or not registry_name.strip():
        return None
    return round(fuzz.token_sort_ratio(claimed_name.lower(), registry_name.lower()), 1)


def get_alert_message_for_trust_level(trust_level: TrustLevel, accessor_name: str, role: str) -> str:
    """Notification text sent to patient representatives"""
    if trust_level is TrustLevel.VERIFIED:
        return f"Emergency access by {accessor_name} ({role}) - license VERIFIED with the registry"
    if trust_level is TrustLevel.HIGH:
        return f"Emergency access by {accessor_name} ({role}) - credentials verified"
    if trust_level is TrustLevel.MEDIUM:
        return f"Emergency access by {accessor_name} ({role}) - credentials partially verified"
    if trust_level is TrustLevel.LOW:
        return f"Warning: emergency access by {accessor_name} ({role}) - no professional license"
    return f"ALERT: emergency access by {accessor_name} ({role}) - NO VERIFIABLE CREDENTIALS"


class CredentialEvaluator:
    """Registry-backed credential verification"""

    def __init__(self, registry_client: RegistryClient):
        self.registry_client = registry_client

    async def verify_professional_credentials_async(
        self,
        role: str,
        license_number: Optional[str] = None,
        professional_name: Optional[str] = None,
        institution_name: Optional[str] = None
    ) -> CredentialAssessment:
        """Format check followed by one registry verification

        A registry NOT_FOUND invalidates the assessment. An unavailable
        registry (timeout, connection error, disabled) only adds a warning.
        """
        result = validate_professional_credentials(role, license_number, institution_name)
        result.warnings = [w for w in result.warnings if w != REGISTRY_CHECK_WARNING]

        if not _has_value(license_number) or not validate_license_format(license_number):
            return result

        check = await self.registry_client.verify_health_professional(license_number, professional_name)
        verification = check.verification

        if check.details is not None:
            record = check.details
            result.is_verified = True
            result.registry_details = RegistryDetails(
                found=True,
                professional_name=record.full_name,
                title=check.specialty,
                institution=record.institution,
                year_registered=record.year_registered,
                is_health_professional=check.is_health_professional,
                name_matches=check.matches_name,
                name_similarity=name_similarity(professional_name, record.full_name)
            )
            if not check.is_health_professional:
                result.warnings.append(f'License corresponds to "{check.specialty}", not a health profession')
            if _has_value(professional_name) and not check.matches_name:
                result.warnings.append(
                    f"Registered name ({record.full_name}) does not match the provided name"
                )
        elif verification is not None and verification.error_kind is VerificationErrorKind.NOT_FOUND:
            result.is_verified = True
            result.registry_details = RegistryDetails(found=False)
            result.add_error(CredentialErrorKind.NOT_FOUND_IN_REGISTRY, "License not found in registry")
        else:
            result.registry_error = verification.error_kind if verification is not None else None
            result.warnings.append("Could not verify the license with the registry (service unavailable)")
            logger.info("Registry unavailable for credential check: %s",
                        result.registry_error.value if result.registry_error else "unknown")

        return result

    async def evaluate(
        self,
        role: str,
        license_number: Optional[str] = None,
        professional_name: Optional[str] = None,
        institution_name: Optional[str] = None
    ) -> CredentialEvaluation:
        """Assessment and trust level from a single registry verification"""
        assessment = await self.verify_professional_credentials_async(
            role, license_number, professional_name, institution_name
        )
        if not _has_value(license_number):
            level = TrustLevel.UNVERIFIED if assessment.requires_license else TrustLevel.LOW
        else:
            level = trust_level_from_assessment(assessment, license_number, institution_name)
        return CredentialEvaluation(assessment=assessment, trust_level=level)

    async def get_access_trust_level_async(
        self,
        role: str,
        license_number: Optional[str] = None,
        professional_name: Optional[str] = None,
        institution_name: Optional[str] = None
    ) -> TrustLevel:
        evaluation = await self.evaluate(role, license_number, professional_name, institution_name)
        return evaluation.trust_level
