"""
Repository Pattern for VIDA Database Operations

Provides clean data access layer with proper typing and error handling.
The Sql* adapters at the bottom expose the repositories to the async
emergency access service; blocking session work runs in the default thread
pool executor so the event loop never waits on the database.
"""

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, List, Optional, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from database.connection import DatabaseSessionProvider
from database.models import EmergencyAccessRecord, PatientProfile
from database.monitoring import query_timer

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class DuplicateEntityError(RepositoryError):
    """Raised when attempting to create a duplicate row."""
    pass


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_uuid(value: Any) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


# ============================================
# PATIENT REPOSITORY
# ============================================

class PatientRepository:
    """Repository for patient profile operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, patient_data: Dict[str, Any]) -> PatientProfile:
        """
        Create a new patient profile.

        Args:
            patient_data: Dictionary containing profile fields

        Returns:
            Created PatientProfile instance

        Raises:
            DuplicateEntityError: If the QR token is already in use
        """
        try:
            patient = PatientProfile(**patient_data)
            self.session.add(patient)
            self.session.flush()
            logger.debug("Created patient profile: %s", patient.id)
            return patient
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(f"Patient profile already exists: {e}")

    def get_by_id(self, patient_id: UUID) -> Optional[PatientProfile]:
        return self.session.get(PatientProfile, patient_id)

    def get_by_qr_token(self, qr_token: str) -> Optional[PatientProfile]:
        """
        Resolve an active profile by its QR token.

        Args:
            qr_token: Token from the scanned QR code

        Returns:
            PatientProfile or None
        """
        query = select(PatientProfile).where(
            PatientProfile.qr_token == qr_token.lower(),
            PatientProfile.is_active.is_(True)
        )
        return self.session.execute(query).scalar_one_or_none()

    def deactivate(self, patient_id: UUID) -> bool:
        """Revoke the QR code of a profile."""
        patient = self.get_by_id(patient_id)
        if patient is None:
            return False
        patient.is_active = False
        self.session.flush()
        return True


# ============================================
# EMERGENCY ACCESS REPOSITORY
# ============================================

class EmergencyAccessRepository:
    """Repository for the emergency access history."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, access_data: Dict[str, Any]) -> EmergencyAccessRecord:
        """
        Store a granted emergency access.

        Raises:
            DuplicateEntityError: If the access token already exists
        """
        try:
            record = EmergencyAccessRecord(**access_data)
            self.session.add(record)
            self.session.flush()
            logger.debug("Recorded emergency access %s for patient %s", record.id, record.patient_id)
            return record
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(f"Access token already recorded: {e}")

    def get_by_token(self, access_token: str) -> Optional[EmergencyAccessRecord]:
        query = select(EmergencyAccessRecord).where(
            EmergencyAccessRecord.access_token == access_token.lower()
        )
        return self.session.execute(query).scalar_one_or_none()

    def get_valid_by_token(
        self,
        access_token: str,
        now: Optional[datetime] = None
    ) -> Optional[EmergencyAccessRecord]:
        """Access record for a token that has not expired yet."""
        record = self.get_by_token(access_token)
        if record is None:
            return None
        now = now or datetime.now(timezone.utc)
        if _as_utc(record.expires_at) <= now:
            return None
        return record

    def list_for_patient(self, patient_id: UUID, limit: int = 100) -> List[EmergencyAccessRecord]:
        """Accesses to one patient, newest first."""
        query = (
            select(EmergencyAccessRecord)
            .where(EmergencyAccessRecord.patient_id == patient_id)
            .order_by(EmergencyAccessRecord.accessed_at.desc())
            .limit(limit)
        )
        return list(self.session.execute(query).scalars().all())


# ============================================
# ASYNC ADAPTERS
# ============================================

class _ExecutorAdapter:
    """Runs a session-scoped callable in the default executor."""

    def __init__(self, provider: DatabaseSessionProvider):
        self.provider = provider

    async def _run(self, operation: str, func: Callable[[Session], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._in_session, operation, func))

    def _in_session(self, operation: str, func: Callable[[Session], T]) -> T:
        try:
            with query_timer(operation), self.provider.session_scope() as session:
                return func(session)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database operation failed: {e}") from e


class SqlPatientDirectory(_ExecutorAdapter):
    """Patient lookup backed by patient_profiles."""

    async def find_by_qr_token(self, qr_token: str) -> Optional[Dict[str, Any]]:
        def lookup(session: Session) -> Optional[Dict[str, Any]]:
            patient = PatientRepository(session).get_by_qr_token(qr_token)
            return patient.to_dict() if patient else None
        return await self._run("find_patient_by_qr_token", lookup)


class SqlAccessStore(_ExecutorAdapter):
    """Access history backed by emergency_accesses."""

    async def record_access(self, record) -> None:
        """Persist a NewAccessRecord from the emergency access service."""
        registry = record.registry_verification or {}
        data = {
            'access_token': record.access_token,
            'patient_id': _parse_uuid(record.patient_id),
            'accessor_name': record.accessor_name,
            'accessor_role': record.accessor_role,
            'accessor_license': record.accessor_license,
            'institution_id': record.institution_id,
            'institution_name': record.institution_name,
            'ip_address': record.ip_address,
            'user_agent': record.user_agent,
            'latitude': record.latitude,
            'longitude': record.longitude,
            'location_name': record.location_name,
            'trust_level': record.trust_level,
            'credentials_verified': record.credentials_verified,
            'credential_warnings': list(record.credential_warnings),
            'registry_found': registry.get('found'),
            'registry_name': registry.get('professionalName'),
            'registry_title': registry.get('title'),
            'registry_institution': registry.get('institution'),
            'registry_is_health_professional': registry.get('isHealthProfessional'),
            'registry_name_matches': registry.get('nameMatches'),
            'data_accessed': list(record.data_accessed),
            'accessed_at': record.accessed_at,
            'expires_at': record.expires_at,
        }

        def store(session: Session) -> None:
            EmergencyAccessRepository(session).create(data)
        await self._run("record_access", store)

    async def get_valid_access(self, access_token: str) -> Optional[Dict[str, Any]]:
        def lookup(session: Session) -> Optional[Dict[str, Any]]:
            record = EmergencyAccessRepository(session).get_valid_by_token(access_token)
            if record is None:
                return None
            result = record.to_dict()
            result['accessed_at'] = _as_utc(record.accessed_at)
            result['expires_at'] = _as_utc(record.expires_at)
            return result
        return await self._run("get_valid_access", lookup)

    async def get_access_history(self, patient_id: str) -> List[Dict[str, Any]]:
        parsed = _parse_uuid(patient_id)
        if parsed is None:
            return []

        def history(session: Session) -> List[Dict[str, Any]]:
            records = EmergencyAccessRepository(session).list_for_patient(parsed)
            results = []
            for record in records:
                entry = record.to_dict()
                entry['accessed_at'] = _as_utc(record.accessed_at)
                results.append(entry)
            return results
        return await self._run("get_access_history", history)
