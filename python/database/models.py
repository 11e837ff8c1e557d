"""
SQLAlchemy ORM Models for the VIDA emergency access service

Tables:
1. patient_profiles - Minimal emergency disclosure, resolved by QR token
2. emergency_accesses - Access-history record of every granted emergency access

Generic column types (Uuid, JSON) keep the schema portable between
PostgreSQL and SQLite.
"""

import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean, Date, DateTime, Float, ForeignKey, Index, JSON, String, Text, Uuid
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship
from sqlalchemy.sql import func

# Base class for all models
Base = declarative_base()


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# ============================================
# PATIENT MODELS
# ============================================

class PatientProfile(Base, TimestampMixin):
    """
    Emergency profile of a patient.

    Only the data a first responder needs; the QR code carries ``qr_token``.
    """
    __tablename__ = "patient_profiles"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    # Opaque token printed in the QR code
    qr_token: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        unique=True,
        index=True
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    sex: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    blood_type: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)

    allergies: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    conditions: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    medications: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    is_organ_donor: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Revoked QR codes stop resolving
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    accesses: Mapped[List["EmergencyAccessRecord"]] = relationship(
        "EmergencyAccessRecord",
        back_populates="patient",
        cascade="all, delete-orphan"
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': str(self.id),
            'name': self.name,
            'date_of_birth': self.date_of_birth,
            'sex': self.sex,
            'blood_type': self.blood_type,
            'allergies': list(self.allergies or []),
            'conditions': list(self.conditions or []),
            'medications': list(self.medications or []),
            'is_organ_donor': self.is_organ_donor,
        }

    def __repr__(self) -> str:
        return f"<PatientProfile(id={self.id}, name='{self.name}')>"


# ============================================
# ACCESS HISTORY MODELS
# ============================================

class EmergencyAccessRecord(Base):
    """
    One granted emergency access.

    Immutable once written; the access token stays valid until ``expires_at``.
    """
    __tablename__ = "emergency_accesses"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    access_token: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        unique=True,
        index=True
    )

    patient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("patient_profiles.id", ondelete="CASCADE"),
        nullable=False
    )

    # Accessor as claimed in the request
    accessor_name: Mapped[str] = mapped_column(String(100), nullable=False)
    accessor_role: Mapped[str] = mapped_column(String(50), nullable=False)
    accessor_license: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    institution_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    institution_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Request origin
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    location_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Credential assurance at the time of access
    trust_level: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    credentials_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    credential_warnings: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    registry_found: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    registry_name: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    registry_title: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    registry_institution: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    registry_is_health_professional: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    registry_name_matches: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    data_accessed: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    accessed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    patient: Mapped["PatientProfile"] = relationship("PatientProfile", back_populates="accesses")

    __table_args__ = (
        Index('ix_access_patient_time', 'patient_id', 'accessed_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': str(self.id),
            'access_token': self.access_token,
            'patient_id': str(self.patient_id),
            'accessor_name': self.accessor_name,
            'accessor_role': self.accessor_role,
            'accessor_license': self.accessor_license,
            'institution_name': self.institution_name,
            'location_name': self.location_name,
            'trust_level': self.trust_level,
            'credentials_verified': self.credentials_verified,
            'credential_warnings': list(self.credential_warnings or []),
            'data_accessed': list(self.data_accessed or []),
            'accessed_at': self.accessed_at,
            'expires_at': self.expires_at,
        }

    def __repr__(self) -> str:
        return f"<EmergencyAccessRecord(id={self.id}, patient={self.patient_id}, trust='{self.trust_level}')>"
