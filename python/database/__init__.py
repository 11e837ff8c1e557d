"""
Database Package for the VIDA emergency access service

This package provides:
- SQLAlchemy ORM models for patient profiles and the access history
- Session provider with a transactional session scope
- Repository pattern for data access, with async adapters for the service
- Performance monitoring and query timing
"""

from database.models import (
    Base,
    PatientProfile,
    EmergencyAccessRecord,
)
from database.connection import (
    DatabaseSessionProvider,
    init_db,
    create_test_provider,
)
from database.repositories import (
    RepositoryError,
    DuplicateEntityError,
    PatientRepository,
    EmergencyAccessRepository,
    SqlPatientDirectory,
    SqlAccessStore,
)
from database.monitoring import (
    query_timer,
    get_db_metrics,
    reset_metrics,
)

__all__ = [
    # Models
    'Base',
    'PatientProfile',
    'EmergencyAccessRecord',
    # Connection
    'DatabaseSessionProvider',
    'init_db',
    'create_test_provider',
    # Repositories
    'RepositoryError',
    'DuplicateEntityError',
    'PatientRepository',
    'EmergencyAccessRepository',
    'SqlPatientDirectory',
    'SqlAccessStore',
    # Monitoring
    'query_timer',
    'get_db_metrics',
    'reset_metrics',
]
