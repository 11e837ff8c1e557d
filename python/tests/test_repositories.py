"""
Tests for the patient and access-history repositories.

Runs against a file-backed SQLite database per test, so no server is needed.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from config_manager import DatabaseConfig
from database import (
    DuplicateEntityError,
    EmergencyAccessRepository,
    PatientRepository,
    SqlAccessStore,
    SqlPatientDirectory,
    create_test_provider,
    get_db_metrics,
    reset_metrics,
)
from emergency_access import NewAccessRecord

from conftest import QR_TOKEN


@pytest.fixture
def db_provider(tmp_path):
    """Fresh SQLite database with the schema created."""
    provider = create_test_provider(config=DatabaseConfig(url=f"sqlite:///{tmp_path}/vida_test.db"))
    provider.init()
    provider.create_tables()
    yield provider
    provider.close()


@pytest.fixture
def stored_patient(db_provider):
    with db_provider.session_scope() as session:
        patient = PatientRepository(session).create({
            'qr_token': QR_TOKEN,
            'name': 'Juan Pérez',
            'blood_type': 'O+',
            'allergies': ['Penicilina'],
            'is_organ_donor': True,
        })
        return patient.id


def _access_record(patient_id, accessed_at=None, ttl_minutes=60, **overrides) -> NewAccessRecord:
    accessed_at = accessed_at or datetime.now(timezone.utc)
    values = dict(
        access_token=str(uuid.uuid4()),
        patient_id=str(patient_id),
        accessor_name='Maria Lopez',
        accessor_role='DOCTOR',
        accessor_license='1234567',
        institution_id=None,
        institution_name='Hospital General',
        ip_address='203.0.113.7',
        user_agent='pytest',
        latitude=19.43,
        longitude=-99.13,
        location_name='Av. Reforma',
        trust_level='VERIFIED',
        credentials_verified=True,
        credential_warnings=[],
        registry_verification={'found': True, 'verified': True, 'professionalName': 'MARIA LOPEZ GARCIA',
                               'isHealthProfessional': True, 'nameMatches': True},
        data_accessed=['patient', 'medicalInfo', 'donation'],
        accessed_at=accessed_at,
        expires_at=accessed_at + timedelta(minutes=ttl_minutes),
    )
    values.update(overrides)
    return NewAccessRecord(**values)


class TestPatientRepository:

    def test_lookup_by_qr_token(self, db_provider, stored_patient):
        with db_provider.session_scope() as session:
            patient = PatientRepository(session).get_by_qr_token(QR_TOKEN.upper())
            assert patient is not None
            assert patient.id == stored_patient
            assert patient.to_dict()['allergies'] == ['Penicilina']

    def test_duplicate_qr_token(self, db_provider, stored_patient):
        with pytest.raises(DuplicateEntityError):
            with db_provider.session_scope() as session:
                PatientRepository(session).create({'qr_token': QR_TOKEN, 'name': 'Otro'})

    def test_deactivated_profile_stops_resolving(self, db_provider, stored_patient):
        with db_provider.session_scope() as session:
            assert PatientRepository(session).deactivate(stored_patient) is True
        with db_provider.session_scope() as session:
            assert PatientRepository(session).get_by_qr_token(QR_TOKEN) is None

    def test_deactivate_unknown(self, db_provider):
        with db_provider.session_scope() as session:
            assert PatientRepository(session).deactivate(uuid.uuid4()) is False


class TestEmergencyAccessRepository:

    def test_expired_token_is_not_valid(self, db_provider, stored_patient):
        now = datetime.now(timezone.utc)
        with db_provider.session_scope() as session:
            repo = EmergencyAccessRepository(session)
            repo.create({
                'access_token': QR_TOKEN,
                'patient_id': stored_patient,
                'accessor_name': 'Ana',
                'accessor_role': 'NURSE',
                'ip_address': '10.0.0.1',
                'trust_level': 'LOW',
                'accessed_at': now - timedelta(hours=2),
                'expires_at': now - timedelta(hours=1),
            })
        with db_provider.session_scope() as session:
            repo = EmergencyAccessRepository(session)
            assert repo.get_by_token(QR_TOKEN) is not None
            assert repo.get_valid_by_token(QR_TOKEN) is None

    def test_history_is_newest_first(self, db_provider, stored_patient):
        base = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
        with db_provider.session_scope() as session:
            repo = EmergencyAccessRepository(session)
            for minutes, name in ((0, 'first'), (30, 'second')):
                repo.create({
                    'access_token': str(uuid.uuid4()),
                    'patient_id': stored_patient,
                    'accessor_name': name,
                    'accessor_role': 'PARAMEDIC',
                    'ip_address': '10.0.0.1',
                    'trust_level': 'MEDIUM',
                    'accessed_at': base + timedelta(minutes=minutes),
                    'expires_at': base + timedelta(minutes=minutes + 60),
                })
        with db_provider.session_scope() as session:
            history = EmergencyAccessRepository(session).list_for_patient(stored_patient)
            assert [r.accessor_name for r in history] == ['second', 'first']


class TestAsyncAdapters:

    @pytest.mark.asyncio
    async def test_patient_directory(self, db_provider, stored_patient):
        directory = SqlPatientDirectory(db_provider)
        patient = await directory.find_by_qr_token(QR_TOKEN)
        assert patient['id'] == str(stored_patient)
        assert patient['blood_type'] == 'O+'
        assert await directory.find_by_qr_token(str(uuid.uuid4())) is None

    @pytest.mark.asyncio
    async def test_record_and_verify_access(self, db_provider, stored_patient):
        store = SqlAccessStore(db_provider)
        record = _access_record(stored_patient)
        await store.record_access(record)

        access = await store.get_valid_access(record.access_token)
        assert access is not None
        assert access['trust_level'] == 'VERIFIED'
        assert access['expires_at'].tzinfo is not None
        assert abs((access['expires_at'] - record.expires_at).total_seconds()) < 1

        with db_provider.session_scope() as session:
            row = EmergencyAccessRepository(session).get_by_token(record.access_token)
            assert row.registry_name == 'MARIA LOPEZ GARCIA'
            assert row.registry_name_matches is True

    @pytest.mark.asyncio
    async def test_expired_access_is_rejected(self, db_provider, stored_patient):
        store = SqlAccessStore(db_provider)
        record = _access_record(stored_patient, accessed_at=datetime.now(timezone.utc) - timedelta(hours=2))
        await store.record_access(record)
        assert await store.get_valid_access(record.access_token) is None

    @pytest.mark.asyncio
    async def test_history(self, db_provider, stored_patient):
        store = SqlAccessStore(db_provider)
        await store.record_access(_access_record(stored_patient, accessor_name='Ana'))
        history = await store.get_access_history(str(stored_patient))
        assert [h['accessor_name'] for h in history] == ['Ana']
        assert history[0]['data_accessed'] == ['patient', 'medicalInfo', 'donation']

    @pytest.mark.asyncio
    async def test_history_for_malformed_id_is_empty(self, db_provider):
        assert await SqlAccessStore(db_provider).get_access_history("not-a-uuid") == []

    @pytest.mark.asyncio
    async def test_operations_are_timed(self, db_provider, stored_patient):
        reset_metrics()
        await SqlPatientDirectory(db_provider).find_by_qr_token(QR_TOKEN)
        metrics = get_db_metrics()
        assert metrics['find_patient_by_qr_token']['count'] == 1


def test_health_check(db_provider):
    assert db_provider.health_check() is True
