"""
Shared fixtures for the emergency access test suite
"""

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import RegistryConfig
from registry_client import RegistryClient
from security_logger import SecurityLogger
from verification_cache import VerificationCache

PATIENT_ID = "3f1c2a9e-8d4b-4c6a-9e2f-1a2b3c4d5e6f"
QR_TOKEN = "a0b1c2d3-e4f5-4a6b-8c7d-9e0f1a2b3c4d"

DOCTOR_DOC = {
    'numCedula': '1234567',
    'nombre': 'MARIA',
    'paterno': 'LOPEZ',
    'materno': 'GARCIA',
    'titulo': 'MÉDICO CIRUJANO',
    'institucion': 'UNIVERSIDAD NACIONAL AUTÓNOMA DE MÉXICO',
    'anioRegistro': 2010,
    'tipo': 'C1',
    'genero': '2',
    'score': 12.5,
}


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryPatientDirectory:
    def __init__(self, patients: Optional[Dict[str, Dict[str, Any]]] = None):
        self.patients = patients or {}
        self.lookups: List[str] = []

    async def find_by_qr_token(self, qr_token: str) -> Optional[Dict[str, Any]]:
        self.lookups.append(qr_token)
        return self.patients.get(qr_token)


class InMemoryAccessStore:
    def __init__(self):
        self.records = []

    async def record_access(self, record) -> None:
        self.records.append(record)

    async def get_valid_access(self, access_token: str) -> Optional[Dict[str, Any]]:
        now = datetime.now(timezone.utc)
        for record in self.records:
            if record.access_token == access_token and record.expires_at > now:
                return {'accessed_at': record.accessed_at, 'expires_at': record.expires_at}
        return None

    async def get_access_history(self, patient_id: str) -> List[Dict[str, Any]]:
        matches = [r for r in self.records if r.patient_id == patient_id]
        matches.sort(key=lambda r: r.accessed_at, reverse=True)
        return [
            {
                'id': r.access_token,
                'accessor_name': r.accessor_name,
                'accessor_role': r.accessor_role,
                'institution_name': r.institution_name,
                'location_name': r.location_name,
                'trust_level': r.trust_level,
                'credentials_verified': r.credentials_verified,
                'accessed_at': r.accessed_at,
                'data_accessed': r.data_accessed,
            }
            for r in matches
        ]


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    async def notify(self, patient, message, record) -> None:
        self.messages.append((patient['id'], message))


def solr_body(docs: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {'response': {'numFound': len(docs), 'start': 0, 'docs': docs}}


class RegistryStub:
    """httpx.MockTransport handler answering license queries from a dict"""

    def __init__(self, docs: Optional[Dict[str, Dict[str, Any]]] = None, error: Optional[Exception] = None):
        self.docs = docs or {}
        self.error = error
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        query = request.url.params.get('q', '')
        number = query.split(':', 1)[1] if query.startswith('numCedula:') else None
        if number is not None:
            doc = self.docs.get(number)
            return httpx.Response(200, json=solr_body([doc] if doc else []))
        return httpx.Response(200, json=solr_body(list(self.docs.values())))

    @property
    def calls(self) -> int:
        return len(self.requests)


def make_registry_client(stub: RegistryStub, enabled: bool = True,
                         cache: Optional[VerificationCache] = None) -> RegistryClient:
    config = RegistryConfig(base_url="https://registry.test/solr/select", timeout_ms=500, enabled=enabled)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    return RegistryClient(config, cache or VerificationCache(), http_client=http_client)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def registry_stub():
    return RegistryStub({'1234567': DOCTOR_DOC})


@pytest.fixture
def registry_client(registry_stub):
    return make_registry_client(registry_stub)


@pytest.fixture
def patient():
    return {
        'id': PATIENT_ID,
        'name': 'Juan Pérez',
        'date_of_birth': None,
        'sex': 'M',
        'blood_type': 'O+',
        'allergies': ['Penicilina'],
        'conditions': ['Diabetes tipo 2'],
        'medications': ['Metformina'],
        'is_organ_donor': True,
    }


@pytest.fixture
def security_logger(tmp_path):
    sec_logger = SecurityLogger(log_dir=str(tmp_path / "logs"), enable_file=False)
    yield sec_logger
    sec_logger.close()
