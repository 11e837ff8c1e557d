"""
Professional License Registry Client

Verifies Mexican professional licenses ("cedula profesional") against the
public SEP registry, a Solr search endpoint:
    GET <base_url>?q=...&fl=*,score&start=0&rows=10&wt=json

Verification policy:
- Bad format never reaches the network.
- Results are cached for 7 days under ``license:registry``; registry content
  is near-immutable so a cached answer is served as-is.
- The registry answering "no such license" is an authoritative negative
  (is_valid False, is_verified True).
- The registry being unreachable, slow or disabled is NOT a negative: the
  license stays format-valid but unverified. Emergency access must survive
  a government API outage without claiming a check that never happened.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from config_manager import RegistryConfig
from license_format import normalize_license, validate_format
from log_utils import sanitize_for_logging
from verification_cache import CachePrefix, VerificationCache

logger = logging.getLogger(__name__)

# Title stems classifying a registry title as a health profession.
# Matched as case-insensitive substrings, Spanish and English.
HEALTH_TITLE_KEYWORDS = [
    'médico', 'medicina', 'doctor', 'cirujano',
    'enfermero', 'enfermería', 'enfermera',
    'paramédico', 'paramédica', 'urgencias',
    'pediatr', 'cardiol', 'neurol', 'oncol',
    'ginecol', 'traumat', 'anestesi', 'radiol',
    'psiquiatr', 'dermatol', 'oftalmol', 'otorrino',
    'nutrici', 'nutriólogo', 'fisioterapi',
    'odontól', 'dentista', 'estomatol',
    'farmac', 'químico farmac', 'bioquímic',
    'laboratorista', 'patólog', 'anatomopatol',
    'physician', 'surgeon', 'nurse', 'nursing', 'paramedic', 'medicine',
]


class RegistryError(Exception):
    """Registry query failed (transport, HTTP status, malformed body)"""
    pass


class RegistryTimeoutError(RegistryError):
    """Registry query exceeded the configured timeout"""
    pass


class VerificationSource(str, Enum):
    LIVE_API = "live_api"
    CACHE = "cache"
    FORMAT_ONLY = "format_only"


class VerificationErrorKind(str, Enum):
    INVALID_FORMAT = "INVALID_FORMAT"
    NOT_FOUND = "NOT_FOUND"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    TIMEOUT = "TIMEOUT"
    DISABLED = "DISABLED"


@dataclass(frozen=True)
class RegistryRecord:
    """One license as published by the registry"""
    license_number: str
    first_name: str
    paternal_name: str
    maternal_name: str
    title: str
    institution: str
    year_registered: Optional[int]
    record_type: str
    gender: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.paternal_name} {self.maternal_name}"

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'RegistryRecord':
        """Map a Solr document (numCedula, nombre, paterno, ...) to a record"""
        year = doc.get('anioRegistro')
        try:
            year = int(year) if year not in (None, "") else None
        except (TypeError, ValueError):
            year = None
        return cls(
            license_number=str(doc.get('numCedula', '')),
            first_name=str(doc.get('nombre', '') or ''),
            paternal_name=str(doc.get('paterno', '') or ''),
            maternal_name=str(doc.get('materno', '') or ''),
            title=str(doc.get('titulo', '') or ''),
            institution=str(doc.get('institucion', '') or ''),
            year_registered=year,
            record_type=str(doc.get('tipo', '') or ''),
            gender=doc.get('genero')
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'license_number': self.license_number,
            'first_name': self.first_name,
            'paternal_name': self.paternal_name,
            'maternal_name': self.maternal_name,
            'title': self.title,
            'institution': self.institution,
            'year_registered': self.year_registered,
            'record_type': self.record_type,
            'gender': self.gender
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RegistryRecord':
        return cls(**{name: data.get(name) for name in cls.__dataclass_fields__})


@dataclass
class VerificationResult:
    """Outcome of one license verification"""
    is_valid: bool
    is_verified: bool
    source: VerificationSource
    record: Optional[RegistryRecord] = None
    match_score: Optional[float] = None
    error: Optional[str] = None
    error_kind: Optional[VerificationErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_valid': self.is_valid,
            'is_verified': self.is_verified,
            'source': self.source.value,
            'record': self.record.to_dict() if self.record else None,
            'match_score': self.match_score,
            'error': self.error,
            'error_kind': self.error_kind.value if self.error_kind else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VerificationResult':
        record = data.get('record')
        error_kind = data.get('error_kind')
        return cls(
            is_valid=bool(data.get('is_valid')),
            is_verified=bool(data.get('is_verified')),
            source=VerificationSource(data.get('source', VerificationSource.LIVE_API.value)),
            record=RegistryRecord.from_dict(record) if record else None,
            match_score=data.get('match_score'),
            error=data.get('error'),
            error_kind=VerificationErrorKind(error_kind) if error_kind else None
        )


@dataclass
class HealthProfessionalCheck:
    """Registry verification classified for health-care access"""
    is_health_professional: bool
    matches_name: bool
    specialty: Optional[str] = None
    details: Optional[RegistryRecord] = None
    verification: Optional[VerificationResult] = None


def is_health_title(title: str) -> bool:
    """True when the title contains any health profession stem"""
    lowered = (title or "").lower()
    return any(keyword in lowered for keyword in HEALTH_TITLE_KEYWORDS)


def name_matches(record: RegistryRecord, expected_name: Optional[str]) -> bool:
    """Heuristic name comparison, intentionally fuzzy.

    Matches when the registry full name contains the expected name, or when
    the expected name contains the registry's first name token. This tolerates
    transliteration and partial names at the cost of occasional false
    positives on common first names. It is NOT proof of identity.
    """
    if not expected_name:
        return True
    full_name = record.full_name.lower()
    search_name = expected_name.lower()
    return search_name in full_name or full_name.split(' ')[0] in search_name


class RegistryClient:
    """Async client for the professional license registry"""

    def __init__(
        self,
        config: RegistryConfig,
        cache: VerificationCache,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.config = config
        self.cache = cache
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self.timeout_seconds)

    @property
    def timeout_seconds(self) -> float:
        return self.config.timeout_ms / 1000.0

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it"""
        if self._owns_client:
            await self._client.aclose()

    def get_service_info(self) -> Dict[str, Any]:
        return {
            'enabled': self.config.enabled,
            'api_url': self.config.base_url
        }

    async def verify_by_number(self, license_number: Optional[str]) -> VerificationResult:
        """Verify a license number against the registry

        Args:
            license_number: Raw license as typed by the caller

        Returns:
            VerificationResult; never raises for registry failures
        """
        normalized = normalize_license(license_number)

        if not validate_format(normalized):
            return VerificationResult(
                is_valid=False,
                is_verified=False,
                source=VerificationSource.FORMAT_ONLY,
                error="Invalid license format (must be 7-8 digits)",
                error_kind=VerificationErrorKind.INVALID_FORMAT
            )

        cached = await self._get_cached(normalized)
        if cached is not None:
            return replace(cached, source=VerificationSource.CACHE)

        if not self.config.enabled:
            return VerificationResult(
                is_valid=True,
                is_verified=False,
                source=VerificationSource.FORMAT_ONLY,
                error="Registry verification disabled",
                error_kind=VerificationErrorKind.DISABLED
            )

        try:
            body = await self._query_api(f"numCedula:{normalized}")
        except RegistryError as e:
            timed_out = isinstance(e, RegistryTimeoutError)
            logger.warning("Registry lookup failed for license %s: %s",
                           sanitize_for_logging(normalized), e)
            return VerificationResult(
                is_valid=True,
                is_verified=False,
                source=VerificationSource.FORMAT_ONLY,
                error="Registry timeout, license not verified" if timed_out
                else "Registry connection error, license not verified",
                error_kind=VerificationErrorKind.TIMEOUT if timed_out else VerificationErrorKind.CONNECTION_ERROR
            )

        if body['numFound'] == 0 or not body['docs']:
            result = VerificationResult(
                is_valid=False,
                is_verified=True,
                source=VerificationSource.LIVE_API,
                error="License not found in registry",
                error_kind=VerificationErrorKind.NOT_FOUND
            )
            await self._set_cached(normalized, result)
            return result

        doc = body['docs'][0]
        score = doc.get('score')
        result = VerificationResult(
            is_valid=True,
            is_verified=True,
            source=VerificationSource.LIVE_API,
            record=RegistryRecord.from_document(doc),
            match_score=float(score) if isinstance(score, (int, float)) else None
        )
        await self._set_cached(normalized, result)
        return result

    async def search_by_name(
        self,
        first_name: str,
        paternal_name: Optional[str] = None,
        maternal_name: Optional[str] = None
    ) -> List[RegistryRecord]:
        """Free-text search by name; empty list when disabled or on error"""
        if not self.config.enabled:
            return []

        query = " ".join(part for part in (first_name, paternal_name, maternal_name) if part)
        if not query.strip():
            return []

        try:
            body = await self._query_api(query)
        except RegistryError as e:
            logger.error("Registry name search failed: %s", e)
            return []

        return [RegistryRecord.from_document(doc) for doc in body['docs']]

    async def verify_health_professional(
        self,
        license_number: Optional[str],
        expected_name: Optional[str] = None
    ) -> HealthProfessionalCheck:
        """Verify a license and classify it as a health profession

        ``verification`` is always set so callers can tell an authoritative
        NOT_FOUND apart from an unavailable registry.
        """
        result = await self.verify_by_number(license_number)

        if not result.is_valid or result.record is None:
            return HealthProfessionalCheck(
                is_health_professional=False,
                matches_name=False,
                verification=result
            )

        record = result.record
        return HealthProfessionalCheck(
            is_health_professional=is_health_title(record.title),
            matches_name=name_matches(record, expected_name),
            specialty=record.title,
            details=record,
            verification=result
        )

    async def _query_api(self, query: str) -> Dict[str, Any]:
        """Run one registry query and return the Solr ``response`` object

        Raises:
            RegistryTimeoutError: The query exceeded timeout_ms
            RegistryError: Transport failure, non-200 status or malformed body
        """
        params = {
            'q': query,
            'fl': '*,score',
            'start': '0',
            'rows': str(self.config.rows),
            'wt': 'json',
        }
        timeout = self.timeout_seconds

        try:
            response = await asyncio.wait_for(
                self._client.get(
                    self.config.base_url,
                    params=params,
                    headers={'Accept': 'application/json'},
                    timeout=timeout
                ),
                timeout=timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise RegistryTimeoutError(f"Registry did not answer within {self.config.timeout_ms}ms") from e
        except httpx.HTTPError as e:
            raise RegistryError(f"Registry request failed: {e}") from e

        if response.status_code != 200:
            raise RegistryError(f"Registry responded with status {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise RegistryError("Registry returned malformed JSON") from e

        body = data.get('response') if isinstance(data, dict) else None
        if not isinstance(body, dict) or not isinstance(body.get('numFound'), int):
            raise RegistryError("Registry response missing 'response.numFound'")

        docs = body.get('docs') or []
        if not isinstance(docs, list):
            raise RegistryError("Registry response 'docs' is not a list")

        return {'numFound': body['numFound'], 'docs': [doc for doc in docs if isinstance(doc, dict)]}

    async def _get_cached(self, normalized: str) -> Optional[VerificationResult]:
        data = await self.cache.get(normalized, prefix=CachePrefix.LICENSE_REGISTRY)
        if not data:
            return None
        try:
            return VerificationResult.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.warning("Discarding unreadable cache entry for license %s: %s", normalized, e)
            await self.cache.delete(normalized, prefix=CachePrefix.LICENSE_REGISTRY)
            return None

    async def _set_cached(self, normalized: str, result: VerificationResult) -> None:
        await self.cache.set(
            normalized,
            result.to_dict(),
            prefix=CachePrefix.LICENSE_REGISTRY,
            ttl_seconds=self.config.cache_ttl_seconds
        )
