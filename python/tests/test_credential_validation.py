"""
Tests for credential assessment and trust levels
"""

import httpx
import pytest

from credential_validation import (
    CredentialErrorKind,
    CredentialEvaluator,
    RolePolicy,
    TrustLevel,
    classify_role,
    get_access_trust_level,
    get_alert_message_for_trust_level,
    name_similarity,
    validate_professional_credentials,
)
from registry_client import VerificationErrorKind

from conftest import DOCTOR_DOC, RegistryStub, make_registry_client


class TestTrustLevelOrder:

    def test_total_order(self):
        ordered = [TrustLevel.UNVERIFIED, TrustLevel.LOW, TrustLevel.MEDIUM, TrustLevel.HIGH, TrustLevel.VERIFIED]
        assert sorted(reversed(ordered)) == ordered
        assert TrustLevel.VERIFIED > TrustLevel.HIGH
        assert TrustLevel.LOW <= TrustLevel.LOW
        assert TrustLevel.UNVERIFIED < TrustLevel.LOW

    def test_roles_are_case_insensitive(self):
        assert classify_role("doctor") is RolePolicy.REQUIRES_LICENSE
        assert classify_role(" Paramedic ") is RolePolicy.LICENSE_RECOMMENDED
        assert classify_role("VOLUNTEER") is RolePolicy.NO_LICENSE_REQUIRED


class TestFormatOnlyValidation:

    def test_doctor_without_license_is_invalid(self):
        result = validate_professional_credentials("DOCTOR", None, "Hospital X")
        assert result.is_valid is False
        assert result.error_kinds == [CredentialErrorKind.LICENSE_REQUIRED]

    def test_nurse_with_bad_format_is_invalid(self):
        result = validate_professional_credentials("NURSE", "12AB", "Hospital X")
        assert result.is_valid is False
        assert result.error_kinds == [CredentialErrorKind.INVALID_FORMAT]

    def test_doctor_with_valid_format_warns_not_checked(self):
        result = validate_professional_credentials("DOCTOR", "1234 567", "Hospital X")
        assert result.is_valid is True
        assert result.is_verified is False
        assert any("not checked" in w for w in result.warnings)

    def test_paramedic_without_license_only_warns(self):
        result = validate_professional_credentials("PARAMEDIC", None, None)
        assert result.is_valid is True
        assert any("recommended" in w for w in result.warnings)
        assert "No institution name provided" in result.warnings

    def test_other_role_with_bad_license_only_warns(self):
        result = validate_professional_credentials("OTHER", "abc", "Cruz Roja")
        assert result.is_valid is True
        assert "Invalid professional license format" in result.warnings


class TestSyncTrustLevel:

    @pytest.mark.parametrize("role,license_number,institution,expected", [
        ("DOCTOR", None, None, TrustLevel.UNVERIFIED),
        ("DOCTOR", "1234567", "Hospital X", TrustLevel.HIGH),
        ("DOCTOR", "1234567", None, TrustLevel.MEDIUM),
        ("NURSE", "12", "Hospital X", TrustLevel.UNVERIFIED),
        ("PARAMEDIC", "1234567", "Cruz Roja", TrustLevel.HIGH),
        ("PARAMEDIC", None, "Cruz Roja", TrustLevel.MEDIUM),
        ("PARAMEDIC", None, None, TrustLevel.LOW),
        ("OTHER", None, "Escuela", TrustLevel.LOW),
        ("OTHER", None, None, TrustLevel.UNVERIFIED),
    ])
    def test_levels(self, role, license_number, institution, expected):
        assert get_access_trust_level(role, license_number, institution) is expected

    def test_never_verified_without_registry(self):
        assert get_access_trust_level("DOCTOR", "12345678", "Hospital X") < TrustLevel.VERIFIED


class TestRegistryBackedEvaluation:

    @pytest.fixture
    def evaluator(self, registry_client):
        return CredentialEvaluator(registry_client)

    @pytest.mark.asyncio
    async def test_registry_match_is_verified(self, evaluator):
        evaluation = await evaluator.evaluate("DOCTOR", "1234567", "Maria Lopez", "Hospital X")
        assert evaluation.trust_level is TrustLevel.VERIFIED
        details = evaluation.assessment.registry_details
        assert details.found is True
        assert details.professional_name == "MARIA LOPEZ GARCIA"
        assert details.name_similarity is not None

    @pytest.mark.asyncio
    async def test_name_mismatch_is_high_with_warning(self, evaluator):
        evaluation = await evaluator.evaluate("DOCTOR", "1234567", "Pedro Sanchez", "Hospital X")
        assert evaluation.trust_level is TrustLevel.HIGH
        assert evaluation.assessment.registry_details.name_matches is False
        assert any("does not match" in w for w in evaluation.assessment.warnings)

    @pytest.mark.asyncio
    async def test_non_health_title_is_high(self):
        doc = dict(DOCTOR_DOC, numCedula='2345678', titulo='LICENCIADO EN DERECHO')
        evaluator = CredentialEvaluator(make_registry_client(RegistryStub({'2345678': doc})))
        evaluation = await evaluator.evaluate("DOCTOR", "2345678", "Maria Lopez", "Hospital X")
        assert evaluation.trust_level is TrustLevel.HIGH
        assert any("not a health profession" in w for w in evaluation.assessment.warnings)

    @pytest.mark.asyncio
    async def test_registry_miss_rejects(self, evaluator):
        evaluation = await evaluator.evaluate("DOCTOR", "1234 560", "Maria Lopez", "Hospital X")
        assessment = evaluation.assessment
        assert assessment.is_valid is False
        assert assessment.is_verified is True
        assert evaluation.trust_level is TrustLevel.UNVERIFIED
        assert any("not found" in e for e in assessment.errors)
        assert CredentialErrorKind.NOT_FOUND_IN_REGISTRY in assessment.error_kinds

    @pytest.mark.asyncio
    async def test_registry_outage_keeps_access(self):
        stub = RegistryStub(error=httpx.ConnectError("down"))
        evaluator = CredentialEvaluator(make_registry_client(stub))
        evaluation = await evaluator.evaluate("DOCTOR", "1234567", "Maria Lopez", "Hospital X")
        assessment = evaluation.assessment
        assert assessment.is_valid is True
        assert assessment.is_verified is False
        assert assessment.registry_error is VerificationErrorKind.CONNECTION_ERROR
        assert evaluation.trust_level is TrustLevel.MEDIUM
        summary = assessment.registry_summary()
        assert summary["verified"] is False
        assert summary["unavailableReason"] == "CONNECTION_ERROR"

    @pytest.mark.asyncio
    async def test_disabled_registry_without_institution_is_low(self, registry_stub):
        evaluator = CredentialEvaluator(make_registry_client(registry_stub, enabled=False))
        level = await evaluator.get_access_trust_level_async("NURSE", "1234567", "Ana")
        assert level is TrustLevel.LOW
        assert registry_stub.calls == 0

    @pytest.mark.asyncio
    async def test_other_role_with_institution_is_low(self, evaluator, registry_stub):
        evaluation = await evaluator.evaluate("OTHER", None, "Luis", "Protección Civil")
        assert evaluation.assessment.is_valid is True
        assert evaluation.trust_level is TrustLevel.LOW
        assert registry_stub.calls == 0

    @pytest.mark.asyncio
    async def test_doctor_without_license_is_unverified(self, evaluator):
        evaluation = await evaluator.evaluate("DOCTOR", None, "Luis", "Hospital X")
        assert evaluation.assessment.is_valid is False
        assert evaluation.trust_level is TrustLevel.UNVERIFIED

    @pytest.mark.asyncio
    async def test_registry_queried_once_per_evaluation(self, evaluator, registry_stub):
        await evaluator.evaluate("DOCTOR", "1234567", "Maria Lopez", "Hospital X")
        assert registry_stub.calls == 1


class TestHelpers:

    def test_name_similarity_is_order_insensitive(self):
        assert name_similarity("Lopez Garcia Maria", "MARIA LOPEZ GARCIA") == 100.0

    def test_name_similarity_without_claimed_name(self):
        assert name_similarity(None, "MARIA LOPEZ") is None

    @pytest.mark.parametrize("level,fragment", [
        (TrustLevel.VERIFIED, "VERIFIED"),
        (TrustLevel.HIGH, "credentials verified"),
        (TrustLevel.MEDIUM, "partially verified"),
        (TrustLevel.LOW, "no professional license"),
        (TrustLevel.UNVERIFIED, "NO VERIFIABLE CREDENTIALS"),
    ])
    def test_alert_messages(self, level, fragment):
        message = get_alert_message_for_trust_level(level, "Maria Lopez", "DOCTOR")
        assert fragment in message
        assert "Maria Lopez" in message
