"""
Pydantic request/response schemas for the VIDA emergency access API

The access request body is validated by emergency_access.validate_access_input
so that rate limiting runs before validation; EmergencyAccessRequest only
documents the body in OpenAPI.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class EmergencyAccessRequest(BaseModel):
    """Body of POST /api/v1/emergency/access."""
    qrToken: str = Field(..., description="UUID printed in the patient's QR code")
    accessorName: str = Field(..., max_length=100, description="Name of the person scanning")
    accessorRole: str = Field(..., max_length=50, description="DOCTOR, NURSE, PARAMEDIC, ...")
    accessorLicense: Optional[str] = Field(default=None, max_length=50, description="Professional license number")
    institutionId: Optional[str] = Field(default=None, description="Institution UUID")
    institutionName: Optional[str] = Field(default=None, max_length=200)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    locationName: Optional[str] = Field(default=None, max_length=200)


class RegistryVerification(BaseModel):
    """Registry outcome attached to a granted access."""
    verified: bool = False
    found: Optional[bool] = None
    professionalName: Optional[str] = None
    title: Optional[str] = None
    institution: Optional[str] = None
    yearRegistered: Optional[int] = None
    isHealthProfessional: Optional[bool] = None
    nameMatches: Optional[bool] = None
    nameSimilarity: Optional[float] = None
    unavailableReason: Optional[str] = None


class EmergencyAccessData(BaseModel):
    """Disclosure plus trust annotations."""
    patient: Dict[str, Any]
    medicalInfo: Dict[str, Any]
    donation: Dict[str, Any]
    accessToken: str = Field(..., description="Token for follow-up verification")
    expiresAt: str = Field(..., description="Token expiry (ISO 8601)")
    trustLevel: str = Field(..., description="VERIFIED, HIGH, MEDIUM, LOW or UNVERIFIED")
    credentialWarnings: List[str] = Field(default_factory=list)
    registryVerification: RegistryVerification = Field(default_factory=RegistryVerification)


class EmergencyAccessResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: EmergencyAccessData


class TokenVerificationData(BaseModel):
    valid: bool
    expiresAt: str
    accessedAt: str


class TokenVerificationResponse(BaseModel):
    success: bool = True
    data: TokenVerificationData


class AccessHistoryEntry(BaseModel):
    id: Optional[str] = None
    accessorName: Optional[str] = None
    accessorRole: Optional[str] = None
    institutionName: Optional[str] = None
    locationName: Optional[str] = None
    trustLevel: Optional[str] = None
    credentialsVerified: Optional[bool] = None
    accessedAt: Optional[str] = None
    dataAccessed: List[str] = Field(default_factory=list)


class AccessHistoryResponse(BaseModel):
    success: bool = True
    data: List[AccessHistoryEntry] = Field(default_factory=list)


class SecurityAlertResponse(BaseModel):
    type: str
    severity: str = Field(..., description="low, medium, high or critical")
    message: str
    timestamp: str
    context: Dict[str, Any] = Field(default_factory=dict)


class SecurityAlertsResponse(BaseModel):
    success: bool = True
    data: List[SecurityAlertResponse] = Field(default_factory=list)


class SecurityMetricsResponse(BaseModel):
    success: bool = True
    data: Dict[str, Any] = Field(..., description="Per-category counts, active alerts and top offending IPs")


class RegistryRecordResponse(BaseModel):
    licenseNumber: str
    fullName: str
    title: str
    institution: str
    yearRegistered: Optional[int] = None
    isHealthProfessional: bool


class RegistrySearchResponse(BaseModel):
    success: bool = True
    data: List[RegistryRecordResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="healthy or degraded")
    cache: Dict[str, Any] = Field(default_factory=dict, description="Cache backend status")
    registry: Dict[str, Any] = Field(default_factory=dict, description="Registry client settings")
    database: Optional[bool] = Field(default=None, description="Database reachable (None if not configured)")
    uptime_seconds: Optional[int] = Field(default=None, description="Server uptime in seconds")


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[List[str]] = Field(default=None, description="Additional reasons")
    field: Optional[str] = Field(default=None, description="Field that caused error")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    success: bool = False
    error: ErrorDetail
