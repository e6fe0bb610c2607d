"""
Certificate models for DNS-01 managed TLS certificates.

Provides Pydantic models for certificate records, their lifecycle log,
and the request/response shapes of the certificate API.
"""

import re
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, List

from pydantic import BaseModel, Field

# RFC 1123 labels; a leading "*." is allowed for wildcard names
HOSTNAME_PATTERN = re.compile(
    r"^(\*\.)?([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)*[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$"
)


def normalize_hostname(value: str, allow_wildcard: bool = True) -> str:
    """
    Lowercase and validate a hostname.

    Raises:
        ValueError: If the name is empty or not a valid hostname
    """
    name = (value or "").strip().lower()
    if not name:
        raise ValueError("Domain cannot be empty")
    if len(name) > 253:
        raise ValueError(f"Domain too long: {name}")
    if name.startswith("*.") and not allow_wildcard:
        raise ValueError(f"Wildcard not allowed: {name}")
    if not HOSTNAME_PATTERN.match(name):
        raise ValueError(f"Invalid domain format: {name}")
    return name


class CertificateStatus(str, Enum):
    """Certificate lifecycle status."""
    PENDING = "pending"    # Issuance or renewal in progress
    ACTIVE = "active"      # Material present and valid
    EXPIRED = "expired"    # Derived at read time from not_after, never stored
    ERROR = "error"        # Last attempt failed


class CertificateLogAction(str, Enum):
    """Kinds of certificate lifecycle log entries."""
    CREATE = "create"
    RENEW = "renew"
    ERROR = "error"
    CLEANUP = "cleanup"


class Certificate(BaseModel):
    """
    Represents a managed certificate.

    Used for both database storage and API responses.
    """
    id: str = Field(..., description="Unique certificate identifier")
    domain: str = Field(..., description="Primary domain, always domains[0]")
    domains: List[str] = Field(..., description="All names on the certificate, primary first")
    dns_provider_id: Optional[str] = Field(None, description="DNS provider used for the DNS-01 challenge")
    status: CertificateStatus = Field(default=CertificateStatus.PENDING)

    # Installed material
    cert_path: Optional[str] = Field(None, description="Path to the installed full chain")
    key_path: Optional[str] = Field(None, description="Path to the installed private key")

    # Certificate details
    issuer: Optional[str] = Field(None, description="Issuer common name")
    not_before: Optional[datetime] = Field(None, description="Certificate valid from")
    not_after: Optional[datetime] = Field(None, description="Certificate expiry date")

    error: Optional[str] = Field(None, description="Message from the last failed attempt")
    auto_renew: bool = Field(default=True, description="Whether the renewal sweep picks this up")
    last_renew_at: Optional[datetime] = Field(None, description="Last successful issue or renewal")

    created_at: datetime
    updated_at: datetime

    @property
    def days_remaining(self) -> Optional[int]:
        """Whole days until expiry, negative once expired."""
        if self.not_after is None:
            return None
        not_after = self.not_after
        if not_after.tzinfo is None:
            not_after = not_after.replace(tzinfo=timezone.utc)
        return (not_after - datetime.now(timezone.utc)).days

    @property
    def has_material(self) -> bool:
        return bool(self.cert_path and self.key_path)


class CertificateLog(BaseModel):
    """One append-only lifecycle log entry."""

    id: str
    certificate_id: str
    action: CertificateLogAction
    message: str
    created_at: datetime


# Request Models

class CertificateIssueRequest(BaseModel):
    """Request to issue a certificate via DNS-01."""

    domains: List[str] = Field(
        ...,
        max_length=100,
        description="Domains to cover, primary first"
    )
    dns_provider_id: str = Field(..., min_length=1, description="DNS provider for the challenge")
    email: Optional[str] = Field(
        None,
        description="ACME account email; falls back to ACME_ACCOUNT_EMAIL"
    )


class CertificateRenewRequest(BaseModel):
    """Request to renew an existing certificate."""

    email: Optional[str] = Field(
        None,
        description="ACME account email; falls back to ACME_ACCOUNT_EMAIL"
    )


class CertificateAutoRenewRequest(BaseModel):
    enabled: bool


# Response Models

class CertificateResponse(BaseModel):
    """Full certificate details for API response."""

    id: str
    domain: str
    domains: List[str]
    dns_provider_id: Optional[str] = None
    status: CertificateStatus

    issuer: Optional[str] = None
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    days_remaining: Optional[int] = None

    cert_path: Optional[str] = None
    key_path: Optional[str] = None

    error: Optional[str] = None
    auto_renew: bool = True
    last_renew_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_certificate(cls, cert: Certificate) -> "CertificateResponse":
        """Create response from Certificate model."""
        return cls(
            id=cert.id,
            domain=cert.domain,
            domains=cert.domains,
            dns_provider_id=cert.dns_provider_id,
            status=cert.status,
            issuer=cert.issuer,
            not_before=cert.not_before,
            not_after=cert.not_after,
            days_remaining=cert.days_remaining,
            cert_path=cert.cert_path,
            key_path=cert.key_path,
            error=cert.error,
            auto_renew=cert.auto_renew,
            last_renew_at=cert.last_renew_at,
            created_at=cert.created_at,
            updated_at=cert.updated_at,
        )


class CertificateListResponse(BaseModel):
    certificates: List[CertificateResponse]
    total: int


class CertificateLogListResponse(BaseModel):
    logs: List[CertificateLog]

