"""
DNS provider models for DNS-01 challenge credentials.

Each provider kind requires its own credential shape. The shapes form a
closed set keyed by ProviderType; the registry validates against it before
anything is stored, and the ACME issuer turns a validated config into the
environment the ACME client expects.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProviderType(str, Enum):
    """Supported DNS API kinds."""
    ALIDNS = "alidns"
    TENCENTCLOUD = "tencentcloud"
    CLOUDFLARE = "cloudflare"


class _ProviderConfigBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    @property
    def lego_provider(self) -> str:
        raise NotImplementedError

    def env_vars(self) -> Dict[str, str]:
        raise NotImplementedError


class AliDNSConfig(_ProviderConfigBase):
    """Aliyun DNS credentials."""

    access_key_id: str = Field(..., min_length=1, alias="accessKeyId")
    access_key_secret: str = Field(..., min_length=1, alias="accessKeySecret")
    region_id: Optional[str] = Field(None, alias="regionId", description="Defaults to cn-hangzhou on the provider side")

    @property
    def lego_provider(self) -> str:
        return ProviderType.ALIDNS.value

    def env_vars(self) -> Dict[str, str]:
        env = {
            "ALICLOUD_ACCESS_KEY": self.access_key_id,
            "ALICLOUD_SECRET_KEY": self.access_key_secret,
        }
        if self.region_id:
            env["ALICLOUD_REGION_ID"] = self.region_id
        return env


class TencentCloudConfig(_ProviderConfigBase):
    """Tencent Cloud DNS credentials."""

    secret_id: str = Field(..., min_length=1, alias="secretId")
    secret_key: str = Field(..., min_length=1, alias="secretKey")

    @property
    def lego_provider(self) -> str:
        return ProviderType.TENCENTCLOUD.value

    def env_vars(self) -> Dict[str, str]:
        return {
            "TENCENTCLOUD_SECRET_ID": self.secret_id,
            "TENCENTCLOUD_SECRET_KEY": self.secret_key,
        }


class CloudflareConfig(_ProviderConfigBase):
    """
    Cloudflare credentials.

    Either a scoped API token (preferred) or the global API key together
    with the account email.
    """

    api_token: Optional[str] = Field(None, alias="apiToken")
    email: Optional[str] = Field(None)
    api_key: Optional[str] = Field(None, alias="apiKey")

    @model_validator(mode="after")
    def validate_credentials(self) -> "CloudflareConfig":
        if self.api_token:
            return self
        if self.api_key and self.email:
            return self
        raise ValueError("api_token, or both email and api_key, are required")

    @property
    def lego_provider(self) -> str:
        return ProviderType.CLOUDFLARE.value

    def env_vars(self) -> Dict[str, str]:
        if self.api_token:
            return {"CF_DNS_API_TOKEN": self.api_token}
        return {"CF_API_EMAIL": self.email, "CF_API_KEY": self.api_key}


ProviderConfig = Union[AliDNSConfig, TencentCloudConfig, CloudflareConfig]

PROVIDER_CONFIG_TYPES: Dict[ProviderType, type] = {
    ProviderType.ALIDNS: AliDNSConfig,
    ProviderType.TENCENTCLOUD: TencentCloudConfig,
    ProviderType.CLOUDFLARE: CloudflareConfig,
}


class DNSProvider(BaseModel):
    """A stored DNS provider with its decoded credentials."""

    id: str
    name: str
    type: ProviderType
    config: ProviderConfig
    created_at: datetime
    updated_at: datetime


# Request Models

class DNSProviderCreateRequest(BaseModel):
    """Request to register a DNS provider."""

    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    type: str = Field(..., description="Provider kind: alidns, tencentcloud or cloudflare")
    config: Dict[str, Optional[str]] = Field(..., description="Provider-specific credentials")


class DNSProviderUpdateRequest(BaseModel):
    """Partial update of a DNS provider."""

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    type: Optional[str] = None
    config: Optional[Dict[str, Optional[str]]] = None


# Response Models

class DNSProviderResponse(BaseModel):
    """Provider summary; credentials are never returned."""

    id: str
    name: str
    type: ProviderType
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_provider(cls, provider: DNSProvider) -> "DNSProviderResponse":
        return cls(
            id=provider.id,
            name=provider.name,
            type=provider.type,
            created_at=provider.created_at,
            updated_at=provider.updated_at,
        )


class DNSProviderListResponse(BaseModel):
    providers: list[DNSProviderResponse]
