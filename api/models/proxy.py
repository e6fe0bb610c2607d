"""
Gateway routing models: HTTP reverse-proxy sites, TLS-SNI stream routes,
and the tunable parameters of the generated nginx.conf.

Values here end up verbatim in generated configuration, so every field
that reaches a template is restricted to characters that cannot break out
of a directive.
"""

import re
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from config import settings
from models.certificate import normalize_hostname
from models.common import MutationResponse

ID_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")
HOST_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$|^\[[0-9A-Fa-f:.]+\]$")
PATH_UNSAFE = re.compile(r"[\s;{}'\"]")
SIZE_PATTERN = re.compile(r"^\d+[kKmMgG]?$")


def sanitize_id(value: str) -> str:
    """Derive a record id from a hostname: anything outside [A-Za-z0-9._-] becomes _."""
    return re.sub(r"[^A-Za-z0-9._-]", "_", value)


def _validate_id(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    if not ID_PATTERN.match(value):
        raise ValueError(f"Invalid id: {value} (use letters, digits, '.', '_' or '-', not starting with '.')")
    return value


def _validate_host(value: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError("Host cannot be empty")
    if not HOST_PATTERN.match(value):
        raise ValueError(f"Invalid host: {value}")
    return value


class ProxySite(BaseModel):
    """An HTTP reverse-proxy site served behind the SNI router."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(None, description="Record id; derived from server_name when omitted")
    server_name: str = Field(..., alias="serverName", description="Host name this site answers for")
    ssl: bool = Field(default=False, description="Terminate TLS in this site")
    ssl_cert: Optional[str] = Field(None, alias="sslCert", description="Certificate path used when no certificate_id is set")
    ssl_key: Optional[str] = Field(None, alias="sslKey", description="Key path used when no certificate_id is set")
    certificate_id: Optional[str] = Field(None, alias="certificateId", description="Managed certificate to serve")

    upstream_scheme: Literal["http", "https"] = Field(default="http", alias="upstreamScheme")
    upstream_host: str = Field(..., alias="upstreamHost")
    upstream_port: int = Field(..., ge=1, le=65535, alias="upstreamPort")

    websocket: bool = Field(default=False, description="Forward WebSocket upgrades")
    auth_enabled: bool = Field(default=False, alias="authEnabled", description="Require a session via auth_request")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: Optional[str]) -> Optional[str]:
        return _validate_id(v)

    @field_validator("server_name")
    @classmethod
    def validate_server_name(cls, v: str) -> str:
        return normalize_hostname(v)

    @field_validator("upstream_host")
    @classmethod
    def validate_upstream_host(cls, v: str) -> str:
        return _validate_host(v)

    @field_validator("ssl_cert", "ssl_key", "certificate_id")
    @classmethod
    def validate_path(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v.strip() == "":
            return None
        if PATH_UNSAFE.search(v):
            raise ValueError(f"Invalid characters in: {v}")
        return v.strip()

    @model_validator(mode="after")
    def derive_id(self) -> "ProxySite":
        if not self.id:
            self.id = sanitize_id(self.server_name)
        return self


class StreamRoute(BaseModel):
    """A TLS-SNI route: connections for `domain` are passed through to `backend`."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(None, description="Record id; derived from domain when omitted")
    name: str = Field(default="", max_length=200, description="Display name or note")
    domain: str = Field(..., description="SNI name to match; *.example.com allowed")
    backend: str = Field(..., description="host:port to pass the raw TLS stream to")
    enabled: bool = Field(default=True)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: Optional[str]) -> Optional[str]:
        return _validate_id(v)

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        return normalize_hostname(v)

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        v = (v or "").strip()
        host, sep, port = v.rpartition(":")
        if not sep or not host:
            raise ValueError(f"Backend must be host:port, got: {v}")
        _validate_host(host)
        if not port.isdigit() or not 1 <= int(port) <= 65535:
            raise ValueError(f"Backend port must be 1-65535, got: {port}")
        return v

    @model_validator(mode="after")
    def derive_id(self) -> "StreamRoute":
        if not self.id:
            self.id = sanitize_id(self.domain)
        return self


class TemplateParams(BaseModel):
    """Tunable values of the generated nginx.conf."""

    model_config = ConfigDict(populate_by_name=True)

    worker_processes: str = Field(
        default_factory=lambda: settings.worker_processes,
        alias="workerProcesses",
        description="'auto' or a process count",
    )
    worker_connections: int = Field(
        default_factory=lambda: settings.worker_connections, ge=1, alias="workerConnections"
    )
    keepalive: int = Field(default_factory=lambda: settings.keepalive, ge=0, description="keepalive_timeout seconds")
    client_max_body_size: str = Field(
        default_factory=lambda: settings.client_max_body_size, alias="clientMaxBodySize"
    )
    gzip: bool = Field(default_factory=lambda: settings.gzip)
    server_tokens: bool = Field(default_factory=lambda: settings.server_tokens, alias="serverTokens")

    @field_validator("worker_processes")
    @classmethod
    def validate_worker_processes(cls, v: str) -> str:
        v = str(v).strip()
        if v != "auto" and not (v.isdigit() and int(v) > 0):
            raise ValueError("worker_processes must be 'auto' or a positive integer")
        return v

    @field_validator("client_max_body_size")
    @classmethod
    def validate_body_size(cls, v: str) -> str:
        v = v.strip()
        if not SIZE_PATTERN.match(v):
            raise ValueError(f"Invalid size: {v} (e.g. 100m, 1g, 512k)")
        return v


# Response Models

class ProxySiteListResponse(BaseModel):
    sites: List[ProxySite]


class StreamRouteListResponse(BaseModel):
    routes: List[StreamRoute]


class PreviewResponse(BaseModel):
    """Rendered configuration text; nothing is written."""

    content: str


class StreamToggleResponse(MutationResponse):
    enabled: Optional[bool] = None
