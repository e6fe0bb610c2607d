"""
DNS provider endpoints.

REST API endpoints for registering the DNS API credentials used to answer
DNS-01 challenges. Credentials are write-only: no endpoint returns them.
"""

import logging

from fastapi import APIRouter, HTTPException

from core.dns_providers import get_dns_provider_registry
from core.errors import GatewayError
from endpoints.responses import http_error, mutation_error, mutation_ok
from models.common import MutationResponse
from models.dns_provider import (
    DNSProviderCreateRequest,
    DNSProviderListResponse,
    DNSProviderResponse,
    DNSProviderUpdateRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dns-providers", tags=["DNS Providers"])


@router.get(
    "",
    response_model=DNSProviderListResponse,
    summary="List DNS Providers",
)
async def list_dns_providers() -> DNSProviderListResponse:
    """List registered DNS providers without their credentials."""
    providers = await get_dns_provider_registry().list_providers()
    return DNSProviderListResponse(providers=[DNSProviderResponse.from_provider(p) for p in providers])


@router.post(
    "",
    response_model=MutationResponse,
    summary="Register DNS Provider",
    description="""
    Register DNS API credentials for DNS-01 challenges.

    **Supported types and config fields:**
    - `alidns`: `access_key_id`, `access_key_secret`, optional `region_id`
    - `tencentcloud`: `secret_id`, `secret_key`
    - `cloudflare`: `api_token`, or `email` plus `api_key`
    """,
    responses={
        200: {"description": "Provider registered"},
        400: {"description": "Unsupported type or missing credentials"},
    },
)
async def create_dns_provider(request: DNSProviderCreateRequest):
    try:
        provider_id = await get_dns_provider_registry().create(request.name, request.type, request.config)
    except GatewayError as e:
        return mutation_error(e)
    return mutation_ok(provider_id)


@router.get(
    "/{provider_id}",
    response_model=DNSProviderResponse,
    summary="Get DNS Provider",
    responses={404: {"description": "Provider not found"}},
)
async def get_dns_provider(provider_id: str) -> DNSProviderResponse:
    try:
        provider = await get_dns_provider_registry().read(provider_id)
    except GatewayError as e:
        raise http_error(e)
    return DNSProviderResponse.from_provider(provider)


@router.put(
    "/{provider_id}",
    response_model=MutationResponse,
    summary="Update DNS Provider",
    description="""
    Partially update a DNS provider.

    Omitted fields keep their values. The resulting config is re-validated
    against the resulting type, so changing the type requires a matching
    config.
    """,
)
async def update_dns_provider(provider_id: str, request: DNSProviderUpdateRequest):
    if request.name is None and request.type is None and request.config is None:
        raise HTTPException(status_code=400, detail="Nothing to update")
    try:
        await get_dns_provider_registry().update(
            provider_id,
            name=request.name,
            provider_type=request.type,
            config=request.config,
        )
    except GatewayError as e:
        return mutation_error(e, provider_id)
    return mutation_ok(provider_id)


@router.delete(
    "/{provider_id}",
    response_model=MutationResponse,
    summary="Delete DNS Provider",
    description="""
    Delete a DNS provider.

    Certificates that still reference it keep working until their next
    renewal, which then fails with a not-found error.
    """,
)
async def delete_dns_provider(provider_id: str):
    try:
        await get_dns_provider_registry().delete(provider_id)
    except GatewayError as e:
        return mutation_error(e, provider_id)
    return mutation_ok(provider_id)
