"""
Proxy site endpoints.

REST API endpoints for HTTP reverse-proxy sites. Saving or deleting a site
regenerates its configuration, tests it with nginx -t and reloads the
gateway; the record is only stored when that succeeds.
"""

import logging

from fastapi import APIRouter

from core.errors import GatewayError
from core.site_manager import get_site_manager
from endpoints.responses import http_error, mutation_error, mutation_ok
from models.common import MutationResponse
from models.proxy import PreviewResponse, ProxySite, ProxySiteListResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/proxy", tags=["Proxy Sites"])


@router.get(
    "",
    response_model=ProxySiteListResponse,
    summary="List Proxy Sites",
)
async def list_sites() -> ProxySiteListResponse:
    return ProxySiteListResponse(sites=get_site_manager().list_sites())


@router.post(
    "",
    response_model=MutationResponse,
    summary="Save Proxy Site",
    description="""
    Create or replace a proxy site (upsert by id; the id defaults to the
    server name with unsafe characters replaced by `_`).

    With `ssl` enabled the site needs either `certificate_id` pointing at an
    active certificate, or explicit `ssl_cert` and `ssl_key` paths.
    """,
    responses={
        400: {"description": "Invalid site or no usable certificate"},
        422: {"description": "Generated configuration failed nginx -t"},
    },
)
async def save_site(site: ProxySite):
    try:
        await get_site_manager().save_site(site)
    except GatewayError as e:
        return mutation_error(e, site.id)
    return mutation_ok(site.id)


@router.post(
    "/preview",
    response_model=PreviewResponse,
    summary="Preview Proxy Site Config",
    description="Render the configuration a site would get, without writing anything.",
)
async def preview_site(site: ProxySite) -> PreviewResponse:
    try:
        content = await get_site_manager().preview_site(site)
    except GatewayError as e:
        raise http_error(e)
    return PreviewResponse(content=content)


@router.get(
    "/{site_id}",
    response_model=ProxySite,
    summary="Get Proxy Site",
    responses={404: {"description": "Site not found"}},
)
async def get_site(site_id: str) -> ProxySite:
    try:
        return get_site_manager().get_site(site_id)
    except GatewayError as e:
        raise http_error(e)


@router.delete(
    "/{site_id}",
    response_model=MutationResponse,
    summary="Delete Proxy Site",
)
async def delete_site(site_id: str):
    try:
        await get_site_manager().delete_site(site_id)
    except GatewayError as e:
        return mutation_error(e, site_id)
    return mutation_ok(site_id)
