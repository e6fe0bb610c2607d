"""
Stream route endpoints.

REST API endpoints for TLS-SNI routes: connections on the public port are
matched by server name and passed through, still encrypted, to a backend.
"""

import logging

from fastapi import APIRouter

from core.errors import GatewayError
from core.site_manager import get_site_manager
from endpoints.responses import http_error, mutation_error, mutation_ok
from models.common import MutationResponse
from models.proxy import StreamRoute, StreamRouteListResponse, StreamToggleResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stream", tags=["Stream Routes"])


@router.get(
    "",
    response_model=StreamRouteListResponse,
    summary="List Stream Routes",
)
async def list_routes() -> StreamRouteListResponse:
    return StreamRouteListResponse(routes=get_site_manager().list_routes())


@router.post(
    "",
    response_model=MutationResponse,
    summary="Save Stream Route",
    description="Create or replace an SNI route (upsert by id; the id defaults to the domain).",
)
async def save_route(route: StreamRoute):
    try:
        await get_site_manager().save_route(route)
    except GatewayError as e:
        return mutation_error(e, route.id)
    return mutation_ok(route.id)


@router.get(
    "/{route_id}",
    response_model=StreamRoute,
    summary="Get Stream Route",
    responses={404: {"description": "Route not found"}},
)
async def get_route(route_id: str) -> StreamRoute:
    try:
        return get_site_manager().get_route(route_id)
    except GatewayError as e:
        raise http_error(e)


@router.delete(
    "/{route_id}",
    response_model=MutationResponse,
    summary="Delete Stream Route",
)
async def delete_route(route_id: str):
    try:
        await get_site_manager().delete_route(route_id)
    except GatewayError as e:
        return mutation_error(e, route_id)
    return mutation_ok(route_id)


@router.post(
    "/{route_id}/toggle",
    response_model=StreamToggleResponse,
    summary="Enable or Disable Stream Route",
    description="Flip a route's `enabled` flag. Disabled routes are kept but left out of the gateway config.",
)
async def toggle_route(route_id: str):
    try:
        route = await get_site_manager().toggle_route(route_id)
    except GatewayError as e:
        return mutation_error(e, route_id)
    return StreamToggleResponse(success=True, id=route.id, enabled=route.enabled)
