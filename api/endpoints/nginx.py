"""
NGINX control endpoints.

REST API endpoints for testing and reloading the gateway, regenerating its
configuration from stored records, and editing the nginx.conf template
parameters.

Every change that writes configuration goes through the reload coordinator:
it is staged, tested with nginx -t, and only then promoted and reloaded.
"""

import logging

from fastapi import APIRouter, HTTPException

from core.errors import GatewayError
from core.reload_coordinator import get_reload_coordinator
from core.site_manager import get_site_manager
from endpoints.responses import http_error, mutation_error, mutation_ok
from models.common import CommandOutputResponse, MutationResponse
from models.proxy import PreviewResponse, TemplateParams

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/nginx", tags=["NGINX Control"])


@router.post(
    "/test",
    response_model=CommandOutputResponse,
    summary="Test NGINX Configuration",
    description="Run `nginx -t` against the live configuration without changing anything.",
)
async def test_nginx() -> CommandOutputResponse:
    try:
        ok, output = await get_reload_coordinator().test()
    except GatewayError as e:
        raise http_error(e)
    return CommandOutputResponse(success=ok, output=output)


@router.post(
    "/reload",
    response_model=CommandOutputResponse,
    summary="Reload NGINX Configuration",
    description="""
    Send a graceful reload (`nginx -s reload`) to the running gateway.

    Existing connections are preserved. Changes made through this API are
    reloaded automatically; this is for edits made outside it.
    """,
)
async def reload_nginx() -> CommandOutputResponse:
    ok, output = await get_reload_coordinator().reload()
    return CommandOutputResponse(success=ok, output=output)


@router.post(
    "/regenerate",
    response_model=MutationResponse,
    summary="Regenerate All Configuration",
    description="""
    Re-render nginx.conf, every proxy site and the stream routes from the
    stored records, and apply them as one change.

    If the result fails `nginx -t`, nothing is written.
    """,
)
async def regenerate_config():
    try:
        await get_site_manager().regenerate()
    except GatewayError as e:
        return mutation_error(e)
    return mutation_ok()


@router.get(
    "/template-params",
    response_model=TemplateParams,
    summary="Get nginx.conf Parameters",
)
async def get_template_params() -> TemplateParams:
    return get_site_manager().get_template_params()


@router.post(
    "/template-params",
    response_model=MutationResponse,
    summary="Save nginx.conf Parameters",
    description="Render nginx.conf with new parameters, test it, and apply it.",
)
async def save_template_params(params: TemplateParams):
    try:
        await get_site_manager().save_template_params(params)
    except GatewayError as e:
        return mutation_error(e)
    return mutation_ok()


@router.get(
    "/main-config",
    response_model=PreviewResponse,
    summary="Show nginx.conf",
    responses={404: {"description": "nginx.conf has not been generated"}},
)
async def get_main_config() -> PreviewResponse:
    content = get_site_manager().main_config()
    if content is None:
        raise HTTPException(status_code=404, detail="nginx.conf has not been generated")
    return PreviewResponse(content=content)
