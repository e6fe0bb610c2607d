"""
Certificate management endpoints.

REST API endpoints for issuing and renewing TLS certificates over the
DNS-01 challenge, inspecting their lifecycle log, and clearing stale
ACME client state.
"""

import logging
from typing import Optional

from fastapi import APIRouter

from core.cert_manager import get_cert_manager
from core.cert_scheduler import get_cert_scheduler
from core.errors import GatewayError
from endpoints.responses import http_error, mutation_error, mutation_ok
from models.certificate import (
    CertificateAutoRenewRequest,
    CertificateIssueRequest,
    CertificateListResponse,
    CertificateLogListResponse,
    CertificateRenewRequest,
    CertificateResponse,
)
from models.common import MutationResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/certificates", tags=["SSL Certificates"])


@router.get(
    "",
    response_model=CertificateListResponse,
    summary="List Certificates",
    description="""
    List all managed certificates.

    `status` is computed at read time: an active certificate past its
    expiry date is reported as `expired`.
    """,
)
async def list_certificates() -> CertificateListResponse:
    certs = await get_cert_manager().list_certificates()
    return CertificateListResponse(
        certificates=[CertificateResponse.from_certificate(c) for c in certs],
        total=len(certs),
    )


@router.post(
    "",
    response_model=MutationResponse,
    summary="Issue Certificate",
    description="""
    Issue a certificate for one or more domains via DNS-01.

    The first domain is the primary; wildcards (`*.example.com`) are allowed.
    If a certificate for the same primary domain exists it is reissued.

    **Failure types:**
    - `domain_conflict`: a stale challenge record exists; call cleanup, then retry
    - `provider_auth_failure`: fix the DNS provider credentials
    - `rate_limited`: the CA is throttling; wait before retrying
    - `issuer_failure`: any other ACME client error
    """,
    responses={
        200: {"description": "Certificate issued"},
        400: {"description": "Malformed domains or email"},
        404: {"description": "DNS provider not found"},
        409: {"description": "Operation in progress or DNS record conflict"},
    },
)
async def issue_certificate(request: CertificateIssueRequest):
    try:
        result = await get_cert_manager().issue(request.domains, request.dns_provider_id, request.email)
    except GatewayError as e:
        return mutation_error(e)

    if not result.success:
        return mutation_error(result.error, result.certificate.id)
    return mutation_ok(result.certificate.id)


@router.post(
    "/renewal-check",
    summary="Run Renewal Sweep",
    description="Renew every certificate with auto-renew on and fewer than 30 days left.",
)
async def run_renewal_check(request: Optional[CertificateRenewRequest] = None) -> dict:
    return await get_cert_scheduler().trigger_renewal_check(request.email if request else None)


@router.get(
    "/{certificate_id}",
    response_model=CertificateResponse,
    summary="Get Certificate Details",
    responses={404: {"description": "Certificate not found"}},
)
async def get_certificate(certificate_id: str) -> CertificateResponse:
    try:
        cert = await get_cert_manager().get_certificate(certificate_id)
    except GatewayError as e:
        raise http_error(e)
    return CertificateResponse.from_certificate(cert)


@router.post(
    "/{certificate_id}/renew",
    response_model=MutationResponse,
    summary="Renew Certificate",
    description="""
    Renew a certificate now.

    On failure the previously installed certificate files, and the expiry
    date recorded for them, are kept.
    """,
    responses={
        404: {"description": "Certificate not found"},
        409: {"description": "Operation already in progress"},
    },
)
async def renew_certificate(certificate_id: str, request: Optional[CertificateRenewRequest] = None):
    try:
        result = await get_cert_manager().renew(certificate_id, request.email if request else None)
    except GatewayError as e:
        return mutation_error(e, certificate_id)

    if not result.success:
        return mutation_error(result.error, certificate_id)
    if not result.renewed:
        not_after = result.certificate.not_after
        return mutation_ok(certificate_id, f"No renewal needed, valid until {not_after:%Y-%m-%d}")
    return mutation_ok(certificate_id)


@router.post(
    "/{certificate_id}/cleanup",
    response_model=MutationResponse,
    summary="Clean Up ACME State",
    description="""
    Remove the ACME client's stale state for this certificate and run the
    configured DNS cleanup hook. Use after a `domain_conflict` failure.
    """,
)
async def cleanup_certificate(certificate_id: str):
    try:
        await get_cert_manager().cleanup(certificate_id)
    except GatewayError as e:
        return mutation_error(e, certificate_id)
    return mutation_ok(certificate_id)


@router.delete(
    "/{certificate_id}",
    response_model=MutationResponse,
    summary="Delete Certificate",
    description="""
    Delete a certificate record and its log.

    The certificate is not revoked and its files stay on disk, so sites
    that reference it keep serving until they are changed.
    """,
)
async def delete_certificate(certificate_id: str):
    try:
        await get_cert_manager().delete(certificate_id)
    except GatewayError as e:
        return mutation_error(e, certificate_id)
    return mutation_ok(certificate_id)


@router.get(
    "/{certificate_id}/logs",
    response_model=CertificateLogListResponse,
    summary="Certificate Lifecycle Log",
)
async def get_certificate_logs(certificate_id: str) -> CertificateLogListResponse:
    try:
        logs = await get_cert_manager().logs(certificate_id)
    except GatewayError as e:
        raise http_error(e)
    return CertificateLogListResponse(logs=logs)


@router.put(
    "/{certificate_id}/auto-renew",
    response_model=MutationResponse,
    summary="Toggle Auto-Renew",
)
async def set_auto_renew(certificate_id: str, request: CertificateAutoRenewRequest):
    try:
        await get_cert_manager().set_auto_renew(certificate_id, request.enabled)
    except GatewayError as e:
        return mutation_error(e, certificate_id)
    return mutation_ok(certificate_id)
