"""
Certificate manager for DNS-01 certificate lifecycle management.

Provides high-level operations for issuing, renewing, cleaning up and
deleting certificates. Each certificate id is guarded by a non-queuing
lock: a second operation on the same certificate fails fast with Busy
instead of waiting behind the first.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from config import settings
from core.acme_issuer import ACMEIssuer, IssueMode, get_acme_issuer
from core.cert_store import CertificateStore, get_cert_store
from core.dns_providers import DNSProviderRegistry, get_dns_provider_registry
from core.errors import Busy, GatewayError, IssuerFailure, NotFound, ValidationError
from models.certificate import (
    Certificate,
    CertificateLogAction,
    CertificateStatus,
    normalize_hostname,
)
from models.dns_provider import ProviderConfig

logger = logging.getLogger(__name__)

# Certificates with fewer days than this left are picked up by the sweep
RENEWAL_THRESHOLD_DAYS = 30

ActivationListener = Callable[[Certificate], Awaitable[None]]


class KeyedLock:
    """Per-key mutual exclusion that refuses instead of queuing."""

    def __init__(self):
        self._held: set[str] = set()

    def is_held(self, key: str) -> bool:
        return key in self._held

    @asynccontextmanager
    async def hold(self, key: str, what: str = "resource"):
        if key in self._held:
            raise Busy(f"An operation is already in progress for {what} {key}")
        self._held.add(key)
        try:
            yield
        finally:
            self._held.discard(key)


@dataclass
class CertificateOperationResult:
    """Outcome of an issue or renew attempt; the record reflects it either way."""

    certificate: Certificate
    error: Optional[GatewayError] = None
    # False when a renewal found the certificate not yet due
    renewed: bool = True

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class RenewalSweepResult:
    checked: int = 0
    renewed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def normalize_domains(domains: list[str]) -> list[str]:
    """
    Strip, lowercase and de-duplicate domains, keeping the first as primary.

    Raises:
        ValidationError: If no domain remains or one is malformed
    """
    result = []
    for raw in domains or []:
        if not raw or not raw.strip():
            continue
        try:
            name = normalize_hostname(raw)
        except ValueError as e:
            raise ValidationError(str(e))
        if name not in result:
            result.append(name)
    if not result:
        raise ValidationError("At least one domain is required")
    return result


def is_renewal_eligible(cert: Certificate) -> bool:
    """Auto-renew is on and fewer than RENEWAL_THRESHOLD_DAYS remain."""
    days = cert.days_remaining
    return cert.auto_renew and days is not None and days < RENEWAL_THRESHOLD_DAYS


def _same_instant(a: Optional[datetime], b: Optional[datetime]) -> bool:
    if a is None or b is None:
        return False
    if a.tzinfo is None:
        a = a.replace(tzinfo=timezone.utc)
    if b.tzinfo is None:
        b = b.replace(tzinfo=timezone.utc)
    return int(a.timestamp()) == int(b.timestamp())


class CertificateLifecycleManager:
    """
    Manages certificate issuance and renewal state.

    Records move pending -> active | error. expired is derived at read
    time by the store. A failed attempt never touches previously installed
    material, so a certificate in error may still serve its last good
    cert_path/key_path.
    """

    def __init__(
        self,
        store: Optional[CertificateStore] = None,
        providers: Optional[DNSProviderRegistry] = None,
        issuer: Optional[ACMEIssuer] = None,
    ):
        self.store = store or get_cert_store()
        self.providers = providers or get_dns_provider_registry()
        self.issuer = issuer or get_acme_issuer()
        self.locks = KeyedLock()
        self._listeners: list[ActivationListener] = []

    def add_activation_listener(self, listener: ActivationListener) -> None:
        """Register a callback invoked after every successful issue or renew."""
        self._listeners.append(listener)

    def _resolve_email(self, email: Optional[str]) -> str:
        email = (email or settings.acme_account_email or "").strip()
        if not email:
            raise ValidationError(
                "ACME account email is required",
                suggestion="Pass an email or set ACME_ACCOUNT_EMAIL",
            )
        if "@" not in email:
            raise ValidationError(f"Invalid email address: {email}")
        return email

    async def list_certificates(self) -> list[Certificate]:
        return await self.store.list_certificates()

    async def get_certificate(self, certificate_id: str) -> Certificate:
        return await self.store.get(certificate_id)

    async def logs(self, certificate_id: str):
        return await self.store.logs(certificate_id)

    async def issue(
        self,
        domains: list[str],
        dns_provider_id: str,
        email: Optional[str] = None,
    ) -> CertificateOperationResult:
        """
        Issue a certificate for one or more domains.

        Input problems raise before anything is recorded. An existing
        record with the same primary domain is reused.

        Raises:
            ValidationError: Malformed domains, email or provider id
            NotFound: Unknown DNS provider
            Busy: The existing record has an operation in flight
        """
        domains = normalize_domains(domains)
        email = self._resolve_email(email)
        if not dns_provider_id:
            raise ValidationError("dns_provider_id is required")
        provider = await self.providers.read(dns_provider_id)

        primary = domains[0]
        async with self.locks.hold(f"domain:{primary}", "domain"):
            existing = await self.store.get_by_domain(primary)
            if existing is None:
                cert = await self.store.create(domains, provider.id)
                logger.info(f"Certificate record created for {primary}: {cert.id}")
                return await self._locked_attempt(cert, provider.config, email, IssueMode.ISSUE)

            async with self.locks.hold(existing.id, "certificate"):
                existing.domains = domains
                existing.dns_provider_id = provider.id
                logger.info(f"Reissuing existing certificate {existing.id} for {primary}")
                return await self._attempt(existing, provider.config, email, IssueMode.ISSUE)

    async def _locked_attempt(
        self,
        cert: Certificate,
        provider_config: ProviderConfig,
        email: str,
        mode: IssueMode,
    ) -> CertificateOperationResult:
        async with self.locks.hold(cert.id, "certificate"):
            return await self._attempt(cert, provider_config, email, mode)

    async def renew(self, certificate_id: str, email: Optional[str] = None) -> CertificateOperationResult:
        """
        Renew an existing certificate.

        Raises:
            ValidationError: No usable email
            NotFound: Unknown certificate
            Busy: An operation is in flight for this certificate
        """
        email = self._resolve_email(email)

        async with self.locks.hold(certificate_id, "certificate"):
            cert = await self.store.get(certificate_id)
            if cert.status == CertificateStatus.PENDING:
                raise Busy(f"Certificate {certificate_id} has an issuance in progress")

            try:
                if not cert.dns_provider_id:
                    raise NotFound("Certificate has no DNS provider")
                provider = await self.providers.read(cert.dns_provider_id)
            except NotFound as e:
                e.suggestion = "Assign an existing DNS provider by issuing the certificate again"
                return await self._record_failure(cert, e)

            return await self._attempt(cert, provider.config, email, IssueMode.RENEW)

    async def _attempt(
        self,
        cert: Certificate,
        provider_config: ProviderConfig,
        email: str,
        mode: IssueMode,
    ) -> CertificateOperationResult:
        """Run one attempt with the certificate's lock held."""
        action = CertificateLogAction.CREATE if mode == IssueMode.ISSUE else CertificateLogAction.RENEW
        requested = "Issuance requested" if mode == IssueMode.ISSUE else "Renewal requested"

        previous_not_after = cert.not_after
        cert.status = CertificateStatus.PENDING
        cert.error = None
        await self.store.save(cert)
        await self.store.append_log(cert.id, action, f"{requested} for {', '.join(cert.domains)}")

        try:
            result = await self.issuer.attempt(cert.domains, provider_config, email, mode)
        except GatewayError as e:
            return await self._record_failure(cert, e)
        except Exception as e:
            logger.exception(f"Unexpected failure during certificate attempt for {cert.domain}")
            return await self._record_failure(cert, IssuerFailure(f"Unexpected error: {e}"))

        renewed = result.renewed
        if mode == IssueMode.RENEW and _same_instant(previous_not_after, result.not_after):
            renewed = False

        cert.cert_path = result.cert_path
        cert.key_path = result.key_path
        cert.issuer = result.issuer
        cert.not_before = result.not_before
        cert.not_after = result.not_after
        cert.status = CertificateStatus.ACTIVE
        cert.error = None
        valid_until = result.not_after.strftime("%Y-%m-%d")

        if not renewed:
            await self.store.save(cert)
            await self.store.append_log(cert.id, action, f"No renewal needed, valid until {valid_until}")
            logger.info(f"No renewal needed for {cert.domain}, valid until {result.not_after.date()}")
            return CertificateOperationResult(certificate=cert, renewed=False)

        cert.last_renew_at = datetime.now(timezone.utc)
        await self.store.save(cert)

        verb = "issued" if mode == IssueMode.ISSUE else "renewed"
        await self.store.append_log(cert.id, action, f"Certificate {verb}, valid until {valid_until}")
        logger.info(f"Certificate {verb} for {cert.domain}, valid until {result.not_after.date()}")

        await self._notify_activation(cert)
        return CertificateOperationResult(certificate=cert)

    async def _record_failure(self, cert: Certificate, error: GatewayError) -> CertificateOperationResult:
        """Mark the record as failed; installed material stays as it was."""
        cert.status = CertificateStatus.ERROR
        cert.error = error.message
        await self.store.save(cert)
        await self.store.append_log(cert.id, CertificateLogAction.ERROR, error.message)
        logger.error(f"Certificate operation for {cert.domain} failed ({error.error_type}): {error.message}")
        return CertificateOperationResult(certificate=cert, error=error)

    async def _notify_activation(self, cert: Certificate) -> None:
        for listener in self._listeners:
            try:
                await listener(cert)
            except Exception as e:
                logger.exception(f"Activation listener failed for certificate {cert.id}: {e}")

    async def cleanup(self, certificate_id: str) -> Certificate:
        """
        Clear stale ACME client state for a certificate.

        Used after a DomainConflict. Runs under the certificate's lock, so it
        never interleaves with an issuance or renewal of the same record.
        """
        async with self.locks.hold(certificate_id, "certificate"):
            cert = await self.store.get(certificate_id)

            provider_config = None
            if cert.dns_provider_id:
                try:
                    provider_config = (await self.providers.read(cert.dns_provider_id)).config
                except NotFound:
                    logger.warning(f"DNS provider {cert.dns_provider_id} missing; cleaning client state only")

            notes = await self.issuer.cleanup(cert.domains, provider_config)
            message = "Cleaned up ACME client state"
            if notes:
                message += ": " + "; ".join(notes)
            await self.store.append_log(cert.id, CertificateLogAction.CLEANUP, message)
            logger.info(f"Cleanup finished for {cert.domain}")
            return cert

    async def delete(self, certificate_id: str) -> None:
        """Delete a certificate record and its log. Installed files are kept."""
        async with self.locks.hold(certificate_id, "certificate"):
            await self.store.delete(certificate_id)

    async def set_auto_renew(self, certificate_id: str, enabled: bool) -> Certificate:
        async with self.locks.hold(certificate_id, "certificate"):
            cert = await self.store.get(certificate_id)
            cert.auto_renew = enabled
            await self.store.save(cert)
            logger.info(f"Auto-renew {'enabled' if enabled else 'disabled'} for {cert.domain}")
            return cert

    async def renewal_eligible(self, certificate_id: str) -> bool:
        return is_renewal_eligible(await self.store.get(certificate_id))

    async def recover_interrupted(self) -> int:
        """
        Mark records left pending by a previous process as failed.

        Called once at startup, before any operation can hold a lock.
        """
        recovered = 0
        for cert in await self.store.list_certificates():
            if cert.status == CertificateStatus.PENDING and not self.locks.is_held(cert.id):
                cert.status = CertificateStatus.ERROR
                cert.error = "Interrupted before completion"
                await self.store.save(cert)
                await self.store.append_log(cert.id, CertificateLogAction.ERROR, cert.error)
                recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} interrupted certificate operation(s)")
        return recovered

    async def check_renewals(self, email: Optional[str] = None) -> RenewalSweepResult:
        """
        Renew every eligible certificate once.

        Failures are recorded on the certificate and logged; nothing is
        retried until the next sweep.
        """
        summary = RenewalSweepResult()
        email = email or settings.acme_account_email
        if not email:
            logger.warning("Skipping renewal sweep: ACME_ACCOUNT_EMAIL is not set")
            return summary

        for cert in await self.store.list_certificates():
            summary.checked += 1
            if not is_renewal_eligible(cert):
                continue
            if cert.status == CertificateStatus.PENDING or self.locks.is_held(cert.id):
                logger.debug(f"Skipping {cert.domain}: operation in progress")
                summary.skipped.append(cert.id)
                continue

            logger.info(f"Auto-renewing certificate for {cert.domain} ({cert.days_remaining} days left)")
            try:
                result = await self.renew(cert.id, email)
            except GatewayError as e:
                logger.error(f"Failed to renew {cert.domain}: {e.message}")
                summary.failed.append(cert.id)
                continue

            if result.success and result.renewed:
                summary.renewed.append(cert.id)
            elif result.success:
                summary.skipped.append(cert.id)
            else:
                summary.failed.append(cert.id)

        logger.info(
            f"Renewal sweep complete: {len(summary.renewed)} renewed, "
            f"{len(summary.failed)} failed, {len(summary.skipped)} skipped"
        )
        return summary


# Singleton instance
_cert_manager: Optional[CertificateLifecycleManager] = None


def get_cert_manager() -> CertificateLifecycleManager:
    """Get the global certificate manager instance."""
    global _cert_manager
    if _cert_manager is None:
        _cert_manager = CertificateLifecycleManager()
    return _cert_manager
