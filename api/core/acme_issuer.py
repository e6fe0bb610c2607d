"""
ACME issuance through the lego client using the DNS-01 challenge.

Builds lego invocations for a validated DNS provider config, runs them via
the command runner, and installs the resulting material into the gateway's
SSL directory. Failures are classified from lego's free-text output by a
swappable OutputClassifier.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.x509.oid import NameOID

from config import get_lego_dir, get_ssl_dir, settings
from core.command_runner import CommandRunner, CommandTimeout, get_command_runner
from core.errors import (
    DomainConflict,
    GatewayError,
    IssuerFailure,
    ProviderAuthFailure,
    RateLimited,
)
from core.file_helpers import write_atomic
from models.dns_provider import ProviderConfig

logger = logging.getLogger(__name__)

# lego renews when fewer than this many days remain
LEGO_RENEW_DAYS = 30

# lego prints this and exits without touching its files when the certificate is not due
NO_RENEWAL_MARKER = "no renewal"

# Files lego keeps per certificate under <lego_dir>/certificates
LEGO_FILE_SUFFIXES = (".crt", ".key", ".json", ".issuer.crt")


class IssueMode(str, Enum):
    ISSUE = "issue"
    RENEW = "renew"


@dataclass
class IssuanceResult:
    """Installed material and parsed validity from a successful attempt."""

    cert_path: str
    key_path: str
    issuer: str
    not_before: datetime
    not_after: datetime
    output: str = ""
    # False when the client found nothing to renew and the material is unchanged
    renewed: bool = True


@dataclass
class CertificateInfo:
    subject: str
    issuer: str
    not_before: datetime
    not_after: datetime
    dns_names: list[str]


def file_stem(domain: str) -> str:
    """File name stem lego uses for a domain (wildcards become _)."""
    return domain.replace("*", "_")


def parse_certificate_file(path: Path) -> CertificateInfo:
    """
    Parse a PEM certificate (the first one, for chains) and extract details.

    Raises:
        ValueError: If the file is not a PEM certificate
    """
    cert = x509.load_pem_x509_certificate(path.read_bytes())

    def common_name(name: x509.Name) -> str:
        attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
        return str(attrs[0].value) if attrs else name.rfc4514_string()

    dns_names = []
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        dns_names = san.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        pass

    return CertificateInfo(
        subject=common_name(cert.subject),
        issuer=common_name(cert.issuer),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        dns_names=dns_names,
    )


class OutputClassifier:
    """
    Maps ACME client output to an error kind.

    Matching is a case-insensitive substring search; the first matching
    group wins in the order conflict, auth, rate limit.
    """

    conflict_patterns = ("already exists", "已存在")
    auth_patterns = (
        "authentication",
        "unauthorized",
        "invalid api token",
        "invalidaccesskeyid",
        "signaturedoesnotmatch",
        "authfailure",
    )
    rate_limit_patterns = ("rate limit", "ratelimited", "too many")

    def classify(self, output: str) -> GatewayError:
        text = (output or "").lower()
        summary = _last_line(output)

        if any(p in text for p in self.conflict_patterns):
            return DomainConflict(f"DNS challenge record already exists: {summary}")
        if any(p in text for p in self.auth_patterns):
            return ProviderAuthFailure(f"DNS provider rejected the credentials: {summary}")
        if any(p in text for p in self.rate_limit_patterns):
            return RateLimited(f"Certificate authority rate limit reached: {summary}")
        return IssuerFailure(f"Certificate request failed: {summary}", output=output)


def _last_line(output: str) -> str:
    lines = [line.strip() for line in (output or "").splitlines() if line.strip()]
    return lines[-1] if lines else "no output"


class ACMEIssuer:
    """Runs lego for DNS-01 issuance and installs the resulting material."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        lego_dir: Optional[Path] = None,
        ssl_dir: Optional[Path] = None,
        classifier: Optional[OutputClassifier] = None,
        lego_binary: Optional[str] = None,
        timeout: Optional[float] = None,
        cleanup_hook: Optional[str] = None,
    ):
        self.runner = runner or get_command_runner()
        self.lego_dir = Path(lego_dir) if lego_dir else get_lego_dir()
        self.ssl_dir = Path(ssl_dir) if ssl_dir else get_ssl_dir()
        self.classifier = classifier or OutputClassifier()
        self.lego_binary = lego_binary or settings.lego_binary
        self.timeout = timeout or settings.acme_timeout
        self.cleanup_hook = cleanup_hook if cleanup_hook is not None else settings.acme_cleanup_hook

    def lego_files(self, domain: str) -> dict[str, Path]:
        stem = file_stem(domain)
        cert_dir = self.lego_dir / "certificates"
        return {suffix: cert_dir / f"{stem}{suffix}" for suffix in LEGO_FILE_SUFFIXES}

    def build_command(
        self,
        domains: list[str],
        provider_config: ProviderConfig,
        email: str,
        mode: IssueMode,
    ) -> list[str]:
        command = [
            self.lego_binary,
            "--accept-tos",
            "--email", email,
            "--dns", provider_config.lego_provider,
            "--path", str(self.lego_dir),
            # Skip propagation checks against authoritative servers
            "--dns.disable-cp",
        ]
        for domain in domains:
            command.extend(["--domains", domain])

        has_state = self.lego_files(domains[0])[".crt"].exists()
        if mode == IssueMode.RENEW and has_state:
            command.extend(["renew", "--days", str(LEGO_RENEW_DAYS)])
        else:
            command.append("run")
        return command

    async def attempt(
        self,
        domains: list[str],
        provider_config: ProviderConfig,
        email: str,
        mode: IssueMode = IssueMode.ISSUE,
    ) -> IssuanceResult:
        """
        Run one issuance or renewal attempt.

        Material is installed only after it parses; on any failure the
        previously installed files are left untouched.

        Raises:
            DomainConflict, ProviderAuthFailure, RateLimited, IssuerFailure
        """
        try:
            self.lego_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IssuerFailure(f"ACME client state directory is not usable: {e}")
        command = self.build_command(domains, provider_config, email, mode)
        logger.info(f"Requesting certificate ({mode.value}) for {', '.join(domains)} via {provider_config.lego_provider}")

        try:
            result = await self.runner.run(
                command,
                timeout=self.timeout,
                env=provider_config.env_vars(),
            )
        except CommandTimeout as e:
            output = "\n".join(part for part in (e.stderr, e.stdout) if part)
            raise IssuerFailure(
                f"ACME client timed out after {e.timeout}s",
                output=output,
                suggestion="Check DNS provider reachability or raise ACME_TIMEOUT",
            )
        except FileNotFoundError:
            raise IssuerFailure(
                f"ACME client not found: {self.lego_binary}",
                suggestion="Install lego or set LEGO_BINARY",
            )
        except OSError as e:
            raise IssuerFailure(
                f"ACME client could not be started: {e}",
                suggestion="Check that LEGO_BINARY points to an executable file",
            )

        renewed = True
        if mode == IssueMode.RENEW and NO_RENEWAL_MARKER in result.output.lower():
            logger.info(f"ACME client reports no renewal needed for {domains[0]}")
            renewed = False
        elif not result.success:
            error = self.classifier.classify(result.output)
            logger.error(f"Certificate request for {domains[0]} failed ({error.error_type}): {error.message}")
            raise error

        installed = self._install(domains[0], result.output)
        installed.renewed = renewed
        return installed

    def _install(self, domain: str, output: str) -> IssuanceResult:
        files = self.lego_files(domain)
        src_cert, src_key = files[".crt"], files[".key"]
        if not src_cert.exists() or not src_key.exists():
            raise IssuerFailure(
                f"ACME client reported success but no certificate was written for {domain}",
                output=output,
            )

        try:
            info = parse_certificate_file(src_cert)
        except (ValueError, OSError) as e:
            raise IssuerFailure(f"Issued certificate could not be parsed: {e}", output=output)

        stem = file_stem(domain)
        dest_cert = self.ssl_dir / f"{stem}.crt"
        dest_key = self.ssl_dir / f"{stem}.key"
        try:
            write_atomic(dest_cert, src_cert.read_bytes(), 0o644)
            write_atomic(dest_key, src_key.read_bytes(), 0o600)
        except OSError as e:
            raise IssuerFailure(f"Issued certificate could not be installed: {e}", output=output)

        logger.info(f"Installed certificate for {domain}, valid until {info.not_after.date()}")
        return IssuanceResult(
            cert_path=str(dest_cert),
            key_path=str(dest_key),
            issuer=info.issuer,
            not_before=info.not_before,
            not_after=info.not_after,
            output=output,
        )

    async def cleanup(self, domains: list[str], provider_config: Optional[ProviderConfig]) -> list[str]:
        """
        Remove stale client state for a certificate so the next run starts fresh.

        Deletes lego's per-domain files and, when ACME_CLEANUP_HOOK is set,
        runs it with the provider environment and the domains as arguments
        to purge leftover _acme-challenge records. Problems are logged and
        reported in the returned notes, never raised.
        """
        notes = []
        for path in self.lego_files(domains[0]).values():
            try:
                path.unlink()
                notes.append(f"removed {path.name}")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Could not remove {path}: {e}")
                notes.append(f"could not remove {path.name}")

        hook = self.cleanup_hook
        if hook:
            env = provider_config.env_vars() if provider_config else None
            try:
                result = await self.runner.run([hook, *domains], timeout=self.timeout, env=env)
                if result.success:
                    notes.append("cleanup hook completed")
                else:
                    logger.warning(f"Cleanup hook exited with {result.exit_code}: {_last_line(result.output)}")
                    notes.append(f"cleanup hook failed: {_last_line(result.output)}")
            except (CommandTimeout, OSError) as e:
                logger.warning(f"Cleanup hook failed: {e}")
                notes.append(f"cleanup hook failed: {e}")

        return notes


# Singleton instance
_acme_issuer: Optional[ACMEIssuer] = None


def get_acme_issuer() -> ACMEIssuer:
    """Get the global ACME issuer instance."""
    global _acme_issuer
    if _acme_issuer is None:
        _acme_issuer = ACMEIssuer()
    return _acme_issuer
