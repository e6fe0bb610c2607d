"""
Certificate store.

Persists certificate records and their append-only lifecycle log in the
SQLite database. The effective status is derived at read time: an active
record whose validity has lapsed is returned as expired, but expired is
never written back.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from core.database import Database, get_database
from core.errors import NotFound
from models.certificate import (
    Certificate,
    CertificateLog,
    CertificateLogAction,
    CertificateStatus,
)

logger = logging.getLogger(__name__)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp as aware UTC."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def effective_status(status: CertificateStatus, not_after: Optional[datetime]) -> CertificateStatus:
    """Active certificates past their not_after read as expired."""
    if status == CertificateStatus.ACTIVE and not_after is not None:
        if not_after <= datetime.now(timezone.utc):
            return CertificateStatus.EXPIRED
    return status


class CertificateStore:
    """Certificate records and lifecycle logs."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    async def list_certificates(self) -> list[Certificate]:
        rows = await self.db.fetch_all("SELECT * FROM certificates ORDER BY created_at DESC")
        return [self._row_to_certificate(row) for row in rows]

    async def get(self, certificate_id: str) -> Certificate:
        row = await self.db.fetch_one("SELECT * FROM certificates WHERE id = ?", (certificate_id,))
        if row is None:
            raise NotFound(f"Certificate not found: {certificate_id}")
        return self._row_to_certificate(row)

    async def get_by_domain(self, domain: str) -> Optional[Certificate]:
        """Find a certificate by its primary domain."""
        row = await self.db.fetch_one("SELECT * FROM certificates WHERE domain = ?", (domain,))
        if row is None:
            return None
        return self._row_to_certificate(row)

    async def create(self, domains: list[str], dns_provider_id: Optional[str]) -> Certificate:
        """Create a pending record for a new certificate."""
        now = datetime.now(timezone.utc)
        cert = Certificate(
            id=uuid.uuid4().hex,
            domain=domains[0],
            domains=list(domains),
            dns_provider_id=dns_provider_id,
            status=CertificateStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        await self.db.insert("certificates", self._certificate_to_row(cert))
        logger.debug(f"Certificate record created: {cert.id} ({cert.domain})")
        return cert

    async def save(self, cert: Certificate) -> Certificate:
        """
        Write a certificate record back.

        A derived expired status is persisted as active; the stored status
        only ever changes on actual issuance outcomes.
        """
        cert.updated_at = datetime.now(timezone.utc)
        row = self._certificate_to_row(cert)
        row.pop("id")
        updated = await self.db.update("certificates", cert.id, row)
        if not updated:
            raise NotFound(f"Certificate not found: {cert.id}")
        return cert

    async def delete(self, certificate_id: str) -> None:
        """Delete a certificate and its log."""
        async with self.db.transaction() as conn:
            cursor = await conn.execute("DELETE FROM certificates WHERE id = ?", (certificate_id,))
            if cursor.rowcount == 0:
                raise NotFound(f"Certificate not found: {certificate_id}")
            await conn.execute("DELETE FROM certificate_logs WHERE certificate_id = ?", (certificate_id,))
        logger.info(f"Certificate deleted: {certificate_id}")

    async def append_log(
        self,
        certificate_id: str,
        action: CertificateLogAction,
        message: str,
    ) -> CertificateLog:
        entry = CertificateLog(
            id=uuid.uuid4().hex,
            certificate_id=certificate_id,
            action=action,
            message=message,
            created_at=datetime.now(timezone.utc),
        )
        await self.db.insert(
            "certificate_logs",
            {
                "id": entry.id,
                "certificate_id": entry.certificate_id,
                "action": entry.action.value,
                "message": entry.message,
                "created_at": _format_datetime(entry.created_at),
            },
        )
        return entry

    async def logs(self, certificate_id: str) -> list[CertificateLog]:
        """Log entries for a certificate in insertion order."""
        await self.get(certificate_id)
        rows = await self.db.fetch_all(
            "SELECT * FROM certificate_logs WHERE certificate_id = ? ORDER BY seq ASC",
            (certificate_id,),
        )
        return [
            CertificateLog(
                id=row["id"],
                certificate_id=row["certificate_id"],
                action=CertificateLogAction(row["action"]),
                message=row["message"],
                created_at=_parse_datetime(row["created_at"]),
            )
            for row in rows
        ]

    def _row_to_certificate(self, row: dict) -> Certificate:
        """Convert database row to Certificate model."""
        not_after = _parse_datetime(row.get("not_after"))
        return Certificate(
            id=row["id"],
            domain=row["domain"],
            domains=json.loads(row["domains_json"]) if row.get("domains_json") else [row["domain"]],
            dns_provider_id=row.get("dns_provider_id"),
            status=effective_status(CertificateStatus(row["status"]), not_after),
            cert_path=row.get("cert_path"),
            key_path=row.get("key_path"),
            issuer=row.get("issuer"),
            not_before=_parse_datetime(row.get("not_before")),
            not_after=not_after,
            error=row.get("error"),
            auto_renew=bool(row.get("auto_renew", True)),
            last_renew_at=_parse_datetime(row.get("last_renew_at")),
            created_at=_parse_datetime(row["created_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )

    def _certificate_to_row(self, cert: Certificate) -> dict:
        """Convert Certificate model to database row."""
        status = cert.status
        if status == CertificateStatus.EXPIRED:
            status = CertificateStatus.ACTIVE
        return {
            "id": cert.id,
            "domain": cert.domain,
            "domains_json": json.dumps(cert.domains),
            "dns_provider_id": cert.dns_provider_id,
            "status": status.value,
            "cert_path": cert.cert_path,
            "key_path": cert.key_path,
            "issuer": cert.issuer,
            "not_before": _format_datetime(cert.not_before),
            "not_after": _format_datetime(cert.not_after),
            "error": cert.error,
            "auto_renew": cert.auto_renew,
            "last_renew_at": _format_datetime(cert.last_renew_at),
            "created_at": _format_datetime(cert.created_at),
            "updated_at": _format_datetime(cert.updated_at),
        }


# Singleton instance
_cert_store: Optional[CertificateStore] = None


def get_cert_store() -> CertificateStore:
    """Get the global certificate store instance."""
    global _cert_store
    if _cert_store is None:
        _cert_store = CertificateStore()
    return _cert_store
