"""
DNS provider registry.

Stores DNS API credential records used for DNS-01 challenges. Credential
shapes are validated exhaustively per provider kind at this boundary, so
nothing downstream ever sees an unvalidated config blob.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from core.database import Database, get_database
from core.encryption_service import EncryptionService, get_encryption_service
from core.errors import NotFound, ValidationError
from models.dns_provider import PROVIDER_CONFIG_TYPES, DNSProvider, ProviderConfig, ProviderType

logger = logging.getLogger(__name__)


def parse_provider_type(value: Any) -> ProviderType:
    """Resolve a provider kind, rejecting anything outside the supported set."""
    try:
        return ProviderType(value)
    except ValueError:
        supported = ", ".join(t.value for t in ProviderType)
        raise ValidationError(
            f"Unsupported DNS provider type: {value}",
            suggestion=f"Use one of: {supported}",
        )


def parse_provider_config(provider_type: ProviderType, config: dict[str, Any]) -> ProviderConfig:
    """
    Validate a credential dict against the shape required by a provider kind.

    Raises:
        ValidationError: Listing the missing or invalid fields
    """
    config_cls = PROVIDER_CONFIG_TYPES[provider_type]
    try:
        return config_cls.model_validate(config or {})
    except PydanticValidationError as e:
        problems = []
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"]) or "config"
            problems.append(f"{field}: {err['msg']}")
        raise ValidationError(
            f"Invalid {provider_type.value} config: " + "; ".join(problems),
            suggestion="Provide all credentials required by this DNS provider",
        )


class DNSProviderRegistry:
    """CRUD for DNS provider records with encrypted credentials."""

    def __init__(self, db: Optional[Database] = None, encryption: Optional[EncryptionService] = None):
        self.db = db or get_database()
        self.encryption = encryption or get_encryption_service()

    async def list_providers(self) -> list[DNSProvider]:
        rows = await self.db.fetch_all("SELECT * FROM dns_providers ORDER BY created_at DESC")
        return [self._row_to_provider(row) for row in rows]

    async def create(self, name: str, provider_type: Any, config: dict[str, Any]) -> str:
        """Validate and store a new provider. Returns its id."""
        if not name or not name.strip():
            raise ValidationError("Provider name cannot be empty")

        ptype = parse_provider_type(provider_type)
        parsed = parse_provider_config(ptype, config)

        now = datetime.now(timezone.utc)
        provider_id = uuid.uuid4().hex
        await self.db.insert(
            "dns_providers",
            {
                "id": provider_id,
                "name": name.strip(),
                "type": ptype.value,
                "config_encrypted": self._encode_config(parsed),
                "created_at": now.isoformat(),
                "updated_at": now.isoformat(),
            },
        )

        logger.info(f"DNS provider created: {provider_id} ({ptype.value})")
        return provider_id

    async def read(self, provider_id: str) -> DNSProvider:
        row = await self.db.fetch_one("SELECT * FROM dns_providers WHERE id = ?", (provider_id,))
        if row is None:
            raise NotFound(f"DNS provider not found: {provider_id}")
        return self._row_to_provider(row)

    async def update(
        self,
        provider_id: str,
        name: Optional[str] = None,
        provider_type: Optional[Any] = None,
        config: Optional[dict[str, Any]] = None,
    ) -> DNSProvider:
        """
        Merge a partial update and re-validate the result.

        The merged config is checked against the (possibly new) type, so a
        type change without a fitting config is rejected.
        """
        current = await self.read(provider_id)

        new_name = current.name
        if name is not None:
            if not name.strip():
                raise ValidationError("Provider name cannot be empty")
            new_name = name.strip()

        new_type = parse_provider_type(provider_type) if provider_type else current.type

        if config is not None:
            merged = config
        else:
            merged = current.config.model_dump(exclude_none=True)
        parsed = parse_provider_config(new_type, merged)

        now = datetime.now(timezone.utc)
        await self.db.update(
            "dns_providers",
            provider_id,
            {
                "name": new_name,
                "type": new_type.value,
                "config_encrypted": self._encode_config(parsed),
                "updated_at": now.isoformat(),
            },
        )

        logger.info(f"DNS provider updated: {provider_id}")
        return DNSProvider(
            id=provider_id,
            name=new_name,
            type=new_type,
            config=parsed,
            created_at=current.created_at,
            updated_at=now,
        )

    async def delete(self, provider_id: str) -> None:
        """Remove a provider. Certificates referencing it fail at renewal time."""
        deleted = await self.db.delete("dns_providers", provider_id)
        if not deleted:
            raise NotFound(f"DNS provider not found: {provider_id}")
        logger.info(f"DNS provider deleted: {provider_id}")

    def _encode_config(self, config: ProviderConfig) -> str:
        return self.encryption.encrypt_string(json.dumps(config.model_dump(exclude_none=True)))

    def _row_to_provider(self, row: dict[str, Any]) -> DNSProvider:
        ptype = ProviderType(row["type"])
        config_data = json.loads(self.encryption.decrypt_string(row["config_encrypted"]))
        return DNSProvider(
            id=row["id"],
            name=row["name"],
            type=ptype,
            config=PROVIDER_CONFIG_TYPES[ptype].model_validate(config_data),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


# Singleton instance
_registry: Optional[DNSProviderRegistry] = None


def get_dns_provider_registry() -> DNSProviderRegistry:
    """Get the global DNS provider registry instance."""
    global _registry
    if _registry is None:
        _registry = DNSProviderRegistry()
    return _registry
