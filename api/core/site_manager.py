"""
Gateway site and route management.

Turns proxy site, stream route and template parameter mutations into
configuration change sets and applies them through the reload coordinator.
A record is persisted only after its configuration passed `nginx -t` and
was promoted, so stored records and the live tree never disagree.
Mutations run one at a time: each reads the stored records, renders,
applies and persists under a single lock, so no change set is rendered
from a snapshot another mutation is about to replace.
"""

import asyncio
import logging
from typing import Optional

from core.cert_store import CertificateStore, get_cert_store
from core.config_generator import ConfigGenerator, get_config_generator
from core.config_validator import MAIN_CONFIG, ConfigChangeSet
from core.errors import NotFound, ValidationError, ValidatorFailure
from core.reload_coordinator import ApplyResult, ReloadCoordinator, get_reload_coordinator
from core.site_store import ProxySiteStore, StreamRouteStore, TemplateParamsStore
from models.certificate import Certificate, CertificateStatus
from models.proxy import ProxySite, StreamRoute, TemplateParams

logger = logging.getLogger(__name__)

STREAM_CONFIG = "stream/routes.conf"

# A certificate can back a site once it has material and is not failed or in flight
SERVABLE_STATUSES = (CertificateStatus.ACTIVE, CertificateStatus.EXPIRED)


def site_config_path(site_id: str) -> str:
    return f"conf.d/{site_id}.conf"


class SiteManager:
    """Proxy sites, stream routes and nginx.conf parameters of the gateway."""

    def __init__(
        self,
        sites: Optional[ProxySiteStore] = None,
        routes: Optional[StreamRouteStore] = None,
        params: Optional[TemplateParamsStore] = None,
        generator: Optional[ConfigGenerator] = None,
        coordinator: Optional[ReloadCoordinator] = None,
        cert_store: Optional[CertificateStore] = None,
    ):
        self.sites = sites or ProxySiteStore()
        self.routes = routes or StreamRouteStore()
        self.params = params or TemplateParamsStore()
        self.generator = generator or get_config_generator()
        self.coordinator = coordinator or get_reload_coordinator()
        self.cert_store = cert_store or get_cert_store()
        self._lock = asyncio.Lock()

    async def _apply_or_raise(self, change_set: ConfigChangeSet, what: str) -> ApplyResult:
        result = await self.coordinator.apply(change_set)
        if not result.success:
            raise ValidatorFailure(
                f"Configuration for {what} failed nginx -t: {result.output or 'no output'}",
                output=result.output,
            )
        return result

    # Proxy sites

    def list_sites(self) -> list[ProxySite]:
        return self.sites.list()

    def get_site(self, site_id: str) -> ProxySite:
        return self.sites.get(site_id)

    async def _resolve_cert_paths(self, site: ProxySite) -> Optional[tuple[str, str]]:
        """Paths of the managed certificate a site references, if any."""
        if not site.ssl or not site.certificate_id:
            return None

        try:
            cert = await self.cert_store.get(site.certificate_id)
        except NotFound:
            raise ValidationError(
                f"Certificate {site.certificate_id} referenced by {site.server_name} no longer exists",
                suggestion="Select another certificate for the site or disable SSL",
            )
        if cert.status not in SERVABLE_STATUSES or not cert.has_material:
            raise ValidationError(
                f"Certificate {cert.domain} is {cert.status.value} and cannot be served",
                suggestion="Select an active certificate or issue one first",
            )
        return cert.cert_path, cert.key_path

    async def render_site(self, site: ProxySite) -> str:
        cert_paths = await self._resolve_cert_paths(site)
        return self.generator.render_site(site, cert_paths)

    async def preview_site(self, site: ProxySite) -> str:
        """Render a site's configuration without writing anything."""
        return await self.render_site(site)

    def _check_unique_server_name(self, site: ProxySite) -> None:
        for other in self.sites.list():
            if other.id != site.id and other.server_name == site.server_name:
                raise ValidationError(
                    f"Server name {site.server_name} is already used by site {other.id}",
                    suggestion="Edit the existing site instead",
                )

    async def save_site(self, site: ProxySite) -> ApplyResult:
        """Create or replace a site; upsert by id."""
        async with self._lock:
            self._check_unique_server_name(site)
            content = await self.render_site(site)
            result = await self._apply_or_raise(
                ConfigChangeSet(files={site_config_path(site.id): content}), f"site {site.server_name}"
            )
            self.sites.save(site)
        logger.info(f"Proxy site saved: {site.id} ({site.server_name})")
        return result

    async def delete_site(self, site_id: str) -> ApplyResult:
        """Remove a site. The certificate it referenced is left alone."""
        async with self._lock:
            site = self.sites.get(site_id)
            result = await self._apply_or_raise(
                ConfigChangeSet(removals=[site_config_path(site.id)]), f"removal of site {site.server_name}"
            )
            self.sites.delete(site.id)
        logger.info(f"Proxy site deleted: {site.id}")
        return result

    async def refresh_certificate_sites(self, cert: Certificate) -> Optional[ApplyResult]:
        """
        Re-render every site serving a certificate and apply the result.

        Registered as an activation listener on the certificate manager.
        """
        async with self._lock:
            sites = self.sites.referencing_certificate(cert.id)
            if not sites:
                return None

            files = {}
            for site in sites:
                files[site_config_path(site.id)] = self.generator.render_site(site, (cert.cert_path, cert.key_path))

            result = await self.coordinator.apply(ConfigChangeSet(files=files))
        if result.success:
            logger.info(f"Refreshed {len(sites)} site(s) for certificate {cert.domain}")
        else:
            logger.error(f"Refreshing sites for certificate {cert.domain} failed nginx -t: {result.output}")
        return result

    # Stream routes

    def list_routes(self) -> list[StreamRoute]:
        return self.routes.list()

    def get_route(self, route_id: str) -> StreamRoute:
        return self.routes.get(route_id)

    def render_stream(self) -> str:
        return self.generator.render_stream(self.routes.list())

    def _stream_change(self, routes: list[StreamRoute]) -> ConfigChangeSet:
        return ConfigChangeSet(files={STREAM_CONFIG: self.generator.render_stream(routes)})

    async def save_route(self, route: StreamRoute) -> ApplyResult:
        """Create or replace a route; upsert by id."""
        async with self._lock:
            others = [r for r in self.routes.list() if r.id != route.id]
            for other in others:
                if other.domain == route.domain:
                    raise ValidationError(
                        f"Domain {route.domain} is already routed by {other.id}",
                        suggestion="Edit the existing route instead",
                    )

            result = await self._apply_or_raise(self._stream_change([*others, route]), f"route {route.domain}")
            self.routes.save(route)
        logger.info(f"Stream route saved: {route.id} ({route.domain} -> {route.backend})")
        return result

    async def delete_route(self, route_id: str) -> ApplyResult:
        async with self._lock:
            route = self.routes.get(route_id)
            others = [r for r in self.routes.list() if r.id != route.id]
            result = await self._apply_or_raise(self._stream_change(others), f"removal of route {route.domain}")
            self.routes.delete(route.id)
        logger.info(f"Stream route deleted: {route.id}")
        return result

    async def toggle_route(self, route_id: str) -> StreamRoute:
        """Flip a route's enabled flag. Disabled routes stay stored."""
        async with self._lock:
            route = self.routes.get(route_id)
            toggled = route.model_copy(update={"enabled": not route.enabled})
            others = [r for r in self.routes.list() if r.id != route.id]
            await self._apply_or_raise(self._stream_change([*others, toggled]), f"route {route.domain}")
            self.routes.save(toggled)
        logger.info(f"Stream route {toggled.id} {'enabled' if toggled.enabled else 'disabled'}")
        return toggled

    # nginx.conf

    def get_template_params(self) -> TemplateParams:
        return self.params.get()

    async def save_template_params(self, params: TemplateParams) -> ApplyResult:
        async with self._lock:
            content = self.generator.render_main(params)
            result = await self._apply_or_raise(ConfigChangeSet(files={MAIN_CONFIG: content}), MAIN_CONFIG)
            self.params.save(params)
        logger.info("Template parameters saved")
        return result

    async def regenerate_main(self) -> ApplyResult:
        """Re-render nginx.conf from the stored parameters."""
        async with self._lock:
            content = self.generator.render_main(self.params.get())
            return await self._apply_or_raise(ConfigChangeSet(files={MAIN_CONFIG: content}), MAIN_CONFIG)

    async def regenerate(self) -> ApplyResult:
        """Re-render nginx.conf, every site and the stream config in one change set."""
        async with self._lock:
            files = {MAIN_CONFIG: self.generator.render_main(self.params.get())}
            for site in self.sites.list():
                files[site_config_path(site.id)] = await self.render_site(site)
            files[STREAM_CONFIG] = self.render_stream()
            return await self._apply_or_raise(ConfigChangeSet(files=files), "the gateway")

    def main_config(self) -> Optional[str]:
        return self.coordinator.live_tree.read(MAIN_CONFIG)

    def bootstrap(self) -> list[str]:
        """
        Write nginx.conf and an empty stream config when missing.

        Runs at startup before the gateway is expected to be up, so nothing
        is tested or reloaded.
        """
        live = self.coordinator.live_tree
        files = {}
        if not live.exists(MAIN_CONFIG):
            files[MAIN_CONFIG] = self.generator.render_main(self.params.get())
        if not live.exists(STREAM_CONFIG):
            files[STREAM_CONFIG] = self.render_stream()
        if files:
            live.promote(ConfigChangeSet(files=files))
            logger.info(f"Bootstrapped gateway configuration: {', '.join(sorted(files))}")
        return sorted(files)


# Singleton instance
_site_manager: Optional[SiteManager] = None


def get_site_manager() -> SiteManager:
    """Get the global site manager instance."""
    global _site_manager
    if _site_manager is None:
        _site_manager = SiteManager()
    return _site_manager
