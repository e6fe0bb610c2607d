"""
NGINX configuration generator using Jinja2 templates.

Turns proxy site, stream route and template parameter records into
gateway configuration text. Rendering is pure: the same input always
produces byte-identical output.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound

from config import settings
from core.errors import GatewayError, ValidationError
from models.proxy import ProxySite, StreamRoute, TemplateParams

logger = logging.getLogger(__name__)

# Default template directory
DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"


class ConfigGeneratorError(GatewayError):
    """Base exception for config generator errors."""

    error_type = "config_generator_error"
    status_code = 500

    def __init__(self, message: str, site_name: Optional[str] = None):
        self.site_name = site_name
        super().__init__(message)


class TemplateNotFoundError(ConfigGeneratorError):
    """Template file not found."""


class ConfigGenerator:
    """
    Generates NGINX configuration files from structured data.

    Sites listen on the local HTTPS backend port; the stream block accepts
    public TLS connections, routes them by SNI, and sends unmatched names
    to that backend port.
    """

    def __init__(
        self,
        template_dir: Optional[Path] = None,
        https_backend_port: Optional[int] = None,
        stream_listen_port: Optional[int] = None,
        login_url: Optional[str] = None,
        auth_validate_url: Optional[str] = None,
    ):
        """
        Initialize the config generator.

        Args:
            template_dir: Path to template directory. Uses default if not specified.
            https_backend_port: Port sites listen on (HTTPS_BACKEND_PORT)
            stream_listen_port: Public port of the SNI router (STREAM_LISTEN_PORT)
            login_url: Redirect target for unauthenticated requests (PROXY_LOGIN_URL)
            auth_validate_url: auth_request target (PROXY_AUTH_VALIDATE_URL)
        """
        self.template_dir = template_dir or DEFAULT_TEMPLATE_DIR

        if not self.template_dir.exists():
            raise ConfigGeneratorError(
                f"Template directory not found: {self.template_dir}"
            )

        self.https_backend_port = https_backend_port or settings.https_backend_port
        self.stream_listen_port = stream_listen_port or settings.stream_listen_port
        self.login_url = login_url if login_url is not None else settings.proxy_login_url
        self.auth_validate_url = auth_validate_url or settings.proxy_auth_validate_url

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,  # NGINX configs don't need HTML escaping
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            undefined=StrictUndefined,
        )

        logger.info(f"ConfigGenerator initialized with templates from {self.template_dir}")

    def _template(self, name: str, site_name: Optional[str] = None):
        try:
            return self.env.get_template(name)
        except TemplateNotFound:
            raise TemplateNotFoundError(f"Template not found: {name}", site_name=site_name)

    def render_site(self, site: ProxySite, cert_paths: Optional[tuple[str, str]] = None) -> str:
        """
        Render the server block for a proxy site.

        Args:
            site: Proxy site record
            cert_paths: (cert_path, key_path) of the managed certificate, when
                the site references one; otherwise the site's own paths are used

        Raises:
            ValidationError: SSL without certificate material, or auth
                without a configured login URL
        """
        ssl_cert = ssl_key = None
        if site.ssl:
            ssl_cert, ssl_key = cert_paths or (site.ssl_cert, site.ssl_key)
            if not ssl_cert or not ssl_key:
                raise ValidationError(
                    f"SSL is enabled for {site.server_name} but no certificate is available",
                    suggestion="Select an active certificate or set ssl_cert and ssl_key",
                )

        if site.auth_enabled and not self.login_url:
            raise ValidationError(
                f"Auth is enabled for {site.server_name} but PROXY_LOGIN_URL is not configured",
                suggestion="Set PROXY_LOGIN_URL or disable auth for this site",
            )

        config = self._template("proxy_site.conf.j2", site.server_name).render(
            site=site,
            listen_port=self.https_backend_port,
            ssl_cert=ssl_cert,
            ssl_key=ssl_key,
            login_url=self.login_url,
            auth_validate_url=self.auth_validate_url,
        )

        logger.debug(f"Generated proxy site config for {site.server_name}")
        return config

    def render_route(self, route: StreamRoute) -> str:
        """Render the map entry line for one stream route."""
        macros = self._template("macros.j2").module
        return str(macros.route_entry(route))

    def render_stream(self, routes: Iterable[StreamRoute]) -> str:
        """
        Render stream/routes.conf: the SNI map of enabled routes, in id order,
        and the listening server that passes streams through.
        """
        enabled = sorted((r for r in routes if r.enabled), key=lambda r: r.id)
        config = self._template("stream_routes.conf.j2").render(
            routes=enabled,
            listen_port=self.stream_listen_port,
            default_backend=f"127.0.0.1:{self.https_backend_port}",
        )
        logger.debug(f"Generated stream config with {len(enabled)} route(s)")
        return config

    def render_main(self, params: TemplateParams) -> str:
        """Render nginx.conf."""
        return self._template("nginx.conf.j2").render(params=params)


# Singleton instance
_config_generator: Optional[ConfigGenerator] = None


def get_config_generator() -> ConfigGenerator:
    """
    Get the global config generator instance.

    Returns:
        ConfigGenerator singleton instance
    """
    global _config_generator
    if _config_generator is None:
        _config_generator = ConfigGenerator()
    return _config_generator
