"""
Unit tests for proxy site, stream route and template parameter models.

Anything accepted here is rendered verbatim into nginx configuration, so
most tests are about rejecting input that could break out of a directive.
"""

import pytest
from pydantic import ValidationError

from models.proxy import ProxySite, StreamRoute, TemplateParams, sanitize_id


class TestSanitizeId:
    def test_wildcard(self):
        assert sanitize_id("*.example.com") == "_.example.com"

    def test_plain_hostname_unchanged(self):
        assert sanitize_id("app.example.com") == "app.example.com"


class TestProxySite:
    """Test ProxySite validation."""

    def test_id_derived_from_server_name(self):
        site = ProxySite(server_name="App.Example.com", upstream_host="10.0.0.1", upstream_port=80)
        assert site.server_name == "app.example.com"
        assert site.id == "app.example.com"

    def test_camel_case_accepted(self):
        site = ProxySite.model_validate(
            {"serverName": "app.example.com", "upstreamHost": "backend", "upstreamPort": 3000, "authEnabled": True}
        )
        assert site.upstream_host == "backend"
        assert site.auth_enabled is True

    def test_json_output_uses_camel_case(self):
        site = ProxySite(server_name="app.example.com", upstream_host="backend", upstream_port=3000)
        data = site.model_dump(by_alias=True)
        assert data["serverName"] == "app.example.com"
        assert data["upstreamPort"] == 3000

    @pytest.mark.parametrize("port", [0, 65536])
    def test_port_range(self, port):
        with pytest.raises(ValidationError):
            ProxySite(server_name="a.example.com", upstream_host="b", upstream_port=port)

    @pytest.mark.parametrize("host", ["10.0.0.1; return 200", "a b", "host{", ""])
    def test_unsafe_upstream_host(self, host):
        with pytest.raises(ValidationError):
            ProxySite(server_name="a.example.com", upstream_host=host, upstream_port=80)

    def test_ipv6_upstream(self):
        site = ProxySite(server_name="a.example.com", upstream_host="[::1]", upstream_port=80)
        assert site.upstream_host == "[::1]"

    def test_unsafe_cert_path(self):
        with pytest.raises(ValidationError):
            ProxySite(
                server_name="a.example.com", upstream_host="b", upstream_port=80, ssl=True, ssl_cert="/a.crt; evil"
            )

    def test_invalid_server_name(self):
        with pytest.raises(ValidationError):
            ProxySite(server_name="bad name", upstream_host="b", upstream_port=80)

    def test_invalid_scheme(self):
        with pytest.raises(ValidationError):
            ProxySite(server_name="a.example.com", upstream_scheme="ftp", upstream_host="b", upstream_port=80)

    def test_invalid_id(self):
        with pytest.raises(ValidationError):
            ProxySite(id="../etc", server_name="a.example.com", upstream_host="b", upstream_port=80)


class TestStreamRoute:
    """Test StreamRoute validation."""

    def test_defaults(self):
        route = StreamRoute(domain="*.Example.com", backend="10.0.0.1:443")
        assert route.domain == "*.example.com"
        assert route.id == "_.example.com"
        assert route.enabled is True

    @pytest.mark.parametrize("backend", ["10.0.0.1", ":443", "host:0", "host:70000", "host:abc", "a b:443"])
    def test_invalid_backend(self, backend):
        with pytest.raises(ValidationError):
            StreamRoute(domain="a.example.com", backend=backend)

    def test_ipv6_backend(self):
        route = StreamRoute(domain="a.example.com", backend="[2001:db8::1]:443")
        assert route.backend == "[2001:db8::1]:443"


class TestTemplateParams:
    """Test nginx.conf parameter validation."""

    def test_defaults_from_settings(self):
        params = TemplateParams()
        assert params.worker_processes == "auto"
        assert params.worker_connections == 1024

    @pytest.mark.parametrize("value", ["0", "-1", "many"])
    def test_invalid_worker_processes(self, value):
        with pytest.raises(ValidationError):
            TemplateParams(worker_processes=value)

    @pytest.mark.parametrize("value", ["100m", "1g", "512k", "1024"])
    def test_valid_body_size(self, value):
        assert TemplateParams(client_max_body_size=value).client_max_body_size == value

    def test_invalid_body_size(self):
        with pytest.raises(ValidationError):
            TemplateParams(client_max_body_size="10m; include /etc/passwd")
