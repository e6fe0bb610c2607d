"""
Unit tests for the file-backed record stores and atomic writes.
"""

import json
import stat

import pytest

from core.errors import NotFound
from core.file_helpers import safe_relative_path, write_atomic
from core.site_store import ProxySiteStore, StreamRouteStore, TemplateParamsStore
from models.proxy import ProxySite, StreamRoute, TemplateParams


class TestWriteAtomic:
    def test_replaces_content_and_mode(self, tmp_path):
        target = tmp_path / "nested" / "file.key"
        write_atomic(target, "old")
        write_atomic(target, b"new", 0o600)

        assert target.read_bytes() == b"new"
        assert stat.S_IMODE(target.stat().st_mode) == 0o600
        assert [p.name for p in target.parent.iterdir()] == ["file.key"]

    @pytest.mark.parametrize("path", ["/abs.conf", "../x.conf", "a/../../x.conf", ""])
    def test_safe_relative_path_rejects(self, path):
        with pytest.raises(ValueError):
            safe_relative_path(path)


class TestProxySiteStore:
    """Test JSON record persistence."""

    def test_save_get_list(self, tmp_path):
        store = ProxySiteStore(tmp_path / "sites")
        store.save(ProxySite(server_name="b.example.com", upstream_host="h", upstream_port=80))
        store.save(ProxySite(server_name="a.example.com", upstream_host="h", upstream_port=81))

        assert [s.id for s in store.list()] == ["a.example.com", "b.example.com"]
        assert store.get("a.example.com").upstream_port == 81
        assert store.exists("b.example.com")

    def test_records_stored_in_snake_case(self, tmp_path):
        store = ProxySiteStore(tmp_path / "sites")
        store.save(ProxySite(server_name="a.example.com", upstream_host="h", upstream_port=80))

        data = json.loads((tmp_path / "sites" / "a.example.com.json").read_text())
        assert data["server_name"] == "a.example.com"

    def test_missing(self, tmp_path):
        store = ProxySiteStore(tmp_path / "sites")
        assert store.list() == []
        with pytest.raises(NotFound):
            store.get("x")
        with pytest.raises(NotFound):
            store.delete("x")

    def test_unreadable_file_skipped(self, tmp_path):
        store = ProxySiteStore(tmp_path / "sites")
        store.save(ProxySite(server_name="a.example.com", upstream_host="h", upstream_port=80))
        (tmp_path / "sites" / "junk.json").write_text("{not json")

        assert [s.id for s in store.list()] == ["a.example.com"]

    def test_referencing_certificate(self, tmp_path):
        store = ProxySiteStore(tmp_path / "sites")
        store.save(
            ProxySite(server_name="a.example.com", upstream_host="h", upstream_port=80, ssl=True, certificate_id="c1")
        )
        store.save(ProxySite(server_name="b.example.com", upstream_host="h", upstream_port=80, certificate_id="c1"))

        assert [s.id for s in store.referencing_certificate("c1")] == ["a.example.com"]


class TestStreamRouteStore:
    def test_delete(self, tmp_path):
        store = StreamRouteStore(tmp_path / "routes")
        store.save(StreamRoute(domain="git.example.com", backend="h:443"))

        store.delete("git.example.com")

        assert store.list() == []


class TestTemplateParamsStore:
    def test_defaults_when_missing(self, tmp_path):
        assert TemplateParamsStore(tmp_path / "params.json").get() == TemplateParams()

    def test_round_trip(self, tmp_path):
        store = TemplateParamsStore(tmp_path / "params.json")
        store.save(TemplateParams(worker_connections=4096))
        assert store.get().worker_connections == 4096

    def test_invalid_content_falls_back(self, tmp_path):
        path = tmp_path / "params.json"
        path.write_text('{"worker_processes": "lots"}')
        assert TemplateParamsStore(path).get() == TemplateParams()
