"""
Unit tests for certificate manager.

Tests the lifecycle state machine with a real store and provider registry
and a mocked ACME issuer.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.acme_issuer import ACMEIssuer, IssuanceResult, IssueMode
from core.cert_manager import CertificateLifecycleManager, KeyedLock, is_renewal_eligible, normalize_domains
from core.cert_store import CertificateStore
from core.dns_providers import DNSProviderRegistry
from core.errors import Busy, DomainConflict, IssuerFailure, NotFound, RateLimited, ValidationError
from models.certificate import Certificate, CertificateLogAction, CertificateStatus

EMAIL = "admin@example.com"


def issuance(domain: str = "example.com", days: int = 90) -> IssuanceResult:
    now = datetime.now(timezone.utc)
    return IssuanceResult(
        cert_path=f"/data/nginx/ssl/{domain}.crt",
        key_path=f"/data/nginx/ssl/{domain}.key",
        issuer="R3",
        not_before=now,
        not_after=now + timedelta(days=days),
    )


@pytest.fixture
def store(db):
    return CertificateStore(db=db)


@pytest.fixture
def registry(db, encryption):
    return DNSProviderRegistry(db=db, encryption=encryption)


@pytest.fixture
def issuer():
    issuer = MagicMock()
    issuer.attempt = AsyncMock(side_effect=lambda domains, config, email, mode=IssueMode.ISSUE: issuance(domains[0]))
    issuer.cleanup = AsyncMock(return_value=["removed example.com.crt"])
    return issuer


@pytest.fixture
def manager(store, registry, issuer):
    return CertificateLifecycleManager(store=store, providers=registry, issuer=issuer)


async def make_provider(registry) -> str:
    return await registry.create("Tencent", "tencentcloud", {"secret_id": "sid", "secret_key": "skey"})


async def make_active(store, domain: str, days_left: float, auto_renew: bool = True, provider: str = None) -> Certificate:
    cert = await store.create([domain], provider)
    cert.status = CertificateStatus.ACTIVE
    cert.cert_path = f"/ssl/{domain}.crt"
    cert.key_path = f"/ssl/{domain}.key"
    cert.not_after = datetime.now(timezone.utc) + timedelta(days=days_left)
    cert.auto_renew = auto_renew
    await store.save(cert)
    return cert


class TestNormalizeDomains:
    """Test domain list normalization."""

    def test_lowercases_and_dedupes(self):
        assert normalize_domains([" Example.COM", "www.example.com", "example.com"]) == [
            "example.com",
            "www.example.com",
        ]

    def test_skips_blank_entries(self):
        assert normalize_domains(["", "  ", "example.com"]) == ["example.com"]

    def test_empty_list_rejected(self):
        with pytest.raises(ValidationError, match="At least one domain"):
            normalize_domains([])

    def test_malformed_rejected(self):
        with pytest.raises(ValidationError, match="Invalid domain"):
            normalize_domains(["exa mple.com"])

    def test_wildcard_allowed(self):
        assert normalize_domains(["*.example.com"]) == ["*.example.com"]


class TestKeyedLock:
    """Test the non-queuing per-key lock."""

    @pytest.mark.asyncio
    async def test_second_holder_refused(self):
        locks = KeyedLock()
        async with locks.hold("a"):
            assert locks.is_held("a")
            with pytest.raises(Busy):
                async with locks.hold("a"):
                    pass
            async with locks.hold("b"):
                pass
        assert not locks.is_held("a")

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("a"):
                raise RuntimeError("boom")
        assert not locks.is_held("a")


class TestIssue:
    """Test certificate issuance."""

    @pytest.mark.asyncio
    async def test_issue_success(self, manager, store, registry):
        provider = await make_provider(registry)

        result = await manager.issue(["example.com"], provider, EMAIL)

        assert result.success
        cert = await store.get(result.certificate.id)
        assert cert.status == CertificateStatus.ACTIVE
        assert cert.days_remaining in (89, 90)
        assert cert.issuer == "R3"
        assert cert.cert_path.endswith("example.com.crt")
        assert cert.last_renew_at is not None
        assert cert.error is None

        logs = await store.logs(cert.id)
        assert [entry.action for entry in logs] == [CertificateLogAction.CREATE, CertificateLogAction.CREATE]
        assert logs[0].message.startswith("Issuance requested")
        assert logs[1].message.startswith("Certificate issued, valid until")

    @pytest.mark.asyncio
    async def test_issue_passes_provider_config(self, manager, issuer, registry):
        provider = await make_provider(registry)

        await manager.issue(["example.com", "www.example.com"], provider, EMAIL)

        domains, config, email, mode = issuer.attempt.call_args.args
        assert domains == ["example.com", "www.example.com"]
        assert config.secret_id == "sid"
        assert email == EMAIL
        assert mode == IssueMode.ISSUE

    @pytest.mark.asyncio
    async def test_issue_failure_records_error(self, manager, issuer, store, registry):
        provider = await make_provider(registry)
        issuer.attempt.side_effect = RateLimited("Certificate authority rate limit reached")

        result = await manager.issue(["example.com"], provider, EMAIL)

        assert not result.success
        assert isinstance(result.error, RateLimited)
        cert = await store.get(result.certificate.id)
        assert cert.status == CertificateStatus.ERROR
        assert cert.error == "Certificate authority rate limit reached"
        assert cert.cert_path is None
        logs = await store.logs(cert.id)
        assert logs[-1].action == CertificateLogAction.ERROR

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded(self, manager, store, registry, issuer):
        provider = await make_provider(registry)
        issuer.attempt.side_effect = RuntimeError("disk vanished")

        result = await manager.issue(["example.com"], provider, EMAIL)

        assert isinstance(result.error, IssuerFailure)
        assert (await store.get(result.certificate.id)).status == CertificateStatus.ERROR

    @pytest.mark.asyncio
    async def test_invalid_input_records_nothing(self, manager, store, registry):
        provider = await make_provider(registry)

        with pytest.raises(ValidationError):
            await manager.issue([], provider, EMAIL)
        with pytest.raises(ValidationError):
            await manager.issue(["example.com"], provider, "not-an-email")
        with pytest.raises(NotFound):
            await manager.issue(["example.com"], "missing-provider", EMAIL)

        assert await store.list_certificates() == []

    @pytest.mark.asyncio
    async def test_email_falls_back_to_settings(self, manager, registry, issuer, monkeypatch):
        from core import cert_manager as cert_manager_module

        monkeypatch.setattr(cert_manager_module.settings, "acme_account_email", "ops@example.com")
        provider = await make_provider(registry)

        await manager.issue(["example.com"], provider)

        assert issuer.attempt.call_args.args[2] == "ops@example.com"

    @pytest.mark.asyncio
    async def test_missing_email_rejected(self, manager, registry, monkeypatch):
        from core import cert_manager as cert_manager_module

        monkeypatch.setattr(cert_manager_module.settings, "acme_account_email", "")
        provider = await make_provider(registry)

        with pytest.raises(ValidationError, match="email is required"):
            await manager.issue(["example.com"], provider)

    @pytest.mark.asyncio
    async def test_reissue_reuses_record(self, manager, store, registry):
        provider = await make_provider(registry)
        first = await manager.issue(["example.com"], provider, EMAIL)

        second = await manager.issue(["example.com", "www.example.com"], provider, EMAIL)

        assert second.certificate.id == first.certificate.id
        certs = await store.list_certificates()
        assert len(certs) == 1
        assert certs[0].domains == ["example.com", "www.example.com"]

    @pytest.mark.asyncio
    async def test_activation_listener_called(self, manager, registry):
        provider = await make_provider(registry)
        listener = AsyncMock()
        manager.add_activation_listener(listener)

        result = await manager.issue(["example.com"], provider, EMAIL)

        listener.assert_awaited_once()
        assert listener.call_args.args[0].id == result.certificate.id

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_fail_issue(self, manager, registry):
        provider = await make_provider(registry)
        manager.add_activation_listener(AsyncMock(side_effect=RuntimeError("reload failed")))

        result = await manager.issue(["example.com"], provider, EMAIL)

        assert result.success


class TestRenew:
    """Test renewal and its safety guarantees."""

    @pytest.mark.asyncio
    async def test_renew_success(self, manager, store, registry, issuer):
        provider = await make_provider(registry)
        cert = await make_active(store, "example.com", 10, provider=provider)

        result = await manager.renew(cert.id, EMAIL)

        assert result.success
        assert issuer.attempt.call_args.args[3] == IssueMode.RENEW
        renewed = await store.get(cert.id)
        assert renewed.days_remaining in (89, 90)
        logs = await store.logs(cert.id)
        assert logs[-1].action == CertificateLogAction.RENEW
        assert logs[-1].message.startswith("Certificate renewed, valid until")

    @pytest.mark.asyncio
    async def test_failed_renewal_keeps_material(self, manager, store, registry, issuer):
        provider = await make_provider(registry)
        cert = await make_active(store, "example.com", 10, provider=provider)
        issuer.attempt.side_effect = RateLimited("too many certificates")

        result = await manager.renew(cert.id, EMAIL)

        assert not result.success
        after = await store.get(cert.id)
        assert after.status == CertificateStatus.ERROR
        assert after.error == "too many certificates"
        assert after.cert_path == cert.cert_path
        assert after.key_path == cert.key_path
        assert after.not_after == cert.not_after

    @pytest.mark.asyncio
    async def test_renew_missing_certificate(self, manager):
        with pytest.raises(NotFound):
            await manager.renew("missing", EMAIL)

    @pytest.mark.asyncio
    async def test_renew_with_deleted_provider_records_failure(self, manager, store, registry, issuer):
        provider = await make_provider(registry)
        cert = await make_active(store, "example.com", 10, provider=provider)
        await registry.delete(provider)

        result = await manager.renew(cert.id, EMAIL)

        assert isinstance(result.error, NotFound)
        assert (await store.get(cert.id)).status == CertificateStatus.ERROR
        issuer.attempt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_renew_pending_is_busy(self, manager, store, registry):
        provider = await make_provider(registry)
        cert = await store.create(["example.com"], provider)

        with pytest.raises(Busy):
            await manager.renew(cert.id, EMAIL)

    @pytest.mark.asyncio
    async def test_concurrent_renew_is_busy(self, manager, store, registry, issuer):
        provider = await make_provider(registry)
        cert = await make_active(store, "example.com", 10, provider=provider)
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_attempt(domains, config, email, mode=IssueMode.ISSUE):
            started.set()
            await release.wait()
            return issuance(domains[0])

        issuer.attempt.side_effect = slow_attempt

        first = asyncio.create_task(manager.renew(cert.id, EMAIL))
        await started.wait()

        with pytest.raises(Busy):
            await manager.renew(cert.id, EMAIL)
        with pytest.raises(Busy):
            await manager.cleanup(cert.id)

        release.set()
        result = await first
        assert result.success
        assert issuer.attempt.await_count == 1

    @pytest.mark.asyncio
    async def test_unchanged_expiry_is_not_a_renewal(self, manager, store, registry, issuer):
        provider = await make_provider(registry)
        cert = await make_active(store, "example.com", 45, provider=provider)
        stored = await store.get(cert.id)
        issuer.attempt.side_effect = None
        issuer.attempt.return_value = IssuanceResult(
            cert_path=stored.cert_path,
            key_path=stored.key_path,
            issuer="R3",
            not_before=stored.not_after - timedelta(days=90),
            not_after=stored.not_after,
        )

        result = await manager.renew(cert.id, EMAIL)

        assert result.success
        assert result.renewed is False
        after = await store.get(cert.id)
        assert after.status == CertificateStatus.ACTIVE
        assert after.last_renew_at is None
        logs = await store.logs(cert.id)
        assert logs[-1].message.startswith("No renewal needed, valid until")

    @pytest.mark.asyncio
    async def test_client_reports_not_due(self, manager, store, registry, issuer):
        provider = await make_provider(registry)
        cert = await make_active(store, "example.com", 45, provider=provider)
        not_due = issuance(days=46)
        not_due.renewed = False
        issuer.attempt.side_effect = None
        issuer.attempt.return_value = not_due

        result = await manager.renew(cert.id, EMAIL)

        assert result.renewed is False
        assert (await store.logs(cert.id))[-1].message.startswith("No renewal needed")


class TestEligibility:
    """Test renewal eligibility."""

    @pytest.mark.asyncio
    async def test_29_days_eligible(self, store):
        cert = await make_active(store, "a.example.com", 29.5)
        assert cert.days_remaining == 29
        assert is_renewal_eligible(cert)

    @pytest.mark.asyncio
    async def test_31_days_not_eligible(self, store):
        cert = await make_active(store, "b.example.com", 31.5)
        assert not is_renewal_eligible(cert)

    @pytest.mark.asyncio
    async def test_auto_renew_off_not_eligible(self, store):
        cert = await make_active(store, "c.example.com", 5, auto_renew=False)
        assert not is_renewal_eligible(cert)

    @pytest.mark.asyncio
    async def test_no_expiry_not_eligible(self, store):
        cert = await store.create(["d.example.com"], None)
        assert not is_renewal_eligible(cert)

    @pytest.mark.asyncio
    async def test_renewal_eligible_by_id(self, manager, store):
        cert = await make_active(store, "e.example.com", 3)
        assert await manager.renewal_eligible(cert.id) is True


class TestRenewalSweep:
    """Test the periodic renewal sweep."""

    @pytest.mark.asyncio
    async def test_renews_only_eligible(self, manager, store, registry, issuer):
        provider = await make_provider(registry)
        due = await make_active(store, "due.example.com", 5, provider=provider)
        await make_active(store, "fresh.example.com", 60, provider=provider)
        await make_active(store, "manual.example.com", 5, auto_renew=False, provider=provider)

        summary = await manager.check_renewals(EMAIL)

        assert summary.checked == 3
        assert summary.renewed == [due.id]
        assert summary.failed == []
        assert issuer.attempt.await_count == 1

    @pytest.mark.asyncio
    async def test_failures_are_counted(self, manager, store, registry, issuer):
        provider = await make_provider(registry)
        due = await make_active(store, "due.example.com", 5, provider=provider)
        issuer.attempt.side_effect = RateLimited("slow down")

        summary = await manager.check_renewals(EMAIL)

        assert summary.failed == [due.id]
        assert (await store.get(due.id)).cert_path == due.cert_path

    @pytest.mark.asyncio
    async def test_not_due_counted_as_skipped(self, manager, store, registry, issuer):
        provider = await make_provider(registry)
        due = await make_active(store, "due.example.com", 5, provider=provider)
        not_due = issuance("due.example.com", days=5)
        not_due.renewed = False
        issuer.attempt.side_effect = None
        issuer.attempt.return_value = not_due

        summary = await manager.check_renewals(EMAIL)

        assert summary.renewed == []
        assert summary.skipped == [due.id]

    @pytest.mark.asyncio
    async def test_skipped_without_email(self, manager, store, issuer, monkeypatch):
        from core import cert_manager as cert_manager_module

        monkeypatch.setattr(cert_manager_module.settings, "acme_account_email", "")
        await make_active(store, "due.example.com", 5)

        summary = await manager.check_renewals()

        assert summary.checked == 0
        issuer.attempt.assert_not_awaited()


class TestMaintenance:
    """Test cleanup, deletion, auto-renew and startup recovery."""

    @pytest.mark.asyncio
    async def test_cleanup_logs(self, manager, store, registry, issuer):
        provider = await make_provider(registry)
        cert = await make_active(store, "example.com", 10, provider=provider)

        await manager.cleanup(cert.id)

        domains, config = issuer.cleanup.call_args.args
        assert domains == ["example.com"]
        assert config.secret_id == "sid"
        logs = await store.logs(cert.id)
        assert logs[-1].action == CertificateLogAction.CLEANUP
        assert "removed example.com.crt" in logs[-1].message

    @pytest.mark.asyncio
    async def test_cleanup_without_provider(self, manager, store, issuer):
        cert = await make_active(store, "example.com", 10, provider="gone")

        await manager.cleanup(cert.id)

        assert issuer.cleanup.call_args.args[1] is None

    @pytest.mark.asyncio
    async def test_set_auto_renew(self, manager, store):
        cert = await make_active(store, "example.com", 10)

        await manager.set_auto_renew(cert.id, False)

        assert (await store.get(cert.id)).auto_renew is False

    @pytest.mark.asyncio
    async def test_delete(self, manager, store):
        cert = await make_active(store, "example.com", 10)

        await manager.delete(cert.id)

        with pytest.raises(NotFound):
            await store.get(cert.id)

    @pytest.mark.asyncio
    async def test_recover_interrupted(self, manager, store):
        stale = await store.create(["stale.example.com"], None)
        active = await make_active(store, "ok.example.com", 30)

        recovered = await manager.recover_interrupted()

        assert recovered == 1
        after = await store.get(stale.id)
        assert after.status == CertificateStatus.ERROR
        assert after.error == "Interrupted before completion"
        assert (await store.get(active.id)).status == CertificateStatus.ACTIVE


class TestWithClient:
    """Drive the real ACME issuer through a scripted lego runner."""

    @pytest.fixture
    def lego_manager(self, store, registry, fake_runner, tmp_path):
        issuer = ACMEIssuer(
            runner=fake_runner,
            lego_dir=tmp_path / "lego",
            ssl_dir=tmp_path / "ssl",
            lego_binary="lego",
            timeout=30,
            cleanup_hook="",
        )
        return CertificateLifecycleManager(store=store, providers=registry, issuer=issuer)

    @pytest.mark.asyncio
    async def test_unstartable_client_never_leaves_pending(self, lego_manager, store, registry, fake_runner):
        provider = await make_provider(registry)
        fake_runner.handler = lambda command, env: PermissionError(13, "Permission denied", "lego")

        result = await lego_manager.issue(["example.com"], provider, EMAIL)

        assert isinstance(result.error, IssuerFailure)
        cert = await store.get(result.certificate.id)
        assert cert.status == CertificateStatus.ERROR
        assert "could not be started" in cert.error

        retry = await lego_manager.renew(cert.id, EMAIL)
        assert isinstance(retry.error, IssuerFailure)

    @pytest.mark.asyncio
    async def test_conflict_cleanup_then_reissue(
        self, lego_manager, store, registry, fake_runner, tmp_path, self_signed, command_result
    ):
        provider = await make_provider(registry)
        cert_dir = tmp_path / "lego" / "certificates"
        stale = cert_dir / "example.com.json"
        stale.parent.mkdir(parents=True)
        stale.write_text("{}")

        fake_runner.handler = lambda command, env: command_result(
            exit_code=1, stderr="[tencentcloud] CreateRecord: record already exists"
        )
        first = await lego_manager.issue(["example.com"], provider, EMAIL)

        assert isinstance(first.error, DomainConflict)
        cert_id = first.certificate.id
        failed = await store.get(cert_id)
        assert failed.status == CertificateStatus.ERROR
        assert "already exists" in failed.error

        await lego_manager.cleanup(cert_id)
        assert not stale.exists()

        def lego_ok(command, env):
            self_signed(cert_dir / "example.com.crt", cert_dir / "example.com.key", issuer_cn="R3")
            return command_result(stdout="Server responded with a certificate.")

        fake_runner.handler = lego_ok
        second = await lego_manager.issue(["example.com"], provider, EMAIL)

        assert second.success
        assert second.certificate.id == cert_id
        issued = await store.get(cert_id)
        assert issued.status == CertificateStatus.ACTIVE
        assert issued.error is None
        assert issued.cert_path == str(tmp_path / "ssl" / "example.com.crt")
        actions = [entry.action for entry in await store.logs(cert_id)]
        assert actions == [
            CertificateLogAction.CREATE,
            CertificateLogAction.ERROR,
            CertificateLogAction.CLEANUP,
            CertificateLogAction.CREATE,
            CertificateLogAction.CREATE,
        ]
