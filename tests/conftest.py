"""
Global test fixtures.

Every component takes its collaborators as constructor arguments, so tests
build them against temporary directories and a scripted command runner
instead of touching the real nginx or ACME client.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "api"))

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from core.command_runner import CommandResult
from core.database import Database
from core.encryption_service import EncryptionService


def make_result(exit_code: int = 0, stdout: str = "", stderr: str = "", command=None) -> CommandResult:
    return CommandResult(
        command=command or ["fake"],
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        duration_ms=1,
    )


class FakeRunner:
    """
    Scripted stand-in for CommandRunner.

    `handler(command, env)` decides the outcome; it may return a
    CommandResult or an exception instance to raise. Without a handler
    every command succeeds silently.
    """

    def __init__(self, handler=None):
        self.handler = handler
        self.calls = []

    async def run(self, command, timeout=None, env=None, cwd=None):
        self.calls.append(SimpleNamespace(command=list(command), timeout=timeout, env=env))
        if self.handler is None:
            return make_result(command=command)
        outcome = self.handler(list(command), env)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def commands_with(self, flag: str) -> list:
        return [c.command for c in self.calls if flag in c.command]


def write_self_signed(
    cert_path: Path,
    key_path: Path,
    common_name: str = "example.com",
    days: int = 90,
    issuer_cn: str = "Test CA",
) -> datetime:
    """Write a PEM certificate and key; returns its not_after."""
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    not_after = now + timedelta(days=days)
    cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn)]))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_path.parent.mkdir(parents=True, exist_ok=True)
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return not_after


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def db(tmp_path):
    """SQLite database in a temp dir; the schema is created on first use."""
    return Database(str(tmp_path / "test.db"))


@pytest.fixture
def encryption():
    return EncryptionService(passphrase="test-passphrase")


@pytest.fixture
def self_signed():
    return write_self_signed


@pytest.fixture
def command_result():
    """Factory for CommandResult values returned by FakeRunner handlers."""
    return make_result
