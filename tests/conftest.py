"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import ipaddress
import os
import subprocess
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from luceectl.keystore import KeystoreProvisioner


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakeKeytool:
    """Stand-in for ``keytool -genkeypair`` that writes a real PKCS#12 file."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.returncode = 0
        self.stderr = ""

    def __call__(self, cmd: Sequence[str]) -> subprocess.CompletedProcess[str]:
        args = list(cmd)
        self.calls.append(args)
        if self.returncode != 0:
            return subprocess.CompletedProcess(args, self.returncode, "", self.stderr)

        keystore = Path(args[args.index("-keystore") + 1])
        password = args[args.index("-storepass") + 1]
        common_name = args[args.index("-dname") + 1].removeprefix("CN=")
        san_spec = args[args.index("-ext") + 1].removeprefix("SAN=")

        names: list[x509.GeneralName] = []
        for item in san_spec.split(","):
            kind, _, value = item.partition(":")
            if kind == "dns":
                names.append(x509.DNSName(value))
            elif kind == "ip":
                names.append(x509.IPAddress(ipaddress.ip_address(value)))

        now = datetime.now(UTC)
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + timedelta(days=825))
            .add_extension(x509.SubjectAlternativeName(names), critical=False)
            .sign(key, hashes.SHA256())
        )
        keystore.write_bytes(
            pkcs12.serialize_key_and_certificates(
                b"lucli",
                key,
                cert,
                None,
                serialization.BestAvailableEncryption(password.encode("utf-8")),
            )
        )
        return subprocess.CompletedProcess(args, 0, "", "")


@pytest.fixture
def fake_keytool(monkeypatch: pytest.MonkeyPatch) -> FakeKeytool:
    """Replace keytool invocations with :class:`FakeKeytool`."""
    fake = FakeKeytool()
    monkeypatch.setattr(KeystoreProvisioner, "_run_keytool", fake)
    return fake
