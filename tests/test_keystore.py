"""Tests for instance keystore provisioning."""
from __future__ import annotations

import stat
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from luceectl.config import ServerConfig
from luceectl.keystore import (
    PLANNED_PASSWORD,
    KeystoreError,
    KeystoreProvisioner,
    subject_alt_names,
)

if TYPE_CHECKING:
    from conftest import FakeKeytool


def test_dry_run_touches_nothing(tmp_path: Path) -> None:
    """Planning returns a path and placeholder without any I/O."""
    instance = tmp_path / "instance"

    info = KeystoreProvisioner().ensure_keystore(instance, ServerConfig(), write_files=False)

    assert info.planned is True
    assert info.keystore_path == instance / "certs" / "keystore.p12"
    assert info.password == PLANNED_PASSWORD == "<stored in certs/keystore.pass>"
    assert not instance.exists()


def test_dry_run_without_instance_dir() -> None:
    """A relative planned path is returned when no instance is known."""
    info = KeystoreProvisioner().ensure_keystore(None, ServerConfig(), write_files=False)

    assert info.keystore_path == Path("certs/keystore.p12")


def test_generates_keystore_and_password(tmp_path: Path, fake_keytool: FakeKeytool) -> None:
    """Both files are created with owner-only permissions."""
    config = ServerConfig(host="app.local")

    info = KeystoreProvisioner("/opt/jdk/bin/keytool").ensure_keystore(
        tmp_path, config, write_files=True
    )

    certs = tmp_path / "certs"
    assert info.planned is False
    assert info.keystore_path == certs / "keystore.p12"
    assert info.keystore_path.is_absolute()
    assert (certs / "keystore.pass").read_text() == info.password
    assert len(info.password) >= 43
    for path in (certs / "keystore.p12", certs / "keystore.pass"):
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    (cmd,) = fake_keytool.calls
    assert cmd[:2] == ["/opt/jdk/bin/keytool", "-genkeypair"]
    assert cmd[cmd.index("-alias") + 1] == "lucli"
    assert cmd[cmd.index("-keysize") + 1] == "2048"
    assert cmd[cmd.index("-validity") + 1] == "825"
    assert cmd[cmd.index("-storetype") + 1] == "PKCS12"
    assert cmd[cmd.index("-storepass") + 1] == info.password
    assert cmd[cmd.index("-dname") + 1] == "CN=app.local"
    assert cmd[cmd.index("-ext") + 1] == "SAN=dns:localhost,dns:app.local,ip:127.0.0.1"


def test_existing_material_is_reused(tmp_path: Path, fake_keytool: FakeKeytool) -> None:
    """A second call returns the stored password without regenerating."""
    provisioner = KeystoreProvisioner()
    first = provisioner.ensure_keystore(tmp_path, ServerConfig(), write_files=True)
    keystore_bytes = first.keystore_path.read_bytes()
    (tmp_path / "certs" / "keystore.pass").write_text(first.password + "\n")

    second = provisioner.ensure_keystore(tmp_path, ServerConfig(), write_files=True)

    assert second.password == first.password
    assert second.keystore_path.read_bytes() == keystore_bytes
    assert len(fake_keytool.calls) == 1


@pytest.mark.parametrize("survivor", ["keystore.p12", "keystore.pass"])
def test_partial_state_is_regenerated(
    tmp_path: Path,
    fake_keytool: FakeKeytool,
    survivor: str,
) -> None:
    """A lone keystore or password file is discarded."""
    certs = tmp_path / "certs"
    certs.mkdir()
    (certs / survivor).write_text("stale")

    info = KeystoreProvisioner().ensure_keystore(tmp_path, ServerConfig(), write_files=True)

    assert info.password != "stale"
    assert (certs / "keystore.pass").read_text() == info.password
    assert (certs / "keystore.p12").read_bytes() != b"stale"
    assert len(fake_keytool.calls) == 1


def test_keytool_failure_cleans_up(tmp_path: Path, fake_keytool: FakeKeytool) -> None:
    """A failing keytool leaves no half-written material behind."""
    fake_keytool.returncode = 1
    fake_keytool.stderr = "keytool error: java.lang.Exception: boom"

    with pytest.raises(KeystoreError) as excinfo:
        KeystoreProvisioner().ensure_keystore(tmp_path, ServerConfig(), write_files=True)

    assert isinstance(excinfo.value, OSError)
    assert "boom" in excinfo.value.output
    assert not (tmp_path / "certs" / "keystore.pass").exists()
    assert not (tmp_path / "certs" / "keystore.p12").exists()


def test_missing_keytool_binary(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """An absent keytool surfaces as KeystoreError."""

    def missing(cmd: object) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError("keytool")

    provisioner = KeystoreProvisioner("keytool-does-not-exist")
    monkeypatch.setattr(provisioner, "_run_keytool", missing)

    with pytest.raises(KeystoreError, match="A JDK is required"):
        provisioner.ensure_keystore(tmp_path, ServerConfig(), write_files=True)
    assert not (tmp_path / "certs" / "keystore.pass").exists()


def test_subject_alt_names() -> None:
    """localhost is not listed twice."""
    assert subject_alt_names("localhost") == "dns:localhost,ip:127.0.0.1"
    assert subject_alt_names("LOCALHOST") == "dns:localhost,ip:127.0.0.1"
    assert subject_alt_names("shop.test") == "dns:localhost,dns:shop.test,ip:127.0.0.1"


@pytest.mark.mutation_timeout
def test_inspect_reports_certificate(tmp_path: Path, fake_keytool: FakeKeytool) -> None:
    """inspect opens the generated keystore with its stored password."""
    provisioner = KeystoreProvisioner()
    provisioner.ensure_keystore(tmp_path, ServerConfig(host="shop.test"), write_files=True)

    status = provisioner.inspect(tmp_path)

    assert status.exists is True
    assert status.alias == "lucli"
    assert status.subject == "CN=shop.test"
    assert status.dns_names == ["localhost", "shop.test"]
    assert status.ip_addresses == ["127.0.0.1"]
    assert status.not_valid_after is not None and status.not_valid_before is not None
    assert status.not_valid_after > status.not_valid_before
    assert status.to_dict()["alias"] == "lucli"


def test_inspect_missing_keystore(tmp_path: Path) -> None:
    """A missing keystore is reported, not raised."""
    status = KeystoreProvisioner().inspect(tmp_path)

    assert status.exists is False
    assert status.keystore_path == tmp_path / "certs" / "keystore.p12"


def test_inspect_wrong_password(tmp_path: Path, fake_keytool: FakeKeytool) -> None:
    """A keystore that cannot be opened raises KeystoreError."""
    provisioner = KeystoreProvisioner()
    provisioner.ensure_keystore(tmp_path, ServerConfig(), write_files=True)
    (tmp_path / "certs" / "keystore.pass").write_text("wrong")

    with pytest.raises(KeystoreError, match="Unable to open keystore"):
        provisioner.inspect(tmp_path)
