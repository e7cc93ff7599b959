"""Per-instance PKCS#12 keystore provisioning.

Each instance keeps its TLS material under ``<instance>/certs/``:

``keystore.p12``
    Self-signed RSA certificate generated with the JDK ``keytool``.
``keystore.pass``
    The random store password, readable by the owner only.

The two files are only valid as a pair; a lone file is discarded and both are
regenerated.
"""
from __future__ import annotations

import logging
import os
import secrets
import subprocess
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives.serialization import pkcs12

from .config import ServerConfig, effective_host

LOGGER = logging.getLogger(__name__)

CERTS_DIR_NAME = "certs"
KEYSTORE_FILE_NAME = "keystore.p12"
PASSWORD_FILE_NAME = "keystore.pass"
KEY_ALIAS = "lucli"
KEY_SIZE = 2048
VALIDITY_DAYS = 825
PLANNED_PASSWORD = f"<stored in {CERTS_DIR_NAME}/{PASSWORD_FILE_NAME}>"
_SECRET_MODE = 0o600


class KeystoreError(OSError):
    """Raised when keystore material cannot be created or read."""

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


@dataclass(frozen=True)
class KeystoreInfo:
    """Keystore location and password handed to the connector."""

    keystore_path: Path
    password: str
    planned: bool = False


@dataclass(frozen=True)
class KeystoreStatus:
    """Summary of an instance keystore on disk."""

    keystore_path: Path
    password_path: Path
    exists: bool
    alias: str | None = None
    subject: str | None = None
    dns_names: list[str] = field(default_factory=list)
    ip_addresses: list[str] = field(default_factory=list)
    not_valid_before: datetime | None = None
    not_valid_after: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "keystore": str(self.keystore_path),
            "password_file": str(self.password_path),
            "exists": self.exists,
            "alias": self.alias,
            "subject": self.subject,
            "dns_names": list(self.dns_names),
            "ip_addresses": list(self.ip_addresses),
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
        }


def subject_alt_names(host: str) -> str:
    """Return the keytool ``SAN=`` value covering localhost and *host*."""
    names = ["dns:localhost"]
    if host.lower() != "localhost":
        names.append(f"dns:{host}")
    names.append("ip:127.0.0.1")
    return ",".join(names)


class KeystoreProvisioner:
    """Create and inspect instance keystores."""

    def __init__(self, keytool_bin: str = "keytool") -> None:
        self.keytool_bin = keytool_bin

    def ensure_keystore(
        self,
        instance_dir: Path | None,
        config: ServerConfig,
        write_files: bool,
    ) -> KeystoreInfo:
        """Return keystore details, generating the files when needed.

        With ``write_files`` False nothing is touched and a planned path with a
        placeholder password is returned.
        """
        if not write_files:
            base = Path(CERTS_DIR_NAME)
            if instance_dir is not None:
                base = instance_dir / CERTS_DIR_NAME
            return KeystoreInfo(
                keystore_path=base / KEYSTORE_FILE_NAME,
                password=PLANNED_PASSWORD,
                planned=True,
            )
        if instance_dir is None:
            raise KeystoreError("An instance directory is required to create a keystore.")

        certs_dir = (instance_dir / CERTS_DIR_NAME).absolute()
        keystore_path = certs_dir / KEYSTORE_FILE_NAME
        password_path = certs_dir / PASSWORD_FILE_NAME
        try:
            certs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise KeystoreError(f"Unable to create {certs_dir}: {exc}") from exc

        if keystore_path.is_file() and password_path.is_file():
            password = self._read_password(password_path)
            if password:
                return KeystoreInfo(keystore_path=keystore_path, password=password)
            LOGGER.warning("Keystore password file %s is empty; regenerating", password_path)

        for stale in (keystore_path, password_path):
            if stale.exists():
                LOGGER.warning("Discarding incomplete keystore material %s", stale)
                stale.unlink()

        password = secrets.token_urlsafe(32)
        try:
            _write_secret(password_path, password)
            self._generate(keystore_path, password, effective_host(config))
        except Exception:
            password_path.unlink(missing_ok=True)
            keystore_path.unlink(missing_ok=True)
            raise
        _restrict_permissions(keystore_path)
        return KeystoreInfo(keystore_path=keystore_path, password=password)

    def inspect(self, instance_dir: Path) -> KeystoreStatus:
        """Open the instance keystore and describe its certificate."""
        certs_dir = instance_dir / CERTS_DIR_NAME
        keystore_path = certs_dir / KEYSTORE_FILE_NAME
        password_path = certs_dir / PASSWORD_FILE_NAME
        if not (keystore_path.is_file() and password_path.is_file()):
            return KeystoreStatus(
                keystore_path=keystore_path,
                password_path=password_path,
                exists=False,
            )

        password = self._read_password(password_path)
        try:
            bundle = pkcs12.load_pkcs12(keystore_path.read_bytes(), password.encode("utf-8"))
        except (OSError, ValueError) as exc:
            raise KeystoreError(f"Unable to open keystore {keystore_path}: {exc}") from exc
        if bundle.cert is None:
            raise KeystoreError(f"Keystore {keystore_path} does not contain a certificate.")

        certificate = bundle.cert.certificate
        alias = bundle.cert.friendly_name.decode("utf-8") if bundle.cert.friendly_name else None
        dns_names: list[str] = []
        ip_addresses: list[str] = []
        try:
            san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        except x509.ExtensionNotFound:
            pass
        else:
            dns_names = list(san.value.get_values_for_type(x509.DNSName))
            ip_addresses = [str(ip) for ip in san.value.get_values_for_type(x509.IPAddress)]

        return KeystoreStatus(
            keystore_path=keystore_path,
            password_path=password_path,
            exists=True,
            alias=alias,
            subject=certificate.subject.rfc4514_string(),
            dns_names=dns_names,
            ip_addresses=ip_addresses,
            not_valid_before=_as_utc(certificate.not_valid_before_utc),
            not_valid_after=_as_utc(certificate.not_valid_after_utc),
        )

    # ------------------------------------------------------------------
    def _generate(self, keystore_path: Path, password: str, host: str) -> None:
        cmd = [
            self.keytool_bin,
            "-genkeypair",
            "-alias",
            KEY_ALIAS,
            "-keyalg",
            "RSA",
            "-keysize",
            str(KEY_SIZE),
            "-validity",
            str(VALIDITY_DAYS),
            "-storetype",
            "PKCS12",
            "-keystore",
            str(keystore_path),
            "-storepass",
            password,
            "-dname",
            f"CN={host}",
            "-ext",
            f"SAN={subject_alt_names(host)}",
        ]
        try:
            result = self._run_keytool(cmd)
        except OSError as exc:
            raise KeystoreError(
                f"Unable to run {self.keytool_bin}: {exc}. A JDK is required for HTTPS."
            ) from exc
        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            raise KeystoreError(
                f"keytool exited with status {result.returncode} while creating {keystore_path}.",
                output=output.strip(),
            )
        if not keystore_path.is_file():
            raise KeystoreError(
                f"keytool reported success but {keystore_path} was not created.",
                output=output.strip(),
            )

    def _run_keytool(self, cmd: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Execute keytool (isolated for testing)."""
        return subprocess.run(  # noqa: S603
            list(cmd),
            check=False,
            capture_output=True,
            text=True,
        )

    @staticmethod
    def _read_password(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise KeystoreError(f"Unable to read keystore password {path}: {exc}") from exc


def _write_secret(path: Path, value: str) -> None:
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(value)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)
    _restrict_permissions(path)


def _restrict_permissions(path: Path) -> None:
    try:
        os.chmod(path, _SECRET_MODE)
    except (OSError, NotImplementedError) as exc:
        LOGGER.debug("Could not restrict permissions on %s: %s", path, exc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "KEY_ALIAS",
    "KeystoreError",
    "KeystoreInfo",
    "KeystoreProvisioner",
    "KeystoreStatus",
    "PLANNED_PASSWORD",
    "subject_alt_names",
]
