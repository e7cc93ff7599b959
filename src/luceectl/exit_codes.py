"""Exit codes returned by ``luceectl`` commands.

``VALIDATION`` covers problems the user can fix in ``lucee.json`` or the
tool settings (bad values, port collisions, an unusable webroot, unparseable
``server.xml``). ``ENVIRONMENT`` covers the host: a missing JDK, a failing
``keytool`` or an unwritable instance directory.
"""
from __future__ import annotations

from enum import IntEnum

from .config import ConfigError
from .keystore import KeystoreError
from .ports import PortConflictError
from .provisioner import ProvisionError
from .server_xml import ServerXmlError


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3


_VALIDATION_ERRORS: tuple[type[BaseException], ...] = (
    ConfigError,
    PortConflictError,
    ServerXmlError,
)
_ENVIRONMENT_ERRORS: tuple[type[BaseException], ...] = (
    KeystoreError,
    ProvisionError,
    OSError,
)


def exit_code_for(exc: BaseException) -> ExitCode:
    """Map a provisioning failure onto the exit code the CLI reports."""
    if isinstance(exc, _VALIDATION_ERRORS):
        return ExitCode.VALIDATION
    if isinstance(exc, _ENVIRONMENT_ERRORS):
        return ExitCode.ENVIRONMENT
    raise TypeError(f"No exit code mapped for {type(exc).__name__}") from exc


__all__ = ["ExitCode", "exit_code_for"]
