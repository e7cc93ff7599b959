"""Port planning and conflict checks for server instances."""
from __future__ import annotations

import socket
from collections.abc import Callable
from dataclasses import dataclass

from .config import (
    ServerConfig,
    effective_https_port,
    effective_shutdown_port,
    https_enabled,
)


class PortConflictError(RuntimeError):
    """Raised when an instance's ports collide with each other."""

    def __init__(self, conflicts: list[str]) -> None:
        super().__init__("; ".join(conflicts))
        self.conflicts = conflicts


@dataclass(frozen=True)
class PortPlan:
    """Every port an instance will listen on."""

    http: int
    shutdown: int
    jmx: int
    jmx_enabled: bool = True
    https: int | None = None
    ajp: int | None = None

    def labelled(self) -> list[tuple[str, int]]:
        """Return ``(label, port)`` pairs for the active listeners."""
        pairs = [("HTTP", self.http), ("Shutdown", self.shutdown)]
        if self.jmx_enabled:
            pairs.append(("JMX", self.jmx))
        if self.https is not None:
            pairs.append(("HTTPS", self.https))
        if self.ajp is not None:
            pairs.append(("AJP", self.ajp))
        return pairs


def port_plan(config: ServerConfig) -> PortPlan:
    """Derive the :class:`PortPlan` for *config*."""
    ajp_port = None
    if config.ajp is not None and config.ajp.enabled and config.ajp.port is not None:
        ajp_port = config.ajp.port
    return PortPlan(
        http=config.port,
        shutdown=effective_shutdown_port(config),
        jmx=config.monitoring.jmx.port,
        jmx_enabled=config.monitoring.enabled,
        https=effective_https_port(config) if https_enabled(config) else None,
        ajp=ajp_port,
    )


def find_conflicts(plan: PortPlan) -> list[str]:
    """Return a message for every pair of listeners sharing a port.

    The JMX port is compared even when monitoring is disabled so that
    enabling it later cannot break an otherwise valid configuration.
    """
    conflicts: list[str] = []
    if plan.shutdown == plan.http:
        conflicts.append(
            f"Shutdown port ({plan.shutdown}) and HTTP port ({plan.http}) cannot be the same."
        )
    if plan.http == plan.jmx:
        conflicts.append(
            f"HTTP port ({plan.http}) and JMX port ({plan.jmx}) cannot be the same."
        )
    if plan.shutdown == plan.jmx:
        conflicts.append(
            f"Shutdown port ({plan.shutdown}) and JMX port ({plan.jmx}) cannot be the same. "
            "The shutdown port defaults to HTTP port + 1000."
        )
    if plan.https is not None:
        for label, port in (("HTTP", plan.http), ("Shutdown", plan.shutdown), ("JMX", plan.jmx)):
            if plan.https == port:
                conflicts.append(
                    f"HTTPS port ({plan.https}) and {label} port ({port}) cannot be the same."
                )
    if plan.ajp is not None:
        for label, port in plan.labelled():
            if label != "AJP" and plan.ajp == port:
                conflicts.append(
                    f"AJP port ({plan.ajp}) and {label} port ({port}) cannot be the same."
                )
    return conflicts


def ensure_no_conflicts(plan: PortPlan) -> None:
    """Raise :class:`PortConflictError` when *plan* has internal collisions."""
    conflicts = find_conflicts(plan)
    if conflicts:
        raise PortConflictError(conflicts)


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Return True when a listener could bind *port* on *host*."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def check_availability(
    plan: PortPlan,
    *,
    is_available: Callable[[int], bool] = is_port_available,
) -> dict[str, bool]:
    """Return ``{label: available}`` for each active listener in *plan*."""
    return {label: is_available(port) for label, port in plan.labelled()}


__all__ = [
    "PortConflictError",
    "PortPlan",
    "check_availability",
    "ensure_no_conflicts",
    "find_conflicts",
    "is_port_available",
    "port_plan",
]
