"""Provision a named server instance from its project configuration."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig, ServerConfig
from .keystore import KeystoreInfo, KeystoreProvisioner
from .ports import PortPlan, ensure_no_conflicts, port_plan
from .server_xml import ServerXmlPatcher, atomic_write_text
from .web_xml import patch_web_xml

LOGGER = logging.getLogger(__name__)

# Used when an instance has no server.xml yet.
MINIMAL_SERVER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<Server port="8005" shutdown="SHUTDOWN">
  <Listener className="org.apache.catalina.startup.VersionLoggerListener" />
  <Service name="Catalina">
    <Connector port="8080" protocol="HTTP/1.1" connectionTimeout="20000" />
    <Engine name="Catalina" defaultHost="localhost">
      <Host name="localhost" appBase="webapps" unpackWARs="true" autoDeploy="true" />
    </Engine>
  </Service>
</Server>
"""


class ProvisionError(RuntimeError):
    """Raised when an instance cannot be provisioned."""


@dataclass(frozen=True)
class ProvisionResult:
    """What :meth:`InstanceProvisioner.provision` produced."""

    name: str
    instance_dir: Path
    server_xml: Path
    document: str
    changed: bool
    ports: PortPlan
    keystore: KeystoreInfo | None = None
    rewrite_config: Path | None = None
    web_xml: Path | None = None
    dry_run: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable summary (never includes the password)."""
        return {
            "name": self.name,
            "instance_dir": str(self.instance_dir),
            "server_xml": str(self.server_xml),
            "changed": self.changed,
            "dry_run": self.dry_run,
            "ports": {label.lower(): port for label, port in self.ports.labelled()},
            "keystore": str(self.keystore.keystore_path) if self.keystore else None,
            "rewrite_config": str(self.rewrite_config) if self.rewrite_config else None,
            "web_xml": str(self.web_xml) if self.web_xml else None,
        }


class InstanceProvisioner:
    """Render and persist ``conf/server.xml`` for server instances."""

    def __init__(
        self,
        app_config: AppConfig,
        *,
        keystores: KeystoreProvisioner | None = None,
        patcher: ServerXmlPatcher | None = None,
    ) -> None:
        self.app_config = app_config
        self.keystores = keystores or KeystoreProvisioner(app_config.keytool_bin)
        self.patcher = patcher or ServerXmlPatcher(self.keystores)

    def instance_dir(self, config: ServerConfig, project_dir: Path) -> Path:
        """Return the instance directory for *config*."""
        return self.app_config.instance_dir(self._name(config, project_dir))

    def provision(
        self,
        config: ServerConfig,
        project_dir: Path,
        *,
        dry_run: bool = False,
    ) -> ProvisionResult:
        """Patch ``server.xml`` and guard ``lucee.json`` in ``conf/web.xml``.

        Nothing is written when *dry_run* is set.
        """
        name = self._name(config, project_dir)
        plan = port_plan(config)
        ensure_no_conflicts(plan)

        instance_dir = self.app_config.instance_dir(name)
        server_xml = instance_dir / "conf" / "server.xml"
        if server_xml.is_file():
            try:
                base_document = server_xml.read_text(encoding="utf-8")
            except OSError as exc:
                raise ProvisionError(f"Unable to read {server_xml}: {exc}") from exc
        else:
            LOGGER.info("No server.xml at %s; starting from the minimal template", server_xml)
            base_document = MINIMAL_SERVER_XML

        result = self.patcher.apply(
            base_document,
            config,
            project_dir,
            instance_dir,
            write_files=not dry_run,
        )
        changed = result.document != base_document or not server_xml.is_file()
        if changed and not dry_run:
            try:
                atomic_write_text(server_xml, result.document)
            except OSError as exc:
                raise ProvisionError(f"Unable to write {server_xml}: {exc}") from exc

        web_xml: Path | None = None
        if not dry_run:
            candidate = instance_dir / "conf" / "web.xml"
            try:
                if patch_web_xml(candidate):
                    changed = True
            except OSError as exc:
                raise ProvisionError(f"Unable to update {candidate}: {exc}") from exc
            if candidate.is_file():
                web_xml = candidate

        return ProvisionResult(
            name=name,
            instance_dir=instance_dir,
            server_xml=server_xml,
            document=result.document,
            changed=changed,
            ports=plan,
            keystore=result.keystore,
            rewrite_config=result.rewrite_config,
            web_xml=web_xml,
            dry_run=dry_run,
        )

    @staticmethod
    def _name(config: ServerConfig, project_dir: Path) -> str:
        name = (config.name or "").strip() or project_dir.name
        if not name or name in {".", ".."}:
            raise ProvisionError("Server name cannot be empty.")
        return name


__all__ = [
    "InstanceProvisioner",
    "MINIMAL_SERVER_XML",
    "ProvisionError",
    "ProvisionResult",
]
