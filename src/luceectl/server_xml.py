"""Idempotent patching of Tomcat ``server.xml`` documents.

The patcher parses the vendor document into an ElementTree, applies a fixed
sequence of small transforms and serialises the tree again. Every transform
converges: running the patcher over its own output yields the same text.

Steps, in order:

1. primary HTTP connector port
2. ``Server`` shutdown port
3. root ``Context`` pointing at the webroot
4. HTTPS connector, keystore and redirect valve (HTTPS instances only)
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path

from .config import (
    ServerConfig,
    WebrootError,
    effective_host,
    effective_https_port,
    effective_shutdown_port,
    https_enabled,
    https_redirect_enabled,
    resolve_webroot,
)
from .keystore import KEY_ALIAS, KeystoreInfo, KeystoreProvisioner

LOGGER = logging.getLogger(__name__)

NIO_PROTOCOL = "org.apache.coyote.http11.Http11NioProtocol"
HTTP_PROTOCOLS = frozenset({"", "HTTP/1.1", NIO_PROTOCOL})
REWRITE_VALVE = "org.apache.catalina.valves.rewrite.RewriteValve"
TLS_PROTOCOLS = "TLSv1.2,TLSv1.3"
DEFAULT_SSL_HOST = "_default_"
DEFAULT_HOST_NAME = "localhost"
ENGINE_NAME = "Catalina"
REWRITE_FILE_NAME = "rewrite.config"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

_PROLOG_TOKEN = re.compile(
    r"\s*(<\?xml.*?\?>|<!--.*?-->|<!DOCTYPE[^\[>]*(?:\[.*?\])?\s*>)",
    re.DOTALL,
)


class ServerXmlError(RuntimeError):
    """Raised when a server document cannot be parsed."""


@dataclass(frozen=True)
class PatchResult:
    """Outcome of a patch run."""

    document: str
    keystore: KeystoreInfo | None = None
    rewrite_config: Path | None = None


# ----------------------------------------------------------------------
# Parsing and serialisation
# ----------------------------------------------------------------------
def parse_document(
    text: str,
    *,
    label: str = "server.xml",
) -> tuple[list[str], ET.Element, list[str]]:
    """Parse *text* into ``(prolog, root, epilog)``.

    The prolog holds comments and doctype found before the root element and
    the epilog the comments after it; comments inside the tree are kept as
    ``ET.Comment`` nodes. A leading byte order mark is dropped.
    """
    text = text.removeprefix("\ufeff")
    parser = ET.XMLParser(target=ET.TreeBuilder(insert_comments=True))
    try:
        parser.feed(text)
        root = parser.close()
    except ET.ParseError as exc:
        raise ServerXmlError(f"Malformed {label}: {exc}") from exc
    return _prolog(text), root, _epilog(text)


def serialise_document(
    prolog: list[str],
    root: ET.Element,
    epilog: list[str] | None = None,
) -> str:
    """Return *root* as indented text with an XML declaration."""
    ET.indent(root, space="  ")
    body = ET.tostring(root, encoding="unicode")
    return "\n".join([XML_DECLARATION, *prolog, body, *(epilog or [])]) + "\n"


def _prolog(text: str) -> list[str]:
    tokens: list[str] = []
    position = 0
    while True:
        match = _PROLOG_TOKEN.match(text, position)
        if match is None:
            break
        token = match.group(1)
        if not token.startswith("<?xml"):
            tokens.append(token)
        position = match.end()
    return tokens


def _epilog(text: str) -> list[str]:
    # Comments cannot contain "--", so the last "<!--" opens the last comment.
    tokens: list[str] = []
    rest = text.rstrip()
    while rest.endswith("-->"):
        start = rest.rfind("<!--")
        if start == -1:
            break
        tokens.append(rest[start:])
        rest = rest[:start].rstrip()
    tokens.reverse()
    return tokens


# ----------------------------------------------------------------------
# Lookups
# ----------------------------------------------------------------------
def _is_tls_connector(connector: ET.Element) -> bool:
    return (
        connector.get("scheme", "").lower() == "https"
        or connector.get("SSLEnabled", "").lower() == "true"
    )


def find_http_connector(root: ET.Element) -> ET.Element | None:
    """Return the first plain HTTP connector that declares a port."""
    for connector in root.iter("Connector"):
        if connector.get("protocol", "").strip() not in HTTP_PROTOCOLS:
            continue
        if connector.get("port") is None or _is_tls_connector(connector):
            continue
        return connector
    return None


def primary_service(root: ET.Element) -> ET.Element | None:
    """Return the first ``Service`` element."""
    if root.tag == "Service":
        return root
    return next(root.iter("Service"), None)


def primary_engine(root: ET.Element) -> ET.Element | None:
    """Return the engine of the primary service, else the first engine."""
    service = primary_service(root)
    if service is not None:
        engine = service.find("Engine")
        if engine is not None:
            return engine
    return next(root.iter("Engine"), None)


def primary_host(root: ET.Element) -> ET.Element | None:
    """Return the engine's default ``Host``, falling back to the first one."""
    engine = primary_engine(root)
    hosts = list((engine if engine is not None else root).iter("Host"))
    if not hosts:
        return None
    default_host = engine.get("defaultHost") if engine is not None else None
    if default_host:
        for host in hosts:
            if host.get("name") == default_host:
                return host
    return hosts[0]


def find_https_connector(service: ET.Element) -> ET.Element | None:
    """Return the first TLS connector directly under *service*."""
    for connector in service.findall("Connector"):
        if _is_tls_connector(connector):
            return connector
    return None


# ----------------------------------------------------------------------
# Transforms
# ----------------------------------------------------------------------
def apply_http_connector_port(root: ET.Element, port: int) -> bool:
    """Set the primary HTTP connector's port; return False when none exists."""
    connector = find_http_connector(root)
    if connector is None:
        LOGGER.debug("No HTTP connector found; leaving connector ports untouched")
        return False
    connector.set("port", str(port))
    return True


def apply_shutdown_port(root: ET.Element, port: int) -> bool:
    """Set the shutdown port on the first ``Server`` carrying one."""
    candidates = [root] if root.tag == "Server" else []
    candidates.extend(element for element in root.iter("Server") if element is not root)
    for server in candidates:
        if server.get("port") is not None:
            server.set("port", str(port))
            return True
    return False


def apply_root_context(root: ET.Element, doc_base: Path) -> ET.Element | None:
    """Point the primary host's root ``Context`` at *doc_base*.

    An existing context with ``path`` of ``""`` or ``"/"`` is reused; otherwise
    one is created.
    """
    host = primary_host(root)
    if host is None:
        LOGGER.debug("No Host element found; skipping root context")
        return None
    context = None
    for candidate in host.findall("Context"):
        if candidate.get("path") in {"", "/"}:
            context = candidate
            break
    if context is None:
        context = ET.SubElement(host, "Context", {"path": "", "docBase": str(doc_base)})
        return context
    if context.get("path") is None:
        context.set("path", "")
    context.set("docBase", str(doc_base))
    return context


def apply_https_connector(
    root: ET.Element,
    port: int,
    keystore: KeystoreInfo,
) -> ET.Element | None:
    """Create or update the HTTPS connector in the primary service."""
    service = primary_service(root)
    if service is None:
        LOGGER.debug("No Service element found; skipping HTTPS connector")
        return None

    connector = find_https_connector(service)
    if connector is None:
        connector = ET.Element("Connector")
        children = list(service)
        connectors = service.findall("Connector")
        engine = service.find("Engine")
        if connectors:
            service.insert(children.index(connectors[-1]) + 1, connector)
        elif engine is not None:
            service.insert(children.index(engine), connector)
        else:
            service.append(connector)

    connector.set("protocol", NIO_PROTOCOL)
    connector.set("port", str(port))
    connector.set("scheme", "https")
    connector.set("secure", "true")
    connector.set("SSLEnabled", "true")

    for stale in connector.findall("SSLHostConfig"):
        connector.remove(stale)
    ssl_host = ET.SubElement(
        connector,
        "SSLHostConfig",
        {"hostName": DEFAULT_SSL_HOST, "protocols": TLS_PROTOCOLS},
    )
    ET.SubElement(
        ssl_host,
        "Certificate",
        {
            "certificateKeystoreFile": str(keystore.keystore_path),
            "certificateKeystorePassword": keystore.password,
            "certificateKeystoreType": "PKCS12",
            "certificateKeyAlias": KEY_ALIAS,
            "type": "RSA",
        },
    )
    return connector


def apply_rewrite_valve(root: ET.Element) -> ET.Element | None:
    """Attach a ``RewriteValve`` to the primary host once."""
    host = primary_host(root)
    if host is None:
        return None
    for valve in host.findall("Valve"):
        if valve.get("className") == REWRITE_VALVE:
            return valve
    return ET.SubElement(host, "Valve", {"className": REWRITE_VALVE})


def rewrite_rules(host: str, https_port: int) -> str:
    """Return the HTTP to HTTPS redirect rules."""
    return (
        "RewriteCond %{HTTPS} !=on\n"
        f"RewriteRule ^/(.*)$ https://{host}:{https_port}/$1 [R=302,L]\n"
    )


def rewrite_host_name(root: ET.Element) -> str:
    """Return the host directory name Tomcat uses for the primary host.

    The host's ``name`` wins, then the engine's ``defaultHost``, then
    ``localhost``.
    """
    host = primary_host(root)
    if host is not None and host.get("name"):
        return host.get("name", DEFAULT_HOST_NAME)
    engine = primary_engine(root)
    if engine is not None and engine.get("defaultHost"):
        return engine.get("defaultHost", DEFAULT_HOST_NAME)
    return DEFAULT_HOST_NAME


def rewrite_config_path(instance_dir: Path, host_name: str) -> Path:
    """Return where Tomcat looks for the host's rewrite rules."""
    return instance_dir / "conf" / ENGINE_NAME / host_name / REWRITE_FILE_NAME


def write_rewrite_config(
    instance_dir: Path,
    host_name: str,
    host: str,
    https_port: int,
) -> Path:
    """Write the redirect rules for *host_name* and return the file path."""
    path = rewrite_config_path(instance_dir, host_name)
    atomic_write_text(path, rewrite_rules(host, https_port))
    return path


def atomic_write_text(path: Path, content: str) -> None:
    """Replace *path* with *content* via a temporary sibling file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


# ----------------------------------------------------------------------
# Orchestration
# ----------------------------------------------------------------------
class ServerXmlPatcher:
    """Apply a :class:`ServerConfig` to a Tomcat ``server.xml``."""

    def __init__(self, keystores: KeystoreProvisioner | None = None) -> None:
        self.keystores = keystores or KeystoreProvisioner()

    def patch(
        self,
        base_document: str,
        config: ServerConfig,
        project_dir: Path | None,
        instance_dir: Path | None,
        *,
        write_files: bool,
    ) -> str:
        """Return the patched document text."""
        return self.apply(
            base_document,
            config,
            project_dir,
            instance_dir,
            write_files=write_files,
        ).document

    def apply(
        self,
        base_document: str,
        config: ServerConfig,
        project_dir: Path | None,
        instance_dir: Path | None,
        *,
        write_files: bool,
    ) -> PatchResult:
        """Patch *base_document* and report the side artefacts involved.

        Raises :class:`WebrootError` or :class:`~luceectl.keystore.KeystoreError`
        before the document is touched; missing elements are skipped.
        """
        doc_base = resolve_webroot(config, project_dir)
        prolog, root, epilog = parse_document(base_document)

        apply_http_connector_port(root, config.port)
        apply_shutdown_port(root, effective_shutdown_port(config))
        apply_root_context(root, doc_base)

        keystore: KeystoreInfo | None = None
        rewrite_config: Path | None = None
        if https_enabled(config):
            keystore = self.keystores.ensure_keystore(instance_dir, config, write_files)
            https_port = effective_https_port(config)
            apply_https_connector(root, https_port, keystore)
            if https_redirect_enabled(config):
                apply_rewrite_valve(root)
                if write_files and instance_dir is not None:
                    rewrite_config = write_rewrite_config(
                        instance_dir,
                        rewrite_host_name(root),
                        effective_host(config),
                        https_port,
                    )

        return PatchResult(
            document=serialise_document(prolog, root, epilog),
            keystore=keystore,
            rewrite_config=rewrite_config,
        )

    def patch_file(
        self,
        path: Path,
        config: ServerConfig,
        project_dir: Path | None,
        instance_dir: Path | None,
    ) -> str | None:
        """Patch *path* in place; return None when the file does not exist."""
        if not path.is_file():
            return None
        original = path.read_text(encoding="utf-8")
        document = self.patch(original, config, project_dir, instance_dir, write_files=True)
        if document != original:
            atomic_write_text(path, document)
        return document


__all__ = [
    "HTTP_PROTOCOLS",
    "NIO_PROTOCOL",
    "PatchResult",
    "REWRITE_VALVE",
    "ServerXmlError",
    "ServerXmlPatcher",
    "WebrootError",
    "apply_http_connector_port",
    "apply_https_connector",
    "apply_rewrite_valve",
    "apply_root_context",
    "apply_shutdown_port",
    "atomic_write_text",
    "find_http_connector",
    "parse_document",
    "primary_host",
    "primary_service",
    "rewrite_config_path",
    "rewrite_host_name",
    "rewrite_rules",
    "serialise_document",
    "write_rewrite_config",
]
