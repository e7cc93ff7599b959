"""Keep ``lucee.json`` out of reach of HTTP clients.

The default webroot is the project directory, which also holds
``lucee.json`` (including the admin password). Tomcat's ``conf/web.xml``
gets a ``security-constraint`` with an empty ``auth-constraint`` for
``/lucee.json`` so every request for it is refused.
"""
from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from pathlib import Path

from .server_xml import atomic_write_text, parse_document, serialise_document

LOGGER = logging.getLogger(__name__)

PROTECTED_PATTERN = "/lucee.json"
RESOURCE_NAME = "LuCLI configuration"


def _namespace(root: ET.Element) -> str:
    if root.tag.startswith("{"):
        return root.tag[1:].split("}", 1)[0]
    return ""


def _local_name(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in element.iter() if _local_name(child.tag) == name]


def is_protected(root: ET.Element, pattern: str = PROTECTED_PATTERN) -> bool:
    """Return True when a security constraint already covers *pattern*."""
    for constraint in _children(root, "security-constraint"):
        for collection in _children(constraint, "web-resource-collection"):
            for url_pattern in _children(collection, "url-pattern"):
                if (url_pattern.text or "").strip() == pattern:
                    return True
    return False


def apply_lucee_json_protection(root: ET.Element) -> bool:
    """Deny all access to ``/lucee.json``; return False when already denied."""
    if is_protected(root):
        return False
    namespace = _namespace(root)

    def qualified(name: str) -> str:
        return f"{{{namespace}}}{name}" if namespace else name

    constraint = ET.SubElement(root, qualified("security-constraint"))
    collection = ET.SubElement(constraint, qualified("web-resource-collection"))
    ET.SubElement(collection, qualified("web-resource-name")).text = RESOURCE_NAME
    ET.SubElement(collection, qualified("url-pattern")).text = PROTECTED_PATTERN
    # An empty auth-constraint admits no role.
    ET.SubElement(constraint, qualified("auth-constraint"))
    return True


def protect_lucee_json(document: str) -> str | None:
    """Return *document* with the constraint added, or None if nothing changed."""
    prolog, root, epilog = parse_document(document, label="web.xml")
    if not apply_lucee_json_protection(root):
        return None
    namespace = _namespace(root)
    if namespace:
        # Serialise the deployment descriptor namespace as the default one.
        ET.register_namespace("", namespace)
    return serialise_document(prolog, root, epilog)


def patch_web_xml(path: Path) -> bool:
    """Protect ``lucee.json`` in the web.xml at *path*.

    Missing files are left alone. The file is only rewritten when the
    constraint had to be added; returns True in that case.
    """
    if not path.is_file():
        LOGGER.debug("No web.xml at %s; nothing to protect", path)
        return False
    document = protect_lucee_json(path.read_text(encoding="utf-8"))
    if document is None:
        return False
    atomic_write_text(path, document)
    return True


__all__ = [
    "PROTECTED_PATTERN",
    "apply_lucee_json_protection",
    "is_protected",
    "patch_web_xml",
    "protect_lucee_json",
]
