"""Dotted key-path access to :class:`~luceectl.config.ServerConfig` fields.

Keys use the camelCase names of ``lucee.json`` (``jvm.maxMemory``,
``monitoring.jmx.port``). Values cross this boundary as strings in both
directions; typed fields are parsed on the way in and rendered on the way out.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .config import AjpConfig, HttpsConfig, ServerConfig

LOGGER = logging.getLogger(__name__)

# Value kinds understood by the resolver.
_STR = "str"
_INT = "int"
_OPTIONAL_INT = "optional_int"
_BOOL = "bool"
_OPTIONAL_BOOL = "optional_bool"
_ARGS = "args"


def _ensure_https(config: ServerConfig) -> HttpsConfig:
    if config.https is None:
        config.https = HttpsConfig()
    return config.https


def _ensure_ajp(config: ServerConfig) -> AjpConfig:
    if config.ajp is None:
        config.ajp = AjpConfig()
    return config.ajp


@dataclass(frozen=True)
class _KeySpec:
    """Where a key lives and how its value is converted."""

    key: str
    attr: str
    kind: str
    parent: Callable[[ServerConfig], object | None]
    ensure_parent: Callable[[ServerConfig], object]
    label: str


def _spec(
    key: str,
    attr: str,
    kind: str,
    parent: Callable[[ServerConfig], object | None] = lambda config: config,
    ensure_parent: Callable[[ServerConfig], object] | None = None,
    label: str | None = None,
) -> _KeySpec:
    return _KeySpec(
        key=key,
        attr=attr,
        kind=kind,
        parent=parent,
        ensure_parent=ensure_parent or (lambda config: parent(config)),
        label=label or key,
    )


_KEY_SPECS: tuple[_KeySpec, ...] = (
    _spec("version", "version", _STR),
    _spec("port", "port", _INT, label="port number"),
    _spec("shutdownPort", "shutdown_port", _OPTIONAL_INT, label="shutdown port number"),
    _spec("name", "name", _STR),
    _spec("host", "host", _STR),
    _spec("webroot", "webroot", _STR),
    _spec("jvm.maxMemory", "max_memory", _STR, lambda c: c.jvm),
    _spec("jvm.minMemory", "min_memory", _STR, lambda c: c.jvm),
    _spec("jvm.additionalArgs", "additional_args", _ARGS, lambda c: c.jvm),
    _spec("monitoring.enabled", "enabled", _BOOL, lambda c: c.monitoring),
    _spec(
        "monitoring.jmx.port",
        "port",
        _INT,
        lambda c: c.monitoring.jmx,
        label="JMX port number",
    ),
    _spec("admin.enabled", "enabled", _BOOL, lambda c: c.admin),
    _spec("admin.password", "password", _STR, lambda c: c.admin),
    _spec("enableLucee", "enable_lucee", _BOOL),
    _spec("enableREST", "enable_rest", _BOOL),
    _spec("urlRewrite.enabled", "enabled", _BOOL, lambda c: c.url_rewrite),
    _spec("urlRewrite.routerFile", "router_file", _STR, lambda c: c.url_rewrite),
    _spec("openBrowser", "open_browser", _BOOL),
    _spec("openBrowserURL", "open_browser_url", _STR),
    _spec("https.enabled", "enabled", _BOOL, lambda c: c.https, _ensure_https),
    _spec(
        "https.port",
        "port",
        _OPTIONAL_INT,
        lambda c: c.https,
        _ensure_https,
        label="HTTPS port number",
    ),
    _spec("https.redirect", "redirect", _OPTIONAL_BOOL, lambda c: c.https, _ensure_https),
    _spec("ajp.enabled", "enabled", _BOOL, lambda c: c.ajp, _ensure_ajp),
    _spec(
        "ajp.port",
        "port",
        _OPTIONAL_INT,
        lambda c: c.ajp,
        _ensure_ajp,
        label="AJP port number",
    ),
    _spec("configurationFile", "configuration_file", _STR),
    _spec("envFile", "env_file", _STR),
)

_SPECS_BY_KEY = {spec.key: spec for spec in _KEY_SPECS}


def parse_bool(value: str | None) -> bool:
    """Return True only for ``"true"`` in any letter case."""
    return value is not None and value.strip().lower() == "true"


def _render(kind: str, value: object) -> str | None:
    if value is None:
        return None
    if kind in {_BOOL, _OPTIONAL_BOOL}:
        return "true" if value else "false"
    if kind == _ARGS:
        return " ".join(str(item) for item in value)  # type: ignore[attr-defined]
    return str(value)


class ConfigKeyResolver:
    """Get and set server configuration values by dotted key."""

    def available_keys(self) -> list[str]:
        """Return every supported key in display order."""
        return [spec.key for spec in _KEY_SPECS]

    def is_known_key(self, key: str) -> bool:
        """Return True when *key* is one of :meth:`available_keys`."""
        return key in _SPECS_BY_KEY

    def get(self, config: ServerConfig, key: str) -> str | None:
        """Return the string value for *key*, or None when unset or unknown."""
        spec = _SPECS_BY_KEY.get(key)
        if spec is None:
            return None
        parent = spec.parent(config)
        if parent is None:
            return None
        return _render(spec.kind, getattr(parent, spec.attr))

    def validate(self, key: str, value: str | None) -> str | None:
        """Return why *value* would be rejected for *key*, or None."""
        spec = _SPECS_BY_KEY.get(key)
        if spec is None:
            return f"Unknown configuration key: {key}"
        if spec.kind in {_INT, _OPTIONAL_INT}:
            try:
                int((value or "").strip())
            except ValueError:
                return f"Invalid {spec.label}: {value}"
        return None

    def set(self, config: ServerConfig, key: str, value: str | None) -> None:
        """Assign *value* to *key*; unknown keys are ignored.

        Numeric values that fail to parse are logged and leave the field as it
        was.
        """
        spec = _SPECS_BY_KEY.get(key)
        if spec is None:
            LOGGER.debug("Ignoring unknown configuration key %s", key)
            return

        if spec.kind in {_INT, _OPTIONAL_INT}:
            try:
                parsed: object = int((value or "").strip())
            except ValueError:
                LOGGER.warning("Invalid %s: %s", spec.label, value)
                return
        elif spec.kind in {_BOOL, _OPTIONAL_BOOL}:
            parsed = parse_bool(value)
        elif spec.kind == _ARGS:
            parsed = value.split() if value is not None else []
        else:
            parsed = value

        setattr(spec.ensure_parent(config), spec.attr, parsed)


__all__ = ["ConfigKeyResolver", "parse_bool"]
