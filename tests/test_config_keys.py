"""Tests for dotted key access into server configuration."""
from __future__ import annotations

import logging

import pytest

from luceectl.config import ServerConfig
from luceectl.config_keys import ConfigKeyResolver, parse_bool

EXPECTED_KEYS = [
    "version",
    "port",
    "shutdownPort",
    "name",
    "host",
    "webroot",
    "jvm.maxMemory",
    "jvm.minMemory",
    "jvm.additionalArgs",
    "monitoring.enabled",
    "monitoring.jmx.port",
    "admin.enabled",
    "admin.password",
    "enableLucee",
    "enableREST",
    "urlRewrite.enabled",
    "urlRewrite.routerFile",
    "openBrowser",
    "openBrowserURL",
    "https.enabled",
    "https.port",
    "https.redirect",
    "ajp.enabled",
    "ajp.port",
    "configurationFile",
    "envFile",
]

SAMPLE_VALUES = {
    "port": "8181",
    "shutdownPort": "9181",
    "monitoring.jmx.port": "9001",
    "https.port": "8444",
    "ajp.port": "8009",
    "jvm.additionalArgs": "-Dfoo=1 -Dbar=2",
}

BOOLEAN_KEYS = {
    "monitoring.enabled",
    "admin.enabled",
    "enableLucee",
    "enableREST",
    "urlRewrite.enabled",
    "openBrowser",
    "https.enabled",
    "https.redirect",
    "ajp.enabled",
}


def test_available_keys_are_ordered() -> None:
    """All keys are listed in their documented order."""
    resolver = ConfigKeyResolver()

    assert resolver.available_keys() == EXPECTED_KEYS
    assert all(resolver.is_known_key(key) for key in EXPECTED_KEYS)
    assert resolver.is_known_key("jvm") is False
    assert resolver.is_known_key("https.unknown") is False


@pytest.mark.parametrize("key", EXPECTED_KEYS)
def test_set_then_get_returns_value(key: str) -> None:
    """Every key stores and returns its string value."""
    resolver = ConfigKeyResolver()
    config = ServerConfig()
    value = SAMPLE_VALUES.get(key, "true" if key in BOOLEAN_KEYS else f"value-{key}")

    resolver.set(config, key, value)

    assert resolver.get(config, key) == value


def test_get_reads_defaults() -> None:
    """Typed fields render as strings."""
    resolver = ConfigKeyResolver()
    config = ServerConfig()

    assert resolver.get(config, "port") == "8080"
    assert resolver.get(config, "enableLucee") == "true"
    assert resolver.get(config, "enableREST") == "false"
    assert resolver.get(config, "monitoring.jmx.port") == "8999"
    assert resolver.get(config, "jvm.additionalArgs") == ""
    assert resolver.get(config, "shutdownPort") is None
    assert resolver.get(config, "https.enabled") is None
    assert resolver.get(config, "ajp.port") is None


def test_unknown_keys_are_ignored() -> None:
    """Unknown keys read as None and writes are no-ops."""
    resolver = ConfigKeyResolver()
    config = ServerConfig()

    resolver.set(config, "jvm.heap", "1g")
    resolver.set(config, "a.b.c.d", "x")

    assert resolver.get(config, "jvm.heap") is None
    assert config == ServerConfig()


def test_invalid_integer_leaves_field_unchanged(caplog: pytest.LogCaptureFixture) -> None:
    """Bad numeric input logs a warning instead of raising."""
    resolver = ConfigKeyResolver()
    config = ServerConfig()

    with caplog.at_level(logging.WARNING, logger="luceectl.config_keys"):
        resolver.set(config, "port", "eighty")
        resolver.set(config, "https.port", "")

    assert config.port == 8080
    assert config.https is None
    assert "Invalid port number: eighty" in caplog.text


def test_nested_set_creates_missing_sections() -> None:
    """Setting an HTTPS or AJP key creates the section on demand."""
    resolver = ConfigKeyResolver()
    config = ServerConfig()

    resolver.set(config, "https.port", "9443")
    resolver.set(config, "ajp.enabled", "TRUE")

    assert config.https is not None
    assert config.https.port == 9443
    assert config.https.enabled is False
    assert config.ajp is not None and config.ajp.enabled is True


def test_booleans_parse_leniently() -> None:
    """Only "true" (any case) is truthy."""
    resolver = ConfigKeyResolver()
    config = ServerConfig()

    resolver.set(config, "openBrowser", "yes")
    assert config.open_browser is False
    resolver.set(config, "openBrowser", "True")
    assert config.open_browser is True
    assert parse_bool(None) is False


def test_additional_args_split_on_whitespace() -> None:
    """The JVM argument list maps to a space separated string."""
    resolver = ConfigKeyResolver()
    config = ServerConfig()

    resolver.set(config, "jvm.additionalArgs", "  -Xss1m \t -Dx=y ")
    assert config.jvm.additional_args == ["-Xss1m", "-Dx=y"]

    resolver.set(config, "jvm.additionalArgs", "   ")
    assert config.jvm.additional_args == []


def test_validate_reports_problems() -> None:
    """validate explains why a value would be rejected."""
    resolver = ConfigKeyResolver()

    assert resolver.validate("port", "8080") is None
    assert resolver.validate("host", "anything") is None
    assert resolver.validate("port", "abc") == "Invalid port number: abc"
    assert resolver.validate("nope", "1") == "Unknown configuration key: nope"
