"""Configuration models and loaders for luceectl.

Two kinds of configuration live here:

``ServerConfig``
    The desired state of a single server instance, read from a project's
    ``lucee.json``. It is plain mutable data plus a handful of pure helpers
    that compute effective values (shutdown port, HTTPS port, host, webroot).

``AppConfig``
    Settings for the tool itself, merged from the following sources:

    1. Built-in defaults.
    2. ``~/.lucli/luceectl.yml`` (or an override path).
    3. Environment variables prefixed with ``LUCEECTL_``.
    4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export LUCEECTL_VERSIONS__TIMEOUT=10

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally.
"""
from __future__ import annotations

import json
import os
import re
import tempfile
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load luceectl configuration. Install with "
        "`pip install luceectl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "LUCEECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
HOME_ENV_VARS = (f"{ENV_PREFIX}HOME", "LUCLI_HOME")
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR, f"{ENV_PREFIX}HOME"}

PROJECT_CONFIG_FILE = "lucee.json"
DEFAULT_VERSION = "6.2.2.91"
DEFAULT_HOST = "localhost"
DEFAULT_HTTPS_PORT = 8443
SHUTDOWN_PORT_OFFSET = 1000
VERSIONS_URL = "https://update.lucee.org/rest/update/provider/list"

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


class WebrootError(ConfigError):
    """Raised when a server webroot cannot be resolved to an absolute path."""


# ----------------------------------------------------------------------
# Server instance model
# ----------------------------------------------------------------------
@dataclass(slots=True)
class JvmConfig:
    """Heap sizing and extra JVM arguments."""

    max_memory: str | None = "512m"
    min_memory: str | None = "128m"
    additional_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class JmxConfig:
    """JMX listener settings."""

    port: int = 8999


@dataclass(slots=True)
class MonitoringConfig:
    """Monitoring toggles."""

    enabled: bool = True
    jmx: JmxConfig = field(default_factory=JmxConfig)


@dataclass(slots=True)
class AdminConfig:
    """Administrator console settings."""

    enabled: bool = True
    password: str | None = None


@dataclass(slots=True)
class UrlRewriteConfig:
    """Front-controller URL rewriting."""

    enabled: bool = True
    router_file: str | None = "index.cfm"


@dataclass(slots=True)
class HttpsConfig:
    """HTTPS connector settings.

    ``port`` falls back to 8443 and ``redirect`` to ``True`` when unset.
    """

    enabled: bool = False
    port: int | None = None
    redirect: bool | None = None


@dataclass(slots=True)
class AjpConfig:
    """AJP connector settings."""

    enabled: bool = False
    port: int | None = None


@dataclass(slots=True)
class ServerConfig:
    """Desired state of a single server instance."""

    name: str | None = None
    version: str | None = DEFAULT_VERSION
    port: int = 8080
    shutdown_port: int | None = None
    host: str | None = None
    webroot: str | None = "./"
    enable_lucee: bool = True
    enable_rest: bool = False
    open_browser: bool = True
    open_browser_url: str | None = None
    configuration_file: str | None = None
    env_file: str | None = None
    jvm: JvmConfig = field(default_factory=JvmConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    admin: AdminConfig = field(default_factory=AdminConfig)
    url_rewrite: UrlRewriteConfig = field(default_factory=UrlRewriteConfig)
    https: HttpsConfig | None = None
    ajp: AjpConfig | None = None


def effective_shutdown_port(config: ServerConfig) -> int:
    """Return the explicit shutdown port or ``port + 1000``."""
    if config.shutdown_port is not None:
        return config.shutdown_port
    return config.port + SHUTDOWN_PORT_OFFSET


def effective_host(config: ServerConfig) -> str:
    """Return the configured host name, defaulting to ``localhost``."""
    if config.host is None or not config.host.strip():
        return DEFAULT_HOST
    return config.host.strip()


def https_enabled(config: ServerConfig) -> bool:
    """Return True when the HTTPS connector should be configured."""
    return config.https is not None and config.https.enabled


def effective_https_port(config: ServerConfig) -> int:
    """Return the explicit HTTPS port or the 8443 default."""
    if config.https is None or config.https.port is None:
        return DEFAULT_HTTPS_PORT
    return config.https.port


def https_redirect_enabled(config: ServerConfig) -> bool:
    """Return True when plain HTTP should redirect to HTTPS."""
    if config.https is None or not https_enabled(config):
        return False
    if config.https.redirect is None:
        return True
    return config.https.redirect


def resolve_webroot(config: ServerConfig, project_dir: Path | None) -> Path:
    """Return the absolute webroot for *config*.

    Absolute webroots are returned untouched; relative ones are resolved
    against *project_dir* and normalised.
    """
    raw = (config.webroot or "").strip()
    if not raw:
        raise WebrootError("Server webroot is empty.")
    if "\x00" in raw:
        raise WebrootError(f"Server webroot contains a NUL byte: {raw!r}.")
    webroot = Path(raw).expanduser()
    if webroot.is_absolute():
        return webroot
    if project_dir is None:
        raise WebrootError(
            f"Cannot resolve relative webroot {raw!r} without a project directory."
        )
    try:
        return Path(os.path.normpath(project_dir.expanduser().absolute() / webroot))
    except (OSError, ValueError) as exc:
        raise WebrootError(f"Cannot resolve webroot {raw!r}: {exc}") from exc


# ``lucee.json`` uses camelCase keys; map them onto dataclass attributes.
_TOP_LEVEL_FIELDS: dict[str, str] = {
    "name": "name",
    "version": "version",
    "port": "port",
    "shutdownPort": "shutdown_port",
    "host": "host",
    "webroot": "webroot",
    "enableLucee": "enable_lucee",
    "enableREST": "enable_rest",
    "openBrowser": "open_browser",
    "openBrowserURL": "open_browser_url",
    "configurationFile": "configuration_file",
    "envFile": "env_file",
}


def default_server_config(project_dir: Path) -> ServerConfig:
    """Return a fresh configuration named after *project_dir*."""
    return ServerConfig(name=project_dir.name)


def load_server_config(
    project_dir: Path,
    *,
    env: Mapping[str, str] | None = None,
) -> ServerConfig:
    """Load ``lucee.json`` from *project_dir* into a :class:`ServerConfig`.

    A missing file yields the defaults. ``${VAR}`` and ``${VAR:-default}``
    placeholders in string values are expanded from the project's ``.env``
    file first and then from *env* (``os.environ`` when omitted).
    """
    path = project_dir / PROJECT_CONFIG_FILE
    if not path.exists():
        return default_server_config(project_dir)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse {path}: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{path} must contain a JSON object at the top level.")

    variables = dict(os.environ if env is None else env)
    env_file_raw = raw.get("envFile")
    env_file = project_dir / (env_file_raw if isinstance(env_file_raw, str) else ".env")
    variables.update(_read_env_file(env_file))

    expanded = _substitute(raw, variables)
    config = _build_server_config(_as_dict(expanded, PROJECT_CONFIG_FILE))
    if config.name is None or not config.name.strip():
        config.name = project_dir.name
    return config


def server_config_to_dict(config: ServerConfig) -> dict[str, object]:
    """Return the ``lucee.json`` representation of *config* (None values omitted)."""
    payload: dict[str, object] = {}
    for key, attr in _TOP_LEVEL_FIELDS.items():
        value = getattr(config, attr)
        if value is not None:
            payload[key] = value
    payload["jvm"] = _without_none(
        {
            "maxMemory": config.jvm.max_memory,
            "minMemory": config.jvm.min_memory,
            "additionalArgs": list(config.jvm.additional_args),
        }
    )
    payload["monitoring"] = {
        "enabled": config.monitoring.enabled,
        "jmx": {"port": config.monitoring.jmx.port},
    }
    payload["admin"] = _without_none(
        {"enabled": config.admin.enabled, "password": config.admin.password}
    )
    payload["urlRewrite"] = _without_none(
        {"enabled": config.url_rewrite.enabled, "routerFile": config.url_rewrite.router_file}
    )
    if config.https is not None:
        payload["https"] = _without_none(
            {
                "enabled": config.https.enabled,
                "port": config.https.port,
                "redirect": config.https.redirect,
            }
        )
    if config.ajp is not None:
        payload["ajp"] = _without_none({"enabled": config.ajp.enabled, "port": config.ajp.port})
    return payload


def save_server_config(config: ServerConfig, path: Path) -> None:
    """Atomically write *config* to *path* as ``lucee.json``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(server_config_to_dict(config), handle, indent=2)
            handle.write("\n")
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def _build_server_config(raw: Mapping[str, object]) -> ServerConfig:
    config = ServerConfig()
    for key, attr in _TOP_LEVEL_FIELDS.items():
        if key not in raw or raw[key] is None:
            continue
        value = raw[key]
        if attr in {"port"}:
            setattr(config, attr, _expect_int(value, key, default=config.port))
        elif attr == "shutdown_port":
            config.shutdown_port = _expect_int(value, key, default=0)
        elif attr in {"enable_lucee", "enable_rest", "open_browser"}:
            setattr(config, attr, _expect_bool(value, key))
        else:
            setattr(config, attr, str(value))

    jvm = _as_dict(raw.get("jvm"), "jvm")
    if "maxMemory" in jvm:
        config.jvm.max_memory = _optional_str(jvm["maxMemory"])
    if "minMemory" in jvm:
        config.jvm.min_memory = _optional_str(jvm["minMemory"])
    if jvm.get("additionalArgs") is not None:
        args = jvm["additionalArgs"]
        if isinstance(args, str) or not isinstance(args, list):
            raise ConfigError("Expected jvm.additionalArgs to be a list of strings.")
        config.jvm.additional_args = [str(item) for item in args]

    monitoring = _as_dict(raw.get("monitoring"), "monitoring")
    if monitoring.get("enabled") is not None:
        config.monitoring.enabled = _expect_bool(monitoring["enabled"], "monitoring.enabled")
    jmx = _as_dict(monitoring.get("jmx"), "monitoring.jmx")
    config.monitoring.jmx.port = _expect_int(
        jmx.get("port"), "monitoring.jmx.port", default=config.monitoring.jmx.port
    )

    admin = _as_dict(raw.get("admin"), "admin")
    if admin.get("enabled") is not None:
        config.admin.enabled = _expect_bool(admin["enabled"], "admin.enabled")
    if "password" in admin:
        config.admin.password = _optional_str(admin["password"])

    rewrite = _as_dict(raw.get("urlRewrite"), "urlRewrite")
    if rewrite.get("enabled") is not None:
        config.url_rewrite.enabled = _expect_bool(rewrite["enabled"], "urlRewrite.enabled")
    if "routerFile" in rewrite:
        config.url_rewrite.router_file = _optional_str(rewrite["routerFile"])

    if raw.get("https") is not None:
        https = _as_dict(raw["https"], "https")
        config.https = HttpsConfig(
            enabled=_expect_bool(https.get("enabled", False), "https.enabled"),
            port=_optional_int(https.get("port"), "https.port"),
            redirect=(
                _expect_bool(https["redirect"], "https.redirect")
                if https.get("redirect") is not None
                else None
            ),
        )

    if raw.get("ajp") is not None:
        ajp = _as_dict(raw["ajp"], "ajp")
        config.ajp = AjpConfig(
            enabled=_expect_bool(ajp.get("enabled", False), "ajp.enabled"),
            port=_optional_int(ajp.get("port"), "ajp.port"),
        )

    if config.open_browser_url is not None and not config.open_browser_url.strip():
        config.open_browser_url = None
    return config


def _read_env_file(path: Path) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines from a dotenv file (missing file is empty)."""
    if not path.is_file():
        return {}
    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        values[key] = value
    return values


def _substitute(value: object, variables: Mapping[str, str]) -> object:
    if isinstance(value, str):
        return _replace_placeholders(value, variables)
    if isinstance(value, list):
        return [_substitute(item, variables) for item in value]
    if isinstance(value, Mapping):
        return {key: _substitute(item, variables) for key, item in value.items()}
    return value


def _replace_placeholders(text: str, variables: Mapping[str, str]) -> str:
    def _expand(match: re.Match[str]) -> str:
        placeholder = match.group(1)
        if ":-" in placeholder:
            name, default = placeholder.split(":-", 1)
            return variables.get(name.strip(), default.strip())
        return variables.get(placeholder, match.group(0))

    return _PLACEHOLDER.sub(_expand, text)


# ----------------------------------------------------------------------
# Tool settings
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class VersionsConfig:
    """Remote version catalogue settings."""

    url: str = VERSIONS_URL
    cache: Path = Path("~/.lucli/lucee-versions.json")
    timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"url": self.url, "cache": str(self.cache), "timeout": self.timeout}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for luceectl."""

    config_file: Path
    home_dir: Path
    servers_dir: Path
    logs_dir: Path
    keytool_bin: str
    versions: VersionsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "home_dir": str(self.home_dir),
            "servers_dir": str(self.servers_dir),
            "logs_dir": str(self.logs_dir),
            "keytool_bin": self.keytool_bin,
            "versions": self.versions.to_dict(),
        }

    def instance_dir(self, name: str) -> Path:
        """Return the instance directory (``CATALINA_BASE``) for *name*."""
        safe = name.replace("/", "-")
        return self.servers_dir / safe


DEFAULTS: dict[str, object] = {
    "config_file": None,  # derived from home_dir when absent
    "home_dir": "~/.lucli",
    "servers_dir": None,
    "logs_dir": None,
    "keytool_bin": "keytool",
    "versions": {
        "url": VERSIONS_URL,
        "cache": None,
        "timeout": 30.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    for name in HOME_ENV_VARS:
        if resolved_env.get(name):
            merged["home_dir"] = resolved_env[name]
            break

    home_dir = _to_path(merged["home_dir"])
    config_path = _determine_config_path(home_dir / "luceectl.yml", config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: Path,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return default_path


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    versions = raw.get("versions")
    if versions is not None:
        versions_map = _as_dict(versions, "versions")
        unknown = set(versions_map.keys()) - {"url", "cache", "timeout"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown versions configuration keys: {joined}.")
        _expect_positive_float(versions_map.get("timeout"), "versions.timeout", default=30.0)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    home_dir = _to_path(raw.get("home_dir"))
    servers_value = raw.get("servers_dir")
    logs_value = raw.get("logs_dir")

    versions_mapping = _as_dict(raw.get("versions"), "versions")
    cache_value = versions_mapping.get("cache")
    versions = VersionsConfig(
        url=str(versions_mapping.get("url") or VERSIONS_URL),
        cache=_to_path(cache_value) if cache_value else home_dir / "lucee-versions.json",
        timeout=_expect_positive_float(
            versions_mapping.get("timeout"), "versions.timeout", default=30.0
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        home_dir=home_dir,
        servers_dir=_to_path(servers_value) if servers_value else home_dir / "servers",
        logs_dir=_to_path(logs_value) if logs_value else home_dir / "logs",
        keytool_bin=str(raw.get("keytool_bin") or "keytool"),
        versions=versions,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _optional_int(value: object | None, label: str) -> int | None:
    if value is None:
        return None
    return _expect_int(value, label, default=0)


def _expect_bool(value: object, label: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _optional_str(value: object | None) -> str | None:
    return None if value is None else str(value)


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


def _without_none(mapping: Mapping[str, object]) -> dict[str, object]:
    return {key: value for key, value in mapping.items() if value is not None}


__all__ = [
    "AdminConfig",
    "AjpConfig",
    "AppConfig",
    "ConfigError",
    "HttpsConfig",
    "JmxConfig",
    "JvmConfig",
    "MonitoringConfig",
    "ServerConfig",
    "UrlRewriteConfig",
    "VersionsConfig",
    "WebrootError",
    "default_server_config",
    "effective_host",
    "effective_https_port",
    "effective_shutdown_port",
    "https_enabled",
    "https_redirect_enabled",
    "load_config",
    "load_server_config",
    "resolve_webroot",
    "save_server_config",
    "server_config_to_dict",
]
