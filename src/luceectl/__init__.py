"""luceectl: provision Lucee/Tomcat server instances from ``lucee.json``.

The package renders ``conf/server.xml``, PKCS#12 keystores and rewrite rules
for a project's server and keeps a cached catalogue of Lucee releases.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# Keep in sync with ``version`` in pyproject.toml.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
