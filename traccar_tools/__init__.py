"""Operator tooling for a single local Traccar server."""

from importlib.metadata import PackageNotFoundError, version

__all__ = ["__version__"]

try:
    __version__: str = version("traccar-tools")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
