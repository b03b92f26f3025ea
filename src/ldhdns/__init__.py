"""ldhdns package: DNS for Docker containers running on a single host."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ldhdns")
except PackageNotFoundError:  # pragma: no cover - running from a source checkout
    __version__ = "0.0.0+unknown"
