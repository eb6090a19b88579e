"""kubesim - deterministic Kubernetes control-plane simulator."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kubesim")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
