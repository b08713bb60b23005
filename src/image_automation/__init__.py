"""Image update automation: commit image policy updates back to git."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("image-automation-controller")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .config import ControllerConfig, load_config  # noqa: F401
from .reconciler import ImageUpdateAutomationReconciler, ReconcileResult  # noqa: F401

__all__ = [
    "ControllerConfig",
    "ImageUpdateAutomationReconciler",
    "ReconcileResult",
    "load_config",
    "__version__",
]
