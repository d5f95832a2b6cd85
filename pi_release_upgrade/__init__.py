"""Release upgrade tooling for Raspberry Pi OS (Debian based) systems."""

from .resolver import resolve
from .versioning import Catalog, get_current_codename

__version__ = "0.1.0"

__all__ = ["Catalog", "get_current_codename", "resolve", "__version__"]
