"""plugwatch - Tuya smart plug discovery and appliance cycle detection."""

__version__ = "0.1.0"
__author__ = "plugwatch developers"

# Import submodules for easier access
from . import monitor, smartplug

__all__ = [
    "__version__",
    "__author__",
    "monitor",
    "smartplug",
]
