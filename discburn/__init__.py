"""
discburn - Remote disc burn queue

Initiators submit burn jobs into a shared blob store; a single executor next
to the burner drives them through a validated lifecycle in priority order.
Agents talk through signed, gateway-checked signals in the same store.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = ["DiscburnConfig", "load_config", "get_discburn_home"]

from .config import DiscburnConfig, load_config, get_discburn_home
