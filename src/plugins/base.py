"""
Core plugin types shared across the plugin system.
"""

from typing import Any, Awaitable, Callable, Dict


# Callback invoked by input plugins when they write an object
# (event_type: 'applied' | 'deleted' | 'reconcile', obj) -> None
ObjectCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]
