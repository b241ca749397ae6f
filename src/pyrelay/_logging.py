"""Per-category debug switches.

Categories map onto the package's module loggers, so turning on
``"cache"`` is the same as setting ``pyrelay.cache`` to DEBUG.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

DEBUG_CATEGORIES: dict[str, tuple[str, ...]] = {
    "correlation": ("pyrelay.correlation",),
    "cache": ("pyrelay.cache", "pyrelay.store"),
    "channel": ("pyrelay.channel",),
    "mqtt": ("pyrelay._mqtt",),
    "integrations": ("pyrelay.integrations",),
}


def configure_debug_logging(categories: Iterable[str]) -> list[str]:
    """Set the loggers of each known category to DEBUG.

    ``"all"`` enables every category. Unknown names are ignored with a
    warning. Returns the logger names that were switched.
    """
    requested = {name.strip().lower() for name in categories if name.strip()}
    if "all" in requested:
        requested = set(DEBUG_CATEGORIES)

    switched: list[str] = []
    for name in sorted(requested):
        logger_names = DEBUG_CATEGORIES.get(name)
        if logger_names is None:
            logging.getLogger("pyrelay").warning("Unknown debug category %r", name)
            continue
        for logger_name in logger_names:
            logging.getLogger(logger_name).setLevel(logging.DEBUG)
            switched.append(logger_name)
    return switched
