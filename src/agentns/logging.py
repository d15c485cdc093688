"""AgentNS logging utilities.

All loggers live under the ``agentns`` namespace.  Helpers here make sure
keys and signatures only ever show up in logs as short previews.
"""

from __future__ import annotations

import hashlib
import logging

_root_logger = logging.getLogger("agentns")

_PREVIEW_LENGTH = 8
_DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(
    level: int | str = logging.INFO,
    handler: logging.Handler | None = None,
    format_string: str | None = None,
) -> None:
    """Attach a handler to the ``agentns`` logger.

    Calling this more than once replaces the previously installed handler
    instead of stacking duplicates.

    Example:
        ```python
        from agentns.logging import configure_logging

        configure_logging("DEBUG")
        ```
    """
    if handler is None:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string or _DEFAULT_FORMAT))

    for existing in list(_root_logger.handlers):
        if getattr(existing, "_agentns_handler", False):
            _root_logger.removeHandler(existing)

    handler._agentns_handler = True  # type: ignore[attr-defined]
    _root_logger.addHandler(handler)
    _root_logger.setLevel(level.upper() if isinstance(level, str) else level)


def get_logger(name: str | None = None) -> logging.Logger:
    """Return ``agentns`` or ``agentns.<name>``."""
    if name is None:
        return _root_logger
    return logging.getLogger(f"agentns.{name}")


def fingerprint_of(material: str | bytes) -> str:
    """Short, non-reversible preview of a key or signature for log lines."""
    if isinstance(material, str):
        material = material.encode()
    digest = hashlib.sha256(material).hexdigest()
    return f"sha256:{digest[:_PREVIEW_LENGTH]}"
