"""
Exception logging that never raises, used by the route error guard.
"""

import logging


def _safe_str(obj) -> str:
    """String form of ``obj`` that falls back to repr or the type name."""
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _upstream_detail(exception) -> str:
    """Upstream URL and cause carried by relay errors, when present."""
    parts = []
    url = getattr(exception, "url", None)
    if url:
        parts.append(f"url={_safe_str(url)}")
    cause = getattr(exception, "cause", None)
    if cause is not None:
        parts.append(f"cause={type(cause).__name__}: {_safe_str(cause)}")
    return f" ({', '.join(parts)})" if parts else ""


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: Exception,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its type and upstream details.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[AssetRelay]", "[Forward]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    safe_prefix = _safe_str(prefix) if prefix is not None else ""
    try:
        name = type(exception).__name__
        message = f"{safe_prefix} {name}: {_safe_str(exception)}{_upstream_detail(exception)}"
        logger.log(level, message, exc_info=exception)
    except Exception:
        try:
            logger.log(level, f"{safe_prefix} Exception (logging failed)")
        except Exception:
            pass


def format_exception_message(exception: Exception) -> str:
    """One-line description of ``exception`` for span attributes."""
    if exception is None:
        return "None"
    return f"{type(exception).__name__}: {_safe_str(exception)}{_upstream_detail(exception)}"
