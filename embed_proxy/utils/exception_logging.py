"""
Utility functions for logging and describing upstream failures.

httpx transport errors frequently carry an empty message (a bare
``ConnectTimeout()``), so the helpers here fall back to the exception type and
walk ``__cause__`` chains and exception groups to find something useful.
"""

import logging


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, handling cases where __str__ or __repr__ might fail.
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _safe_get_exceptions(exception_group) -> list:
    try:
        return list(exception_group.exceptions)
    except Exception:
        return []


def format_exception_message(exception: BaseException) -> str:
    """
    Format an exception as ``Type: message``, including sub-exceptions of
    exception groups and the direct cause. Never raises.
    """
    if exception is None:
        return "None"
    try:
        text = _safe_str(exception).strip()
        message = f"{type(exception).__name__}: {text}" if text else type(exception).__name__

        sub_exceptions = _safe_get_exceptions(exception) if hasattr(exception, "exceptions") else []
        if sub_exceptions:
            joined = "; ".join(format_exception_message(sub) for sub in sub_exceptions)
            return f"{message} (Sub-exceptions: {joined})"

        cause = exception.__cause__
        if cause is not None and cause is not exception:
            cause_text = _safe_str(cause).strip()
            if cause_text and cause_text not in message:
                message = f"{message} (caused by {type(cause).__name__}: {cause_text})"
        return message
    except Exception:
        return f"<{type(exception).__name__} (formatting failed)>"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its formatted description and traceback.
    This function is designed to never throw exceptions itself.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Proxy]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    try:
        logger.log(
            level,
            f"{prefix} Exception: {format_exception_message(exception)}",
            exc_info=exception if exception is not None else False,
        )
    except Exception:
        try:
            logger.log(level, f"{prefix} Exception (logging failed)")
        except Exception:
            # If all logging fails, give up silently
            pass
