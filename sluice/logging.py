"""femtologging setup and percent-style logging helpers for Sluice.

Every Sluice module logs through the helpers below, which interpolate the
message before handing it to femtologging. femtologging loggers accept only
finished strings, so the helpers are where ``%s`` templates get expanded.

Example:
>>> from sluice.logging import get_logger, log_info
>>> logger = get_logger(__name__)
>>> log_info(logger, "Planning pass for %s", "acme.example.com")

"""

from __future__ import annotations

import enum
import typing as typ

from femtologging import basicConfig, get_logger

_DEFAULT_LEVEL = "INFO"


class LogLevel(enum.StrEnum):
    """Level names femtologging understands."""

    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def normalize_log_level(level: str | None) -> tuple[str, bool]:
    """Return the canonical level name and whether ``level`` was rejected.

    Names are matched case-insensitively after trimming whitespace. Missing
    or unknown names fall back to ``INFO``.

    Parameters
    ----------
    level : str | None
        Level name as supplied by the operator.

    Returns
    -------
    tuple[str, bool]
        The level to use and True when ``level`` was unusable.

    """
    candidate = (level or "").strip().upper()
    if candidate in LogLevel.__members__:
        return (candidate, False)
    return (_DEFAULT_LEVEL, True)


def configure_logging(level: str, *, force: bool = False) -> tuple[str, bool]:
    """Install the femtologging root handler at ``level``.

    Parameters
    ----------
    level : str
        Level name as supplied by the operator.
    force : bool, optional
        Replace handlers that are already configured.

    Returns
    -------
    tuple[str, bool]
        The level applied and True when ``level`` was unusable, so callers
        can warn about it once logging works.

    """
    applied, rejected = normalize_log_level(level)
    basicConfig(level=applied, force=force)
    return (applied, rejected)


class _SupportsLog(typ.Protocol):
    """Anything with femtologging's ``log`` signature."""

    def log(
        self,
        level: str,
        message: str,
        /,
        *,
        exc_info: object | None = None,
        stack_info: bool = False,
    ) -> str | None: ...


def _emit(
    logger: _SupportsLog,
    level: str,
    template: str,
    args: tuple[object, ...],
    exc_info: object | None,
) -> None:
    message = template % args if args else template
    logger.log(level, message, exc_info=exc_info, stack_info=False)


def log_debug(
    logger: _SupportsLog,
    template: str,
    *args: object,
    exc_info: object | None = None,
) -> None:
    """Emit ``template % args`` at DEBUG."""
    _emit(logger, "DEBUG", template, args, exc_info)


def log_info(
    logger: _SupportsLog,
    template: str,
    *args: object,
    exc_info: object | None = None,
) -> None:
    """Emit ``template % args`` at INFO.

    Parameters
    ----------
    logger : _SupportsLog
        Destination logger.
    template : str
        Message with percent-style placeholders.
    *args : object
        Placeholder values.
    exc_info : object | None, optional
        Exception to attach to the record.

    """
    _emit(logger, "INFO", template, args, exc_info)


def log_warning(
    logger: _SupportsLog,
    template: str,
    *args: object,
    exc_info: object | None = None,
) -> None:
    """Emit ``template % args`` at WARNING."""
    _emit(logger, "WARNING", template, args, exc_info)


def log_error(
    logger: _SupportsLog,
    template: str,
    *args: object,
    exc_info: object | None = None,
) -> None:
    """Emit ``template % args`` at ERROR."""
    _emit(logger, "ERROR", template, args, exc_info)


__all__ = [
    "LogLevel",
    "configure_logging",
    "get_logger",
    "log_debug",
    "log_error",
    "log_info",
    "log_warning",
    "normalize_log_level",
]
