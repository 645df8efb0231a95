"""Errors raised by the cast session."""

import errno


class CastError(Exception):
    """Base class for cast session failures."""


class ChannelUnavailableError(CastError):
    """The receiver or application channel is not established."""


class LaunchError(CastError):
    """The receiver refused, dropped or never confirmed the application."""


class LaunchTimeoutError(LaunchError):
    pass


def is_broken_pipe(error: BaseException) -> bool:
    if isinstance(error, (BrokenPipeError, ConnectionResetError)):
        return True
    if isinstance(error, OSError) and error.errno == errno.EPIPE:
        return True
    return "EPIPE" in str(error).upper()
