from contextlib import contextmanager
import sys
import traceback
import services.logger as log

# Initialize logger
l = log.get_logger()


class LinkPreviewError(Exception):
    """Base class for every error raised while resolving a link."""


class InputRejected(LinkPreviewError, ValueError):
    """The link or id is invalid or unsafe; raised before any network call."""


class FetchError(LinkPreviewError):
    """Non-2xx response, transport failure or unusable body after retries."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


def _handle_uncaught_exceptions(exc_type, exc_value, exc_traceback):
    """Global exception handler for uncaught exceptions."""
    if issubclass(exc_type, KeyboardInterrupt):
        # Call default handler for keyboard interrupt (e.g. Ctrl+C)
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return

    l.critical(
        "Unhandled exception caught:\n"
        + ''.join(traceback.format_exception(exc_type, exc_value, exc_traceback))
    )


# Install global exception hook
sys.excepthook = _handle_uncaught_exceptions


@contextmanager
def catch_and_log(context_info: str = ""):
    """
    Context manager that logs an exception with some context and re-raises it.

    :param context_info: Optional context info to include in the log.
    """
    try:
        yield
    except Exception as e:
        l.error(f"Exception caught in context '{context_info}': {e}")
        raise
