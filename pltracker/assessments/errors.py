"""
Exceptions raised by the assessment tracker. Everything crossing the message or
API boundary is converted to a string with to_error_message().
"""


class TrackerError(Exception):
    """Base class for tracker failures."""


class ConfigurationError(TrackerError):
    """No usable origin or course ids."""


class FetchError(TrackerError):
    """A page request returned a non-OK status."""

    def __init__(self, status: int):
        super().__init__(f"Request failed with status {status}.")
        self.status = status


class ParseError(TrackerError):
    """The assessments table was not on the fetched page."""


class DiscoveryError(TrackerError):
    """Enrolled courses could not be read from the home page."""


class TabError(TrackerError):
    """Browser tab could not be created, reached or messaged."""


class TabLoadTimeout(TabError):
    """A tab did not finish loading within its timeout."""


class PageContextError(TrackerError):
    """The page-context agent answered with ok=False."""


def to_error_message(error: BaseException) -> str:
    message = str(error) if error is not None else ""
    return message or "Unknown error"
