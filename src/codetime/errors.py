"""Exception types raised by the stats engine."""

from __future__ import annotations


class CodetimeError(Exception):
    """Base class for all errors raised by codetime."""


class InvalidRangeError(CodetimeError):
    """An unknown range token or a malformed date."""


class BadDateError(InvalidRangeError):
    """A date parameter that does not parse as YYYY-MM-DD."""


class ForbiddenError(CodetimeError):
    """The requester may not see the requested data."""


class RangeTooBroadError(ForbiddenError):
    """The requested range reaches further back than the owner shares."""


class StorageError(CodetimeError):
    """The underlying store failed."""


class BuildTimeoutError(StorageError):
    """A summary build did not finish within the configured timeout."""


class NotFoundError(CodetimeError):
    """An unknown user."""
