"""Exception taxonomy for bb.

Every failure that reaches the user is a ``BBError`` subclass or a patchright
error.  A stale session never appears here: ``SessionManager.ensure`` absorbs
it by relaunching.
"""

from __future__ import annotations


class BBError(Exception):
    """Base class for errors reported to the user verbatim."""


class UsageError(BBError):
    """Missing or invalid command arguments."""


class NotFoundError(BBError):
    """A selector, page index or accessibility query matched nothing."""


class OperationTimeout(BBError):
    """A wait or extraction budget was exceeded."""


class InvariantViolation(BBError):
    """The request would break a structural invariant (e.g. closing the last tab).

    Raised before any state is mutated.
    """


class LaunchError(BBError):
    """A fresh browser process could not be started or attached to."""
