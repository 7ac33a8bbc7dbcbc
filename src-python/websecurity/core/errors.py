"""Exception types raised by websecurity."""

from __future__ import annotations


class MatcherSpecError(ValueError):
    """A declarative request matcher specification is malformed."""


class CookieStoreError(Exception):
    """Reading from or writing to the client's session cookie jar failed.

    The original exception is chained as ``__cause__``.
    """
