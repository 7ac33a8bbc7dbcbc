"""Request matchers — predicates that scope a policy fragment to requests.

The set of matcher kinds is closed: the ``ALL`` / ``NONE`` constants, the
regex-based :class:`PatternRequestMatcher` and the :class:`AnyOfRequestMatcher`
combinator (built through :func:`any_of`).  All of them are immutable and can
be shared freely between threads.

A matcher accepts any request-like object exposing ``method`` and ``url``
(with ``path`` and ``query``) — Starlette and httpx requests both qualify.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Optional

# HTTP methods a pattern matcher can be restricted to.
KNOWN_METHODS = frozenset({
    "GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE",
})


def request_target(request: Any) -> str:
    """Return the path of *request*, followed by ``?query`` when there is one."""
    url = request.url
    query = url.query
    if isinstance(query, bytes):
        query = query.decode("latin-1")
    if query:
        return f"{url.path}?{query}"
    return url.path


class RequestMatcher:
    """Base class of all request matchers."""

    __slots__ = ()

    def test(self, request: Any) -> bool:
        raise NotImplementedError

    def __call__(self, request: Any) -> bool:
        return self.test(request)


class _ConstantMatcher(RequestMatcher):
    __slots__ = ("_value", "_label")

    def __init__(self, value: bool, label: str) -> None:
        self._value = value
        self._label = label

    def test(self, request: Any) -> bool:
        return self._value

    def __repr__(self) -> str:
        return self._label

    def __reduce__(self):
        # Keep the constants singletons across copy/pickle.
        return self._label


ALL: RequestMatcher = _ConstantMatcher(True, "ALL")
NONE: RequestMatcher = _ConstantMatcher(False, "NONE")


def _parse_methods(methods: Optional[Iterable[str]]) -> Optional[frozenset[str]]:
    """Keep the recognised methods; ``None`` means "any method"."""
    if methods is None:
        return None
    parsed = frozenset(m for m in methods if m in KNOWN_METHODS)
    return parsed or None


class PatternRequestMatcher(RequestMatcher):
    """Matches requests whose path (+ query) fully matches a regular expression.

    Args:
        pattern: The regular expression.  Must not be empty.
        methods: Accepted HTTP methods.  ``None``, or a collection without any
            recognised method, accepts every method.
        case_insensitive: Match the pattern ignoring case.
    """

    __slots__ = ("pattern", "methods", "case_insensitive", "_regex")

    def __init__(
        self,
        pattern: str,
        methods: Optional[Iterable[str]] = None,
        case_insensitive: bool = False,
    ) -> None:
        if pattern is None:
            raise TypeError("The argument 'pattern' is required.")
        if pattern == "":
            raise ValueError("The argument 'pattern' is empty.")

        self.pattern = pattern
        self.methods = _parse_methods(methods)
        self.case_insensitive = case_insensitive
        self._regex = re.compile(pattern, re.IGNORECASE if case_insensitive else 0)

    def test(self, request: Any) -> bool:
        if self.methods is not None and request.method not in self.methods:
            return False
        return self._regex.fullmatch(request_target(request)) is not None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PatternRequestMatcher):
            return NotImplemented
        return (
            self.pattern == other.pattern
            and self.methods == other.methods
            and self.case_insensitive == other.case_insensitive
        )

    def __hash__(self) -> int:
        return hash((self.pattern, self.methods, self.case_insensitive))

    def __repr__(self) -> str:
        methods = sorted(self.methods) if self.methods else "*"
        return f"PatternRequestMatcher({self.pattern!r}, methods={methods})"


class AnyOfRequestMatcher(RequestMatcher):
    """Matches when any of its matchers does.  Build it with :func:`any_of`."""

    __slots__ = ("matchers",)

    def __init__(self, matchers: tuple[RequestMatcher, ...]) -> None:
        self.matchers = matchers

    def test(self, request: Any) -> bool:
        return any(matcher.test(request) for matcher in self.matchers)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AnyOfRequestMatcher):
            return NotImplemented
        return self.matchers == other.matchers

    def __hash__(self) -> int:
        return hash(self.matchers)

    def __repr__(self) -> str:
        return f"AnyOfRequestMatcher({list(self.matchers)!r})"


def any_of(matchers: Iterable[RequestMatcher]) -> RequestMatcher:
    """Combine *matchers* with OR semantics, collapsing trivial cases.

    Returns ``ALL`` if any matcher is ``ALL``; drops ``NONE`` entries; returns
    ``NONE`` when nothing is left and the single survivor unwrapped.
    """
    if matchers is None:
        raise TypeError("The argument 'matchers' is required.")

    filtered: list[RequestMatcher] = []
    for matcher in matchers:
        if matcher is ALL:
            return ALL
        if matcher is not NONE:
            filtered.append(matcher)

    if not filtered:
        return NONE
    if len(filtered) == 1:
        return filtered[0]
    return AnyOfRequestMatcher(tuple(filtered))
