"""Policy sources — where an aggregated configuration gets its fragments from."""

from __future__ import annotations

import enum
import logging
import threading
from typing import Any, Callable, Iterable, Optional, Protocol

from pydantic import ValidationError

from websecurity.core.errors import MatcherSpecError
from websecurity.core.policy.fragments import PolicyFragment

logger = logging.getLogger(__name__)


class PolicySourceEvent(str, enum.Enum):
    """What happened to a fragment of a source."""
    BOUND = "BOUND"            # Fragment added
    CHANGED = "CHANGED"        # Fragment mutated in place
    UNBINDING = "UNBINDING"    # Fragment about to be removed
    RELOADED = "RELOADED"      # Whole list replaced; no single fragment


SourceListener = Callable[[PolicySourceEvent, Optional[PolicyFragment]], None]


class PolicySource(Protocol):
    """A provider of policy fragments that can report changes."""

    def get_fragments(self) -> Optional[list[PolicyFragment]]:
        """Current fragments; ``None`` when the source has nothing usable."""

    def add_listener(self, listener: SourceListener) -> None:
        ...


class InMemoryPolicySource:
    """A mutable, thread-safe list of fragments.

    Listeners are called after a fragment is added or updated, and *before* a
    fragment is removed, so they can still find it in their own copies.
    """

    def __init__(self, fragments: Optional[Iterable[PolicyFragment]] = None) -> None:
        self._fragments: list[PolicyFragment] = list(fragments or ())
        self._listeners: list[SourceListener] = []
        self._lock = threading.Lock()

    def get_fragments(self) -> list[PolicyFragment]:
        with self._lock:
            return list(self._fragments)

    def add_listener(self, listener: SourceListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def add(self, fragment: PolicyFragment) -> None:
        with self._lock:
            self._fragments.append(fragment)
        self._notify(PolicySourceEvent.BOUND, fragment)

    def update(self, fragment: PolicyFragment) -> None:
        """Report that *fragment*, already in the source, was mutated."""
        self._notify(PolicySourceEvent.CHANGED, fragment)

    def remove(self, fragment: PolicyFragment) -> None:
        self._notify(PolicySourceEvent.UNBINDING, fragment)
        with self._lock:
            try:
                self._fragments.remove(fragment)
            except ValueError:
                logger.debug("Fragment %r was not in the source", fragment)

    def _notify(self, event: PolicySourceEvent, fragment: PolicyFragment) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event, fragment)


class DeclarativePolicySource:
    """Fragments declared as plain entries, e.g. loaded from JSON or YAML.

    Entries are validated with the models of :mod:`websecurity.models.schemas`.
    A malformed declaration (bad shape, unknown matcher type, empty or invalid
    pattern, unknown method) is logged and leaves the source without
    fragments, which disables the policy layer fed by it instead of failing
    the requests it would have handled.

    Args:
        entries: Raw fragment declarations.
        kind: ``"cors"`` or ``"csrf"``; selects the entry model.
    """

    def __init__(self, entries: Optional[Iterable[dict[str, Any]]], kind: str) -> None:
        self.kind = kind
        self._listeners: list[SourceListener] = []
        self._lock = threading.Lock()
        self._fragments = self._parse(entries)

    def get_fragments(self) -> Optional[list[PolicyFragment]]:
        with self._lock:
            fragments = self._fragments
            return list(fragments) if fragments is not None else None

    def add_listener(self, listener: SourceListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def load(self, entries: Optional[Iterable[dict[str, Any]]]) -> None:
        """Replace all declarations and notify listeners."""
        fragments = self._parse(entries)
        with self._lock:
            self._fragments = fragments
            listeners = list(self._listeners)
        for listener in listeners:
            listener(PolicySourceEvent.RELOADED, None)

    def _parse(self, entries: Optional[Iterable[dict[str, Any]]]) -> Optional[list[PolicyFragment]]:
        from websecurity.models.schemas import PolicyKind, parse_fragments

        if entries is None:
            return None
        kind = PolicyKind(self.kind)
        try:
            return parse_fragments(entries, kind)
        except (MatcherSpecError, ValidationError):
            logger.exception(
                "%s policy: invalid fragment declaration. "
                "The layer is disabled until the declarations are fixed.", kind.value,
                extra={"policy": kind.value},
            )
            return None
