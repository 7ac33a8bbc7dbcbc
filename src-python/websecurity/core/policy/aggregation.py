"""Aggregated configuration — the live, hot-swappable policy tree.

Writers (``replace``, ``fragment_changed``, ``fragment_will_be_removed``,
``set_enabled``) are serialised by one lock and each publishes a brand-new
:class:`~websecurity.core.policy.compiler.CompiledPolicyTree` with a single
attribute assignment.  Readers never take the lock: they read the current tree
reference once and work on that snapshot.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional, Sequence

from websecurity.core.policy.compiler import (
    DISABLED_TREE,
    CompiledNode,
    CompiledPolicyTree,
    compile_fragments,
)
from websecurity.core.policy.fragments import PolicyFragment, PolicySettings
from websecurity.core.policy.source import PolicySource, PolicySourceEvent

logger = logging.getLogger(__name__)

ChangeListener = Callable[[], None]


class AggregatedConfiguration:
    """Holds the compiled policy tree built from a list of fragments.

    Args:
        fragments: Initial fragments.  ``None`` or empty means disabled.
        source: Optional source to load fragments from and follow for changes.
            Takes precedence over *fragments*.
        label: Name used in log messages (``"cors"``, ``"csrf"``, ...).
    """

    def __init__(
        self,
        fragments: Optional[Sequence[PolicyFragment]] = None,
        source: Optional[PolicySource] = None,
        label: str = "policy",
    ) -> None:
        self.label = label
        self._lock = threading.Lock()
        self._fragments: Optional[list[PolicyFragment]] = None
        self._tree: CompiledPolicyTree = DISABLED_TREE
        self._switched_on = True
        self._listeners: list[ChangeListener] = []

        self._source = source
        if source is not None:
            # Subscribe before taking the snapshot.
            source.add_listener(self._on_source_event)
            self.replace(source.get_fragments())
        elif fragments is not None:
            self.replace(fragments)

    # ------------------------------------------------------------------
    # Readers (lock-free)
    # ------------------------------------------------------------------

    @property
    def tree(self) -> CompiledPolicyTree:
        """The currently published tree."""
        return self._tree

    @property
    def root(self) -> CompiledNode:
        return self._tree.root

    @property
    def is_enabled(self) -> bool:
        return self._tree.enabled

    @property
    def fragments(self) -> Optional[list[PolicyFragment]]:
        """A copy of the stored source list."""
        fragments = self._fragments
        return list(fragments) if fragments is not None else None

    def resolve(self, request: Any) -> Optional[CompiledNode]:
        """Most specific node applicable to *request*; ``None`` if not applicable."""
        return self._tree.resolve(request)

    def get_effective_for(self, request: Any) -> Optional[PolicySettings]:
        """Effective settings for *request*, or ``None`` when no enabled node applies."""
        node = self._tree.resolve(request)
        if node is None or not node.enabled:
            return None
        return node.settings

    # ------------------------------------------------------------------
    # Writers (serialised)
    # ------------------------------------------------------------------

    def replace(self, fragments: Optional[Sequence[PolicyFragment]]) -> None:
        """Replace the whole fragment list and recompile."""
        with self._lock:
            self._fragments = list(fragments) if fragments is not None else None
            self._compile()
        self._notify()

    def fragment_changed(self, fragment: PolicyFragment) -> None:
        """Recompile after *fragment* (already in the list) was added or mutated."""
        with self._lock:
            self._compile()
        self._notify()

    def fragment_will_be_removed(self, fragment: PolicyFragment) -> None:
        """Drop one fragment equal to *fragment* from the list and recompile."""
        with self._lock:
            if self._fragments is not None:
                remaining = list(self._fragments)
                try:
                    remaining.remove(fragment)
                except ValueError:
                    logger.debug("%s: fragment %r is not part of the configuration",
                                 self.label, fragment)
                self._fragments = remaining
            self._compile()
        self._notify()

    def set_enabled(self, enabled: bool) -> None:
        """Globally switch the policy on or off without touching the fragment list."""
        with self._lock:
            if enabled == self._switched_on:
                return
            self._switched_on = enabled
            self._compile()
        self._notify()

    def add_listener(self, listener: ChangeListener) -> None:
        """Call *listener* after every recompilation."""
        with self._lock:
            self._listeners.append(listener)

    # ------------------------------------------------------------------

    def _compile(self) -> None:
        fragments = self._fragments
        if not self._switched_on:
            tree = DISABLED_TREE
        else:
            tree = compile_fragments(list(fragments) if fragments is not None else None)
        self._tree = tree
        logger.debug("%s: published %r", self.label, tree)

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener()

    def _on_source_event(self, event: PolicySourceEvent, fragment: Optional[PolicyFragment]) -> None:
        if event is PolicySourceEvent.RELOADED:
            self.replace(self._source.get_fragments())
        elif event is PolicySourceEvent.UNBINDING:
            self.fragment_will_be_removed(fragment)
        elif event is PolicySourceEvent.BOUND:
            with self._lock:
                fragments = list(self._fragments or ())
                fragments.append(fragment)
                self._fragments = fragments
                self._compile()
            self._notify()
        else:
            self.fragment_changed(fragment)
