"""Aggregation compiler — flat fragment list to a validated policy tree.

Compilation runs in phases:

1. Create a :class:`CompiledNode` copy of every fragment in an arena and index
   the named ones.  Later duplicates of a name are dropped.
2. Require a fragment named ``root``; without it policy is disabled.
3. Link every node to its parent.  Nodes whose parent is undefined, or whose
   attachment would close a cycle, are removed together with everything
   attached below them.
4. Propagate effective settings depth-first from the root.

Structural problems never raise: they are logged and degrade to a smaller tree
or to :data:`DISABLED_TREE`.  Input fragments are never mutated.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Optional, Sequence

from websecurity.core.matchers import RequestMatcher
from websecurity.core.policy.fragments import ROOT_NAME, PolicyFragment, PolicySettings

logger = logging.getLogger(__name__)


class CompiledNode:
    """Runtime form of a fragment: a private copy plus children and effective settings."""

    __slots__ = ("fragment", "index", "children", "settings", "_tree", "__weakref__")

    def __init__(self, fragment: PolicyFragment, index: int) -> None:
        self.fragment = fragment.copy()
        self.index = index
        self.children: list[int] = []
        # Local settings until propagation replaces them with effective ones.
        self.settings: PolicySettings = self.fragment.settings
        self._tree: Optional[CompiledPolicyTree] = None

        if self.fragment.parent_name is None:
            if self.fragment.name != ROOT_NAME:
                self.fragment.parent_name = ROOT_NAME
        elif self.fragment.name == ROOT_NAME:
            self.fragment.parent_name = None

    # -- fragment view ------------------------------------------------------

    @property
    def name(self) -> Optional[str]:
        return self.fragment.name

    @property
    def parent_name(self) -> Optional[str]:
        return self.fragment.parent_name

    @property
    def request_matcher(self) -> RequestMatcher:
        return self.fragment.request_matcher

    @property
    def enabled(self) -> bool:
        return self.fragment.enabled

    @property
    def abstract(self) -> bool:
        return self.fragment.abstract

    @property
    def child_nodes(self) -> list[CompiledNode]:
        if self._tree is None:
            return []
        return [self._tree.nodes[i] for i in self.children]

    def __repr__(self) -> str:
        return f"CompiledNode {{name: {self.name}, matcher: {self.request_matcher!r}}}"


class CompiledPolicyTree:
    """An immutable-once-published compiled tree.

    ``nodes`` is the arena of every node reachable from the root; ``root`` is
    the node named ``root`` (or the disabled placeholder).
    """

    __slots__ = ("nodes", "root")

    def __init__(self, nodes: Sequence[CompiledNode], root: CompiledNode) -> None:
        self.nodes = tuple(nodes)
        self.root = root
        for node in self.nodes:
            node._tree = self

    @property
    def enabled(self) -> bool:
        return self.root.enabled

    def get(self, name: str) -> Optional[CompiledNode]:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def walk(self) -> Iterator[CompiledNode]:
        """Depth-first, pre-order walk in compiled child order."""
        stack = [self.root.index]
        while stack:
            node = self.nodes[stack.pop()]
            yield node
            stack.extend(reversed(node.children))

    def resolve(self, request: Any) -> Optional[CompiledNode]:
        """Return the most specific node applicable to *request*, or ``None``.

        A disabled node that matches is returned without looking at its
        children.  Among siblings, the first (in declaration order) to resolve
        wins.
        """
        return self._resolve(self.root, request)

    def _resolve(self, node: CompiledNode, request: Any) -> Optional[CompiledNode]:
        if not node.request_matcher.test(request):
            return None

        if not node.enabled:
            return node

        for child_index in node.children:
            result = self._resolve(self.nodes[child_index], request)
            if result is not None:
                return result

        return node

    def __repr__(self) -> str:
        return f"CompiledPolicyTree(root={self.root!r}, size={len(self.nodes)})"


_disabled_root = CompiledNode(PolicyFragment(name=ROOT_NAME, enabled=False), 0)

# Singleton tree for "no policy": a disabled root that matches no request.
DISABLED_TREE = CompiledPolicyTree([_disabled_root], _disabled_root)


class _Compilation:
    """State of one compilation pass."""

    def __init__(self, fragments: Sequence[PolicyFragment]) -> None:
        self.fragments = fragments
        self.arena: list[CompiledNode] = []
        self.by_name: dict[str, int] = {}
        self.invalid: set[int] = set()

    def compile(self) -> CompiledPolicyTree:
        self._create_nodes()

        root_index = self.by_name.get(ROOT_NAME)
        if root_index is None:
            logger.warning("There is no root policy fragment. Assuming policy disabled.")
            return DISABLED_TREE

        self._build_tree()

        if root_index in self.invalid:
            logger.warning("The root policy fragment was removed. Assuming policy disabled.")
            return DISABLED_TREE

        root = self.arena[root_index]
        self._propagate(root, None)
        return self._publish(root)

    def _create_nodes(self) -> None:
        for fragment in self.fragments:
            node = CompiledNode(fragment, len(self.arena))
            name = node.name
            if name is not None:
                if name in self.by_name:
                    logger.warning(
                        "Found same named %r. Ignoring duplicate fragment %r.",
                        self.arena[self.by_name[name]], node,
                    )
                    continue
                self.by_name[name] = node.index
            self.arena.append(node)

    def _build_tree(self) -> None:
        rejected: list[int] = []
        for node in self.arena:
            parent_name = node.parent_name
            if parent_name is None:
                continue

            parent_index = self.by_name.get(parent_name)
            if parent_index is None:
                logger.warning(
                    "%r references undefined parent %r. "
                    "Ignoring fragment and all descendant fragments.",
                    node, parent_name,
                )
                rejected.append(node.index)
                continue

            if not self._add_child(parent_index, node.index):
                logger.warning(
                    "%r would create a cycle if added to parent %r. "
                    "Ignoring fragment and all descendant fragments.",
                    node, self.arena[parent_index],
                )
                rejected.append(node.index)

        for index in rejected:
            self._remove_subtree(index)

    def _add_child(self, parent_index: int, child_index: int) -> bool:
        if not self._check_no_cycle(child_index, {parent_index}):
            return False
        self.arena[parent_index].children.append(child_index)
        return True

    def _check_no_cycle(self, index: int, visited: set[int]) -> bool:
        """Walk the already-attached descendants of *index* looking for *visited* nodes."""
        if index in visited:
            return False

        children = self.arena[index].children
        if children:
            visited.add(index)
            for child_index in children:
                if not self._check_no_cycle(child_index, visited):
                    return False
            visited.discard(index)

        return True

    def _remove_subtree(self, index: int) -> None:
        stack = [index]
        while stack:
            current = stack.pop()
            if current in self.invalid:
                continue
            self.invalid.add(current)
            stack.extend(self.arena[current].children)

    def _propagate(self, node: CompiledNode, parent: Optional[CompiledNode]) -> None:
        # A disabled node keeps its local settings and stops the propagation.
        if not node.enabled:
            return

        if parent is not None:
            node.settings = node.fragment.settings.inherit(parent.settings)

        for child_index in node.children:
            self._propagate(self.arena[child_index], node)

    def _publish(self, root: CompiledNode) -> CompiledPolicyTree:
        """Re-index the nodes reachable from *root* into a compact arena."""
        order: list[CompiledNode] = []
        stack = [root.index]
        while stack:
            node = self.arena[stack.pop()]
            order.append(node)
            stack.extend(reversed(node.children))

        remap = {node.index: position for position, node in enumerate(order)}
        for node in order:
            node.index = remap[node.index]
            node.children = [remap[i] for i in node.children]

        return CompiledPolicyTree(order, order[0])


def compile_fragments(fragments: Optional[Sequence[PolicyFragment]]) -> CompiledPolicyTree:
    """Compile *fragments* into a policy tree.

    Returns :data:`DISABLED_TREE` for ``None`` or an empty list, when there is
    no ``root`` fragment, or when the root itself had to be removed.
    """
    if not fragments:
        return DISABLED_TREE
    return _Compilation(fragments).compile()
