"""Tests for compiling fragment lists into policy trees and resolving requests."""

import logging

import httpx

from websecurity.core.matchers import ALL, PatternRequestMatcher
from websecurity.core.policy import (
    DISABLED_TREE,
    CorsSettings,
    PolicyFragment,
    compile_fragments,
)


def _request(url: str, method: str = "GET") -> httpx.Request:
    return httpx.Request(method, f"http://test{url}")


def _root(**settings) -> PolicyFragment:
    return PolicyFragment(name="root", request_matcher=ALL, settings=CorsSettings(**settings))


def _fragment(name: str, pattern: str, parent: str = None, enabled: bool = True,
              abstract: bool = False, **settings) -> PolicyFragment:
    return PolicyFragment(
        name=name,
        parent_name=parent,
        request_matcher=PatternRequestMatcher(pattern),
        enabled=enabled,
        abstract=abstract,
        settings=CorsSettings(**settings),
    )


class TestRootHandling:
    def test_none_and_empty_are_disabled(self):
        assert compile_fragments(None) is DISABLED_TREE
        assert compile_fragments([]) is DISABLED_TREE

    def test_missing_root_is_disabled(self, caplog):
        with caplog.at_level(logging.WARNING):
            tree = compile_fragments([_fragment("a", "/a")])
        assert tree is DISABLED_TREE
        assert not tree.enabled
        assert "no root" in caplog.text

    def test_disabled_tree_matches_nothing(self):
        assert DISABLED_TREE.resolve(_request("/anything")) is None

    def test_disabled_root(self):
        root = PolicyFragment(name="root", request_matcher=ALL, enabled=False)
        tree = compile_fragments([root])
        assert not tree.enabled

    def test_root_parent_is_ignored(self):
        root = PolicyFragment(name="root", parent_name="other", request_matcher=ALL)
        tree = compile_fragments([root])
        assert tree.enabled
        assert tree.root.parent_name is None


class TestTreeStructure:
    def test_missing_parent_defaults_to_root(self):
        tree = compile_fragments([_root(), _fragment("a", "/a")])
        assert [n.name for n in tree.root.child_nodes] == ["a"]

    def test_dangling_parent_removes_subtree(self, caplog):
        fragments = [
            _root(),
            _fragment("a", "/a.*", parent="missing"),
            _fragment("b", "/a/b", parent="a"),
            _fragment("c", "/c"),
        ]
        with caplog.at_level(logging.WARNING):
            tree = compile_fragments(fragments)
        assert tree.get("a") is None
        assert tree.get("b") is None
        assert tree.get("c") is not None
        assert "undefined parent" in caplog.text

    def test_cycle_removes_members_and_descendants(self):
        fragments = [
            _root(allowed_origins={"o1"}),
            _fragment("C", "/x.*", parent="E", allowed_origins={"c"}),
            _fragment("E", "/x.*", parent="C", allowed_origins={"e"}),
            _fragment("D", "/x/d", parent="C", allowed_origins={"d"}),
        ]
        tree = compile_fragments(fragments)
        assert tree.enabled
        for name in ("C", "E", "D"):
            assert tree.get(name) is None

        node = tree.resolve(_request("/x/d"))
        assert node is tree.root
        assert node.settings.allowed_origins == {"o1"}

    def test_self_parent_is_a_cycle(self):
        tree = compile_fragments([_root(), _fragment("a", "/a", parent="a")])
        assert tree.get("a") is None

    def test_duplicate_names_keep_first(self, caplog):
        first = _fragment("a", "/first")
        second = _fragment("a", "/second")
        with caplog.at_level(logging.WARNING):
            tree = compile_fragments([_root(), first, second])
        assert tree.get("a").request_matcher == PatternRequestMatcher("/first")
        assert len(tree.nodes) == 2
        assert "duplicate" in caplog.text

    def test_walk_is_pre_order(self):
        tree = compile_fragments([
            _root(),
            _fragment("a", "/a"),
            _fragment("a1", "/a1", parent="a"),
            _fragment("b", "/b"),
        ])
        assert [n.name for n in tree.walk()] == ["root", "a", "a1", "b"]

    def test_input_fragments_are_not_mutated(self):
        child = _fragment("a", "/a")
        fragments = [_root(allowed_origins={"o1"}), child]
        compile_fragments(fragments)
        assert child.parent_name is None
        assert child.settings.allowed_origins is None


class TestInheritance:
    def test_example_resolution(self):
        tree = compile_fragments([
            _root(allowed_origins={"o1"}),
            _fragment("A", "/R/A", parent="root"),
        ])
        node = tree.resolve(_request("/R/A"))
        assert node.name == "A"
        assert node.settings.allowed_origins == {"o1"}

    def test_effective_sets_are_not_shared_with_parent(self):
        tree = compile_fragments([_root(allowed_origins={"o1"}), _fragment("a", "/a")])
        child = tree.get("a")
        child.settings.allowed_origins.add("o2")
        assert tree.root.settings.allowed_origins == {"o1"}

    def test_grandchild_inherits_through_chain(self):
        tree = compile_fragments([
            _root(allowed_origins={"o1"}, max_age=30),
            _fragment("a", "/a.*", allowed_origins={"o2"}),
            _fragment("b", "/a/b", parent="a", max_age=1),
        ])
        b = tree.get("b")
        assert b.settings.allowed_origins == {"o1", "o2"}
        assert b.settings.max_age == 1

    def test_disabled_node_keeps_local_settings(self):
        tree = compile_fragments([
            _root(allowed_origins={"o1"}),
            _fragment("a", "/a.*", enabled=False, allowed_origins={"o2"}),
            _fragment("b", "/a/b", parent="a"),
        ])
        a = tree.get("a")
        assert a.settings.allowed_origins == {"o2"}
        assert tree.get("b").settings.allowed_origins is None


class TestResolution:
    def test_no_match_returns_none(self):
        root = PolicyFragment(name="root", request_matcher=PatternRequestMatcher("/api/.*"))
        tree = compile_fragments([root])
        assert tree.resolve(_request("/other")) is None

    def test_most_specific_node_wins(self):
        tree = compile_fragments([
            _root(),
            _fragment("a", "/a.*"),
            _fragment("a1", "/a/1", parent="a"),
        ])
        assert tree.resolve(_request("/a/1")).name == "a1"
        assert tree.resolve(_request("/a/2")).name == "a"
        assert tree.resolve(_request("/z")).name == "root"

    def test_first_sibling_wins(self):
        tree = compile_fragments([
            _root(),
            _fragment("first", "/a.*"),
            _fragment("second", "/a/.*"),
        ])
        assert tree.resolve(_request("/a/x")).name == "first"

    def test_disabled_ancestor_shadows_descendants(self):
        tree = compile_fragments([
            _root(),
            _fragment("a", "/a.*", enabled=False),
            _fragment("a1", "/a/1", parent="a"),
        ])
        node = tree.resolve(_request("/a/1"))
        assert node.name == "a"
        assert not node.enabled

    def test_abstract_node_is_returned_when_no_child_matches(self):
        tree = compile_fragments([
            _root(),
            _fragment("a", "/a.*", abstract=True),
            _fragment("a1", "/a/1", parent="a"),
        ])
        assert tree.resolve(_request("/a/2")).name == "a"
        assert tree.resolve(_request("/a/1")).name == "a1"
