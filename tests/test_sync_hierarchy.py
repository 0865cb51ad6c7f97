"""Tests for hierarchy reconstruction.

Covers:
- Parent resolution by uuid, then by id
- Missing parents and self-parents become roots
- Sibling ordering by sort_order with stable ties
- Levels derived from position, not the stored depth
- Cycle promotion and reporting
- Duplicate ids
- Depth-first walk order
"""

from __future__ import annotations

from kb_mirror.sync.hierarchy import (
    build_tree,
    find_parent_cycles,
    flatten_tree,
    walk_tree,
)
from kb_mirror.sync.models import Document


def _doc(doc_id: str, parent: str | None = None, order: int = 0, **fields):
    return Document(
        id=doc_id,
        book_id="b1",
        parent_uuid=parent,
        sort_order=order,
        title=doc_id.upper(),
        **fields,
    )


def _ids(nodes):
    return [n.id for n in nodes]


class TestBuildTree:
    """Tests for build_tree()."""

    def test_parent_by_uuid(self):
        """Roots a and c; b nests under a through a's uuid."""
        docs = [
            _doc("a", order=1, uuid="ua"),
            _doc("b", parent="ua", order=1),
            _doc("c", order=2),
        ]
        roots = build_tree(docs)
        assert _ids(roots) == ["a", "c"]
        assert _ids(roots[0].children) == ["b"]
        assert roots[0].children[0].level == 1

    def test_parent_falls_back_to_id(self):
        """A parent reference matching no uuid is looked up as an id."""
        docs = [_doc("a"), _doc("b", parent="a")]
        roots = build_tree(docs)
        assert _ids(roots) == ["a"]
        assert _ids(roots[0].children) == ["b"]

    def test_uuid_takes_precedence_over_id(self):
        """A reference matching both a uuid and an id resolves by uuid."""
        docs = [
            _doc("x"),
            _doc("y", uuid="x"),
            _doc("child", parent="x"),
        ]
        roots = build_tree(docs)
        by_id = {n.id: n for n in roots}
        assert _ids(by_id["y"].children) == ["child"]
        assert by_id["x"].children == []

    def test_missing_parent_becomes_root(self):
        """Orphans are kept as roots instead of being dropped."""
        docs = [_doc("a"), _doc("orphan", parent="gone")]
        roots = build_tree(docs)
        assert sorted(_ids(roots)) == ["a", "orphan"]

    def test_self_parent_becomes_root(self):
        docs = [_doc("a", parent="a")]
        roots = build_tree(docs)
        assert _ids(roots) == ["a"]
        assert roots[0].children == []

    def test_empty_input(self):
        assert build_tree([]) == []

    def test_every_document_appears_once(self):
        docs = [
            _doc("a", uuid="ua"),
            _doc("b", parent="ua"),
            _doc("c", parent="b"),
            _doc("d", parent="missing"),
        ]
        roots = build_tree(docs)
        assert sorted(d.id for d in flatten_tree(roots)) == ["a", "b", "c", "d"]


class TestSiblingOrder:
    """Sibling lists are ordered by sort_order, ties keep input order."""

    def test_sorted_by_sort_order(self):
        docs = [_doc("c", order=3), _doc("a", order=1), _doc("b", order=2)]
        assert _ids(build_tree(docs)) == ["a", "b", "c"]

    def test_ties_keep_input_order(self):
        docs = [_doc("z", order=1), _doc("y", order=1), _doc("x", order=0)]
        assert _ids(build_tree(docs)) == ["x", "z", "y"]

    def test_children_sorted(self):
        docs = [
            _doc("p", uuid="up"),
            _doc("c2", parent="up", order=2),
            _doc("c1", parent="up", order=1),
        ]
        roots = build_tree(docs)
        assert _ids(roots[0].children) == ["c1", "c2"]


class TestLevels:
    """Levels come from tree position."""

    def test_levels_ignore_stored_depth(self):
        docs = [
            _doc("a", uuid="ua", depth=5),
            _doc("b", parent="ua", uuid="ub", depth=0),
            _doc("c", parent="ub", depth=9),
        ]
        levels = {node.id: level for node, level in walk_tree(build_tree(docs))}
        assert levels == {"a": 0, "b": 1, "c": 2}

    def test_node_level_matches_walk_level(self):
        docs = [_doc("a", uuid="ua"), _doc("b", parent="ua")]
        for node, level in walk_tree(build_tree(docs)):
            assert node.level == level

    def test_deep_chain_does_not_recurse(self):
        """A very deep chain builds without hitting the recursion limit."""
        docs = [_doc("n0", uuid="u0")]
        docs += [_doc(f"n{i}", parent=f"u{i - 1}", uuid=f"u{i}") for i in range(1, 3000)]
        roots = build_tree(docs)
        assert len(roots) == 1
        assert max(level for _node, level in walk_tree(roots)) == 2999


class TestCycles:
    """Parent cycles cannot hang the build."""

    def test_two_node_cycle_promotes_first(self):
        docs = [
            _doc("a", parent="ub", uuid="ua"),
            _doc("b", parent="ua", uuid="ub"),
        ]
        roots = build_tree(docs)
        assert _ids(roots) == ["a"]
        assert _ids(roots[0].children) == ["b"]

    def test_cycle_with_tail(self):
        """A document hanging off a cycle stays attached."""
        docs = [
            _doc("tail", parent="ua"),
            _doc("a", parent="ub", uuid="ua"),
            _doc("b", parent="ua", uuid="ub"),
        ]
        roots = build_tree(docs)
        assert _ids(roots) == ["a"]
        assert sorted(_ids(roots[0].children)) == ["b", "tail"]

    def test_find_parent_cycles(self):
        docs = [
            _doc("ok"),
            _doc("b", parent="uc", uuid="ub"),
            _doc("c", parent="ub", uuid="uc"),
        ]
        assert find_parent_cycles(docs) == [["b", "c"]]

    def test_no_cycles(self):
        docs = [_doc("a", uuid="ua"), _doc("b", parent="ua")]
        assert find_parent_cycles(docs) == []


class TestDuplicates:
    def test_duplicate_id_keeps_first(self):
        docs = [_doc("a"), _doc("a", order=5)]
        roots = build_tree(docs)
        assert _ids(roots) == ["a"]
        assert roots[0].document.sort_order == 0


class TestWalk:
    def test_walk_is_depth_first_in_display_order(self):
        docs = [
            _doc("a", order=1, uuid="ua"),
            _doc("a2", parent="ua", order=2),
            _doc("a1", parent="ua", order=1),
            _doc("b", order=2),
        ]
        order = [node.id for node, _level in walk_tree(build_tree(docs))]
        assert order == ["a", "a1", "a2", "b"]

    def test_folder_flag(self):
        docs = [
            _doc("f", doc_type="TITLE"),
            _doc("p", uuid="up"),
            _doc("c", parent="up"),
        ]
        nodes = {node.id: node for node, _ in walk_tree(build_tree(docs))}
        assert nodes["f"].is_folder
        assert nodes["p"].is_folder
        assert not nodes["c"].is_folder
