"""Build an ordered document tree from a flat document list.

Remote listings describe the hierarchy only through ``parent_uuid``
references and a per-sibling ``sort_order``.  Identifiers are not
guaranteed to line up across isolated sync runs, so parents are resolved
through two indexes (remote ``uuid`` first, local ``id`` second) and any
document whose parent cannot be found is kept as a root rather than
dropped.

Guarantees of ``build_tree``:

* every input id appears exactly once in the output;
* sibling lists are ordered by ``sort_order``, ties keep input order;
* ``TreeNode.level`` is derived from tree position, never trusted from the
  stored ``depth`` hint;
* parent cycles cannot hang the build; their members are promoted to roots
  and reported as a data-integrity warning.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence

from .models import Document, TreeNode

logger = logging.getLogger(__name__)


def _resolve_parent(
    parent_ref: str,
    nodes_by_uuid: dict[str, TreeNode],
    nodes_by_id: dict[str, TreeNode],
) -> TreeNode | None:
    """Look *parent_ref* up as a ``uuid``, then as an ``id``."""
    return nodes_by_uuid.get(parent_ref) or nodes_by_id.get(parent_ref)


def _index(
    documents: Sequence[Document],
) -> tuple[list[TreeNode], dict[str, TreeNode], dict[str, TreeNode]]:
    ordered: list[TreeNode] = []
    nodes_by_id: dict[str, TreeNode] = {}
    nodes_by_uuid: dict[str, TreeNode] = {}
    for doc in documents:
        if doc.id in nodes_by_id:
            logger.warning(
                "Duplicate document id %s (%r) ignored", doc.id, doc.title
            )
            continue
        node = TreeNode(document=doc)
        nodes_by_id[doc.id] = node
        if doc.uuid:
            nodes_by_uuid.setdefault(doc.uuid, node)
        ordered.append(node)
    return ordered, nodes_by_id, nodes_by_uuid


def _link_parents(
    ordered: list[TreeNode],
    nodes_by_id: dict[str, TreeNode],
    nodes_by_uuid: dict[str, TreeNode],
) -> dict[str, TreeNode | None]:
    parents: dict[str, TreeNode | None] = {}
    for node in ordered:
        ref = node.document.parent_uuid
        parent = (
            _resolve_parent(ref, nodes_by_uuid, nodes_by_id) if ref else None
        )
        if parent is node:
            parent = None
        elif ref and parent is None:
            logger.debug(
                "Parent %s of document %s not found; treating as root",
                ref,
                node.id,
            )
        parents[node.id] = parent
    return parents


def _cycles(
    ordered: list[TreeNode], parents: dict[str, TreeNode | None]
) -> list[list[TreeNode]]:
    """Return every parent cycle, each listed in input order."""
    position = {node.id: i for i, node in enumerate(ordered)}
    state: dict[str, int] = {}  # 1 = on current path, 2 = finished
    found: list[list[TreeNode]] = []

    for start in ordered:
        if start.id in state:
            continue
        path: list[TreeNode] = []
        node: TreeNode | None = start
        while node is not None and node.id not in state:
            state[node.id] = 1
            path.append(node)
            node = parents[node.id]
        if node is not None and state[node.id] == 1:
            cycle = path[path.index(node) :]
            found.append(sorted(cycle, key=lambda n: position[n.id]))
        for visited in path:
            state[visited.id] = 2
    return found


def _sort_siblings(roots: list[TreeNode]) -> None:
    # list.sort is stable, so equal sort_order keeps input order.
    roots.sort(key=lambda n: n.document.sort_order)
    stack = list(roots)
    while stack:
        node = stack.pop()
        if node.children:
            node.children.sort(key=lambda n: n.document.sort_order)
            stack.extend(node.children)


def _assign_levels(roots: list[TreeNode]) -> None:
    stack = [(node, 0) for node in roots]
    while stack:
        node, level = stack.pop()
        node.level = level
        stack.extend((child, level + 1) for child in node.children)


def build_tree(documents: Sequence[Document]) -> list[TreeNode]:
    """Turn flat document records into an ordered forest.

    Args:
        documents: Documents of one (or several) knowledge bases, in the
            order the remote listed them.

    Returns:
        Root nodes, sorted by ``sort_order``; children nested.
    """
    ordered, nodes_by_id, nodes_by_uuid = _index(documents)
    parents = _link_parents(ordered, nodes_by_id, nodes_by_uuid)

    for cycle in _cycles(ordered, parents):
        head = cycle[0]
        logger.warning(
            "Parent cycle detected among documents %s; promoting %s to root",
            [n.id for n in cycle],
            head.id,
        )
        parents[head.id] = None

    roots: list[TreeNode] = []
    for node in ordered:
        parent = parents[node.id]
        if parent is None:
            roots.append(node)
        else:
            parent.children.append(node)

    _sort_siblings(roots)
    _assign_levels(roots)
    return roots


def find_parent_cycles(documents: Sequence[Document]) -> list[list[str]]:
    """Return the ids of documents whose parent chains form a cycle."""
    ordered, nodes_by_id, nodes_by_uuid = _index(documents)
    parents = _link_parents(ordered, nodes_by_id, nodes_by_uuid)
    return [[n.id for n in cycle] for cycle in _cycles(ordered, parents)]


def walk_tree(roots: Sequence[TreeNode]) -> Iterator[tuple[TreeNode, int]]:
    """Yield ``(node, level)`` depth-first, in display order."""
    stack = [(node, 0) for node in reversed(roots)]
    while stack:
        node, level = stack.pop()
        yield node, level
        stack.extend((child, level + 1) for child in reversed(node.children))


def flatten_tree(roots: Sequence[TreeNode]) -> list[Document]:
    """Return the documents of the tree in display order."""
    return [node.document for node, _ in walk_tree(roots)]
