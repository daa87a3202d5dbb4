"""Rebuild the outline tree from its parent-pointer rows."""

from __future__ import annotations

from typing import Iterable

from novelforge_schemas import OutlineNode, OutlineTreeNode


def build_outline_tree(nodes: Iterable[OutlineNode]) -> list[OutlineTreeNode]:
    """Index every row by id, then link children to parents in one pass.

    Rows whose parent is missing are returned as roots so nothing is dropped.
    """

    ordered = sorted(nodes, key=lambda node: (node.level, node.order, node.id))
    index = {node.id: OutlineTreeNode(node=node) for node in ordered}
    roots: list[OutlineTreeNode] = []
    for node in ordered:
        parent = index.get(node.parent_id) if node.parent_id is not None else None
        if parent is None:
            roots.append(index[node.id])
        else:
            parent.children.append(index[node.id])
    return roots
