import logging
from dataclasses import replace
from typing import Dict, Iterable, Iterator, List, Sequence

from services.models import WorkItem, WorkItemLink, WorkItemTreeNode

logger = logging.getLogger(__name__)


def build_forest(items: Dict[int, WorkItem], links: Sequence[WorkItemLink]) -> List[WorkItemTreeNode]:
    """
    Build a forest of work item trees from fetched items and hierarchy links

    Args:
        items: Fetched work items keyed by id, in fetch order
        links: Parent -> child link pairs from the WIQL link query

    Returns:
        Root nodes in item order. Items with no parent link are roots; if every
        item has a parent (cycle, or the real root was outside the query) every
        item is treated as a root so nothing is dropped.
    """
    if not items:
        return []

    # No hierarchy information at all: flat forest
    if not links:
        logger.debug(f"No links returned, building flat forest of {len(items)} items")
        return [WorkItemTreeNode(item=replace(item)) for item in items.values()]

    children_lookup: Dict[int, List[int]] = {item_id: [] for item_id in items}
    for link in links:
        if link.source_id is None or link.target_id is None:
            continue
        if link.source_id not in children_lookup:
            logger.debug(f"Dropping link {link.source_id} -> {link.target_id}: parent not fetched")
            continue
        children_lookup[link.source_id].append(link.target_id)

    has_parent = {link.target_id for link in links if link.source_id is not None}

    root_ids = [item_id for item_id in items if item_id not in has_parent]
    if not root_ids:
        logger.debug("Every fetched item has a parent, treating all items as roots")
        root_ids = list(items)

    return [_build_tree_node(root_id, items, children_lookup) for root_id in root_ids]


def _build_tree_node(root_id: int, items: Dict[int, WorkItem],
                     children_lookup: Dict[int, List[int]]) -> WorkItemTreeNode:
    """
    Materialize one tree with an explicit stack, never descending into an id
    already open on the current path
    """
    root = WorkItemTreeNode(item=replace(items[root_id]))
    open_ids = {root_id}
    # (node, its id, child ids not yet visited)
    stack = [(root, root_id, iter(children_lookup.get(root_id, [])))]

    while stack:
        node, item_id, child_ids = stack[-1]
        child_id = next(child_ids, None)
        if child_id is None:
            stack.pop()
            open_ids.discard(item_id)
            continue

        if child_id not in items:
            logger.debug(f"Skipping child {child_id} of {item_id}: no details fetched")
            continue

        child = WorkItemTreeNode(item=replace(items[child_id]))
        node.children.append(child)
        if child_id in open_ids:
            logger.warning(f"Cyclic link {item_id} -> {child_id}, truncating branch")
            continue

        open_ids.add(child_id)
        stack.append((child, child_id, iter(children_lookup.get(child_id, []))))

    return root


def merge_forests(*forests: Iterable[WorkItemTreeNode]) -> List[WorkItemTreeNode]:
    """
    Merge root forests by item id, keeping the first occurrence.

    Pass forests in priority order (completed before active) for a stable result.
    """
    merged: Dict[int, WorkItemTreeNode] = {}
    for forest in forests:
        for node in forest:
            if node.item.id not in merged:
                merged[node.item.id] = node
    return list(merged.values())


def iter_nodes(forest: Iterable[WorkItemTreeNode]) -> Iterator[WorkItemTreeNode]:
    """Depth-first, pre-order walk over every node in the forest"""
    stack = list(reversed(list(forest)))
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))
