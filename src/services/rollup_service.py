import logging
from typing import Dict, Iterable, List

from services.models import WorkItemTreeNode
from services.tree_service import iter_nodes

logger = logging.getLogger(__name__)

DEFAULT_LEAF_KIND = "Task"


def contributed_work(node: WorkItemTreeNode, leaf_kind: str = DEFAULT_LEAF_KIND) -> float:
    """Completed work a node adds to a sum: its own value if it is a leaf-kind item with work set"""
    if node.item.type == leaf_kind and node.item.completed_work is not None:
        return node.item.completed_work
    return 0


def sum_completed_work(forest: Iterable[WorkItemTreeNode], leaf_kind: str = DEFAULT_LEAF_KIND) -> float:
    """Grand total of leaf-kind completed work over every node in the forest"""
    return sum(contributed_work(node, leaf_kind) for node in iter_nodes(forest))


def roll_up_node(node: WorkItemTreeNode, leaf_kind: str = DEFAULT_LEAF_KIND) -> float:
    """
    Roll completed work up through a subtree

    Leaves return their own contribution and are left untouched. Every node
    with children gets the sum of its subtree, or None when the sum is zero
    so that it shows as blank rather than 0.
    """
    subtree_sums: Dict[int, float] = {}

    # Reversed pre-order visits every child before its parent
    for current in reversed(list(iter_nodes([node]))):
        if current.is_leaf:
            subtree_sums[id(current)] = contributed_work(current, leaf_kind)
            continue

        subtree_sum = sum(subtree_sums.pop(id(child)) for child in current.children)
        current.item.completed_work = subtree_sum if subtree_sum > 0 else None
        subtree_sums[id(current)] = subtree_sum

    return subtree_sums[id(node)]


def compute_rollups(forest: List[WorkItemTreeNode], leaf_kind: str = DEFAULT_LEAF_KIND) -> float:
    """
    Compute the grand total and roll completed work up into parent nodes

    Args:
        forest: Root nodes, mutated in place
        leaf_kind: Work item type whose completed work is summed

    Returns:
        Grand total of leaf-kind completed work, taken before the rollup
    """
    total = sum_completed_work(forest, leaf_kind)

    for root in forest:
        roll_up_node(root, leaf_kind)

    logger.debug(f"Rolled up {len(forest)} trees, total completed work for {leaf_kind}: {total}")
    return total
