"""Domain models for Azure DevOps work item trees."""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class WorkItem:
    """A single Azure DevOps work item.

    Only ``completed_work`` is ever rewritten after construction, by the
    rollup pass on nodes that have children.
    """

    id: int
    title: str = ""
    state: str = ""
    assigned_to: str = ""
    type: str = ""
    completed_work: Optional[float] = None  # only meaningful for leaf kinds such as Task


@dataclass(frozen=True)
class WorkItemLink:
    """A hierarchy edge from a WIQL link query (parent -> child)."""

    source_id: Optional[int] = None
    target_id: Optional[int] = None


@dataclass
class WorkItemTreeNode:
    """A work item and its children, in discovery order."""

    item: WorkItem
    children: List["WorkItemTreeNode"] = field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return not self.children
