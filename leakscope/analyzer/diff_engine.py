# leakscope/analyzer/diff_engine.py - Structural profile comparison
"""
Compares a baseline call tree with a current one, node by node.
Performs no statistical judgment; trend detection lives in trend_scorer.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import logging

from leakscope.collector.call_tree import CallTree, CallTreeNode
from leakscope.collector.models import Frame, ROOT_FRAME, SeriesKey, TimeRange
from leakscope.storage.store import TimeIndexedStore


STATUS_NEW = 'new'
STATUS_REMOVED = 'removed'
STATUS_CHANGED = 'changed'
STATUS_UNCHANGED = 'unchanged'


@dataclass
class DiffNode:
    """
    One node of the union of baseline and current trees.

    Values are cumulative; a side where the node is absent counts as zero.
    new and removed follow presence, so a zero-valued frame seen on one
    side only is still tagged.
    """
    frame: Frame
    baseline_value: float = 0
    current_value: float = 0
    baseline_self: float = 0
    current_self: float = 0
    in_baseline: bool = False
    in_current: bool = False
    children: List['DiffNode'] = field(default_factory=list)

    @property
    def delta(self) -> float:
        return self.current_value - self.baseline_value

    @property
    def status(self) -> str:
        if self.in_current and not self.in_baseline:
            return STATUS_NEW
        if self.in_baseline and not self.in_current:
            return STATUS_REMOVED
        if self.delta == 0:
            return STATUS_UNCHANGED
        return STATUS_CHANGED

    @property
    def delta_pct(self) -> Optional[float]:
        """Percentage change, or None for new and removed nodes and growth from zero."""
        if self.status in (STATUS_NEW, STATUS_REMOVED):
            return None
        if self.baseline_value == 0:
            return None if self.delta else 0.0
        return self.delta / self.baseline_value * 100.0

    def find(self, *names: str) -> Optional['DiffNode']:
        """Descendant reached by following frame names"""
        node = self
        for name in names:
            node = next((c for c in node.children if c.frame.name == name), None)
            if node is None:
                return None
        return node

    def walk(self):
        """Yield every node depth-first, self included."""
        pending = [self]
        while pending:
            node = pending.pop()
            yield node
            pending.extend(reversed(node.children))


@dataclass
class DiffResult:
    """
    Diff of two ranges of one series.
    """
    root: DiffNode
    key: Optional[SeriesKey] = None
    baseline_range: Optional[TimeRange] = None
    current_range: Optional[TimeRange] = None
    partial: bool = False
    coverage_gaps: List[Tuple[float, float]] = field(default_factory=list)

    @property
    def total_delta(self) -> float:
        return self.root.delta


def diff_trees(baseline: CallTree, current: CallTree) -> DiffNode:
    """
    Walk two trees in lock-step by frame identity.

    Children are ordered by descending absolute delta, ties broken by
    frame, so the output is deterministic.

    Args:
        baseline: Baseline tree
        current: Current tree

    Returns:
        Root DiffNode
    """
    root = DiffNode(frame=ROOT_FRAME)
    pending: List[Tuple[DiffNode, Optional[CallTreeNode], Optional[CallTreeNode]]] = [
        (root, baseline.root, current.root)
    ]

    while pending:
        node, base, cur = pending.pop()
        node.in_baseline = base is not None
        node.in_current = cur is not None
        if base is not None:
            node.baseline_value = base.cumulative_value
            node.baseline_self = base.self_value
        if cur is not None:
            node.current_value = cur.cumulative_value
            node.current_self = cur.self_value

        base_children = base.children if base is not None else {}
        cur_children = cur.children if cur is not None else {}
        for frame in set(base_children) | set(cur_children):
            child = DiffNode(frame=frame)
            node.children.append(child)
            pending.append((child, base_children.get(frame), cur_children.get(frame)))

    # Sort once all values are filled in
    for node in root.walk():
        node.children.sort(key=lambda n: (-abs(n.delta), n.frame))
    return root


class DiffEngine:
    """
    Reads two ranges of a series from the store and diffs them.
    """

    def __init__(self, store: TimeIndexedStore):
        """
        Initialize the diff engine.

        Args:
            store: Store to read trees from
        """
        self.store = store
        self.logger = logging.getLogger(__name__)

    def diff(self, baseline_range: TimeRange, current_range: TimeRange, target_id: str,
             profile_type, tags=None, deadline: Optional[float] = None) -> DiffResult:
        """
        Diff the baseline range against the current range.

        Args:
            baseline_range: Range of the baseline tree
            current_range: Range of the current tree
            target_id: Target identifier
            profile_type: ProfileType or its string value
            tags: Tag mapping
            deadline: Optional time.monotonic() deadline shared by both reads

        Returns:
            DiffResult
        """
        key = SeriesKey.of(target_id, profile_type, tags)
        baseline = self.store.read(target_id, key.profile_type, key.tags, baseline_range, deadline)
        current = self.store.read(target_id, key.profile_type, key.tags, current_range, deadline)

        root = diff_trees(baseline.tree, current.tree)
        self.logger.debug(
            f"Diff {key}: baseline={root.baseline_value} current={root.current_value}"
        )
        return DiffResult(
            root=root,
            key=key,
            baseline_range=baseline_range,
            current_range=current_range,
            partial=baseline.partial or current.partial,
            coverage_gaps=baseline.coverage_gaps + current.coverage_gaps,
        )
