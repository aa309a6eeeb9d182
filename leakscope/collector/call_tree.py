# leakscope/collector/call_tree.py - Weighted call-tree aggregation
"""
Aggregates normalized stacks into weighted call trees.
Each stack position is its own node keyed by (parent path, frame), so
recursive stacks keep depth-sensitive attribution.
"""

from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
import logging

from leakscope.collector.models import Frame, ROOT_FRAME
from leakscope.errors import InvariantViolation


logger = logging.getLogger(__name__)


class CallTreeNode:
    """
    One position in a call tree.

    cumulative_value always equals self_value plus the cumulative values of
    all children.
    """

    __slots__ = ('frame', 'self_value', 'cumulative_value', 'children')

    def __init__(self, frame: Frame, self_value=0, cumulative_value=0):
        self.frame = frame
        self.self_value = self_value
        self.cumulative_value = cumulative_value
        self.children: Dict[Frame, 'CallTreeNode'] = {}

    def child(self, frame: Frame) -> 'CallTreeNode':
        """Get or create the child for frame"""
        node = self.children.get(frame)
        if node is None:
            node = CallTreeNode(frame)
            self.children[frame] = node
        return node

    def sorted_children(self) -> List['CallTreeNode']:
        """Children by descending cumulative value, ties by frame."""
        return sorted(
            self.children.values(),
            key=lambda n: (-n.cumulative_value, n.frame),
        )

    def __repr__(self) -> str:
        return (f"CallTreeNode({self.frame.name!r}, self={self.self_value}, "
                f"cum={self.cumulative_value}, children={len(self.children)})")


class CallTree:
    """
    A weighted call tree rooted at ROOT_FRAME.

    Not thread-safe; the store serializes writes per series and hands out
    copies of trees that may still change.
    """

    def __init__(self):
        self.root = CallTreeNode(ROOT_FRAME)

    @property
    def total(self):
        """Cumulative value of the root"""
        return self.root.cumulative_value

    def is_empty(self) -> bool:
        return not self.root.children and self.root.cumulative_value == 0

    def add_stack(self, stack: Sequence[Frame], value):
        """
        Fold one sample into the tree.

        Walks root-to-leaf, creating nodes as needed; every node on the
        path gains value in its cumulative value and the leaf also gains it
        as self value. O(len(stack)).

        Args:
            stack: Root-to-leaf frames
            value: Non-negative sample value
        """
        node = self.root
        node.cumulative_value += value
        for frame in stack:
            node = node.child(frame)
            node.cumulative_value += value
        node.self_value += value

    def merge(self, other: 'CallTree') -> 'CallTree':
        """
        Add every node value of other into this tree, in place.

        Equivalent to replaying every sample that built other.

        Returns:
            self
        """
        pending = [(self.root, other.root)]
        while pending:
            dst, src = pending.pop()
            dst.self_value += src.self_value
            dst.cumulative_value += src.cumulative_value
            for frame, src_child in src.children.items():
                pending.append((dst.child(frame), src_child))
        return self

    def copy(self) -> 'CallTree':
        """Deep copy of the tree"""
        return CallTree().merge(self)

    def iter_nodes(self) -> Iterator[Tuple[Tuple[Frame, ...], CallTreeNode]]:
        """
        Iterate (path, node) pairs depth-first, root excluded.

        path is the root-to-node frame sequence.
        """
        pending = [((child.frame,), child) for child in self.root.sorted_children()]
        pending.reverse()
        while pending:
            path, node = pending.pop()
            yield path, node
            children = node.sorted_children()
            for child in reversed(children):
                pending.append((path + (child.frame,), child))

    def iter_stacks(self) -> Iterator[Tuple[Tuple[Frame, ...], Any]]:
        """Iterate (stack, self_value) for every node carrying self value."""
        for path, node in self.iter_nodes():
            if node.self_value:
                yield path, node.self_value

    def node_count(self) -> int:
        return sum(1 for _ in self.iter_nodes())

    def find(self, stack: Sequence[Frame]) -> Optional[CallTreeNode]:
        """Node at the end of stack, or None"""
        node = self.root
        for frame in stack:
            node = node.children.get(frame)
            if node is None:
                return None
        return node

    def validate(self, epsilon: float = 0.0, context: str = ''):
        """
        Check the cumulative-value invariant on every node.

        Args:
            epsilon: Allowed absolute error for floating values
            context: Description logged alongside a violation

        Raises:
            InvariantViolation: on a negative value or a cumulative value
                that does not equal self plus children
        """
        pending = [((), self.root)]
        while pending:
            path, node = pending.pop()
            expected = node.self_value + sum(c.cumulative_value for c in node.children.values())
            problem = None
            if node.self_value < 0 or node.cumulative_value < 0:
                problem = "negative value"
            elif abs(node.cumulative_value - expected) > epsilon:
                problem = f"cumulative {node.cumulative_value} != {expected}"

            if problem:
                where = ';'.join(f.name for f in path) or 'root'
                logger.critical(
                    f"Call tree invariant violated at {where}: {problem} "
                    f"(self={node.self_value}, cumulative={node.cumulative_value}) {context}"
                )
                raise InvariantViolation(f"{problem} at {where} {context}".strip())

            for child in node.children.values():
                pending.append((path + (child.frame,), child))

    def to_dict(self) -> Dict[str, Any]:
        """Serializable nested form, children in display order"""
        return _node_to_dict(self.root)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CallTree':
        """
        Rebuild a tree from to_dict output.

        Args:
            data: Nested node dictionary

        Returns:
            CallTree
        """
        tree = cls()
        pending = [(tree.root, data)]
        while pending:
            node, raw = pending.pop()
            node.self_value = raw.get('selfValue', 0)
            node.cumulative_value = raw.get('cumulativeValue', 0)
            for raw_child in raw.get('children', []):
                frame_data = raw_child['frame']
                frame = Frame(frame_data['name'], frame_data.get('location', ''))
                pending.append((node.child(frame), raw_child))
        return tree

    def __eq__(self, other) -> bool:
        if not isinstance(other, CallTree):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"CallTree(total={self.total}, nodes={self.node_count()})"


def _node_to_dict(root: CallTreeNode) -> Dict[str, Any]:
    def convert(node: CallTreeNode) -> Dict[str, Any]:
        return {
            'frame': {'name': node.frame.name, 'location': node.frame.location},
            'selfValue': node.self_value,
            'cumulativeValue': node.cumulative_value,
            'children': [],
        }

    out = convert(root)
    pending = [(root, out)]
    while pending:
        node, node_dict = pending.pop()
        for child in node.sorted_children():
            child_dict = convert(child)
            node_dict['children'].append(child_dict)
            pending.append((child, child_dict))
    return out


def merge_trees(*trees: CallTree) -> CallTree:
    """
    Merge trees into a new tree; inputs are left untouched.

    The result does not depend on argument order.
    """
    result = CallTree()
    for tree in trees:
        result.merge(tree)
    return result


def build_tree(stacks: Sequence[Tuple[Sequence[Frame], Any]]) -> CallTree:
    """Build a tree from (stack, value) pairs."""
    tree = CallTree()
    for stack, value in stacks:
        tree.add_stack(stack, value)
    return tree
