# leakscope/exporters/render.py - Tree and diff rendering
"""
Converts call trees and diffs into the nested wire format used by
flame-graph front ends, and into folded stack text.
"""

from collections import defaultdict
from typing import Any, Dict, List, Tuple

from leakscope.analyzer.diff_engine import DiffNode, STATUS_NEW, STATUS_REMOVED
from leakscope.collector.call_tree import CallTree, CallTreeNode
from leakscope.collector.models import Frame


def render_tree(tree: CallTree) -> Dict[str, Any]:
    """
    Render a call tree as nested nodes.

    Each node is {frame, location, selfValue, cumulativeValue, children};
    children are ordered by descending cumulative value, ties by frame.

    Args:
        tree: Call tree to render

    Returns:
        Root node dictionary
    """
    def convert(node: CallTreeNode) -> Dict[str, Any]:
        return {
            'frame': node.frame.name,
            'location': node.frame.location,
            'selfValue': node.self_value,
            'cumulativeValue': node.cumulative_value,
            'children': [],
        }

    out = convert(tree.root)
    pending = [(tree.root, out)]
    while pending:
        node, rendered = pending.pop()
        for child in node.sorted_children():
            rendered_child = convert(child)
            rendered['children'].append(rendered_child)
            pending.append((child, rendered_child))
    return out


def empty_tree() -> Dict[str, Any]:
    """Rendering of a tree with no samples"""
    return render_tree(CallTree())


def render_diff(root: DiffNode) -> Dict[str, Any]:
    """
    Render a diff as nested nodes.

    deltaPct holds a percentage, or the string 'new' / 'removed' for nodes
    present on one side only. Growth from a zero baseline has no
    percentage and is also marked 'new'.

    Args:
        root: Root DiffNode

    Returns:
        Root node dictionary
    """
    def convert(node: DiffNode) -> Dict[str, Any]:
        status = node.status
        delta_pct = node.delta_pct
        if status in (STATUS_NEW, STATUS_REMOVED):
            delta_pct = status
        elif delta_pct is None:
            delta_pct = STATUS_NEW
        return {
            'frame': node.frame.name,
            'location': node.frame.location,
            'baselineValue': node.baseline_value,
            'currentValue': node.current_value,
            'delta': node.delta,
            'deltaPct': delta_pct,
            'children': [],
        }

    out = convert(root)
    pending = [(root, out)]
    while pending:
        node, rendered = pending.pop()
        for child in node.children:
            rendered_child = convert(child)
            rendered['children'].append(rendered_child)
            pending.append((child, rendered_child))
    return out


def to_collapsed(tree: CallTree) -> str:
    """
    Export folded stacks, one 'frame;frame;frame value' line per stack.

    Backslashes, semicolons and line breaks in frame names are escaped
    with a backslash. Spaces are kept; the value is whatever follows the
    last space on the line.

    Args:
        tree: Call tree

    Returns:
        Folded stack text
    """
    lines = []
    for stack, value in tree.iter_stacks():
        stack_str = ';'.join(_fold_name(frame.name) for frame in stack)
        if isinstance(value, float) and not value.is_integer():
            lines.append(f"{stack_str} {value:g}")
        else:
            lines.append(f"{stack_str} {int(value)}")
    return "\n".join(lines)


# Backslash first so later escapes are not doubled
_FOLD_ESCAPES = (('\\', '\\\\'), (';', '\\;'), ('\n', '\\n'), ('\r', '\\r'))


def _fold_name(name: str) -> str:
    for raw, escaped in _FOLD_ESCAPES:
        name = name.replace(raw, escaped)
    return name


def top_frames(tree: CallTree, n: int = 10) -> List[Tuple[Frame, Any]]:
    """
    Frames with the largest self value, summed over every position.

    Args:
        tree: Call tree
        n: Number of frames to return

    Returns:
        List of (frame, self value) tuples
    """
    totals = defaultdict(int)
    for _, node in tree.iter_nodes():
        if node.self_value:
            totals[node.frame] += node.self_value
    ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return ranked[:n]
