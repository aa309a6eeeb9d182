# tests/test_diff_engine.py - Tests for diff engine
"""
Unit tests for structural diffs of call trees and store ranges.
"""

import pytest
from leakscope.analyzer.diff_engine import (
    STATUS_CHANGED,
    STATUS_NEW,
    STATUS_REMOVED,
    STATUS_UNCHANGED,
    DiffEngine,
    diff_trees,
)
from leakscope.collector.call_tree import CallTree, build_tree
from leakscope.collector.models import Frame, TimeRange
from leakscope.storage.store import TimeIndexedStore


def stack(*names):
    return tuple(Frame(n) for n in names)


class TestDiffTrees:
    """Test cases for diff_trees"""

    def test_identical_trees(self):
        """Test that a tree diffed with itself is unchanged everywhere"""
        tree = build_tree([(stack('main', 'a'), 3), (stack('main', 'b'), 4)])
        root = diff_trees(tree, tree.copy())

        assert all(node.delta == 0 for node in root.walk())
        assert all(node.status == STATUS_UNCHANGED for node in root.walk())
        assert root.find('main', 'a').delta_pct == 0.0

    def test_new_and_removed_nodes(self):
        """Test nodes present on one side only"""
        baseline = build_tree([(stack('main', 'old'), 5)])
        current = build_tree([(stack('main', 'new'), 7)])
        root = diff_trees(baseline, current)

        new = root.find('main', 'new')
        old = root.find('main', 'old')
        assert new.status == STATUS_NEW
        assert new.delta == 7
        assert new.delta_pct is None
        assert old.status == STATUS_REMOVED
        assert old.delta == -5
        assert root.find('main').status == STATUS_CHANGED

    def test_children_ordered_by_absolute_delta(self):
        """Test deterministic child ordering"""
        baseline = build_tree([(stack('a'), 10), (stack('b'), 10), (stack('c'), 10)])
        current = build_tree([(stack('a'), 11), (stack('b'), 1), (stack('c'), 1)])
        root = diff_trees(baseline, current)

        assert [child.frame.name for child in root.children] == ['b', 'c', 'a']

    def test_self_values(self):
        """Test that self values of both sides are carried"""
        baseline = build_tree([(stack('main'), 2), (stack('main', 'f'), 1)])
        current = build_tree([(stack('main'), 6)])
        main = diff_trees(baseline, current).find('main')

        assert (main.baseline_self, main.current_self) == (2, 6)
        assert (main.baseline_value, main.current_value) == (3, 6)

    def test_empty_trees(self):
        root = diff_trees(CallTree(), CallTree())
        assert root.children == []
        assert root.status == STATUS_UNCHANGED

    def test_zero_valued_frame_tagged_by_presence(self):
        """Test that a frame seen on one side with value 0 is still new or removed"""
        baseline = build_tree([(stack('main', 'idle'), 0), (stack('main'), 3)])
        current = build_tree([(stack('main', 'spin'), 0), (stack('main'), 3)])
        root = diff_trees(baseline, current)

        assert root.find('main', 'spin').status == STATUS_NEW
        assert root.find('main', 'idle').status == STATUS_REMOVED
        assert root.find('main').status == STATUS_UNCHANGED

    def test_growth_from_zero_on_both_sides(self):
        """Test a frame present in both trees whose baseline value is 0"""
        baseline = build_tree([(stack('main', 'f'), 0)])
        current = build_tree([(stack('main', 'f'), 4)])
        f = diff_trees(baseline, current).find('main', 'f')

        assert f.status == STATUS_CHANGED
        assert f.delta == 4
        assert f.delta_pct is None


class TestDiffEngine:
    """Test cases for DiffEngine"""

    def test_growth_between_buckets(self):
        """Test delta and percentage between two single-bucket ranges"""
        store = TimeIndexedStore(clock=lambda: 1000)
        store.write('api-1', 'inuse-space', {}, 980, build_tree([(stack('main', 'handleRequest'), 5)]))
        store.write('api-1', 'inuse-space', {}, 990, build_tree([(stack('main', 'handleRequest'), 50)]))

        result = DiffEngine(store).diff(
            TimeRange(980, 990), TimeRange(990, 1000), 'api-1', 'inuse-space'
        )

        node = result.root.find('main', 'handleRequest')
        assert node.delta == 45
        assert node.delta_pct == pytest.approx(900.0)
        assert result.total_delta == 45
        assert not result.partial
        assert result.key.target_id == 'api-1'

    def test_unknown_series(self):
        """Test diffing a series with no data"""
        store = TimeIndexedStore(clock=lambda: 1000)
        result = DiffEngine(store).diff(TimeRange(0, 10), TimeRange(10, 20), 'nobody', 'cpu-time')

        assert result.root.children == []
        assert result.total_delta == 0
