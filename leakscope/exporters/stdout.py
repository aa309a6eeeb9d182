# leakscope/exporters/stdout.py - Console output exporter
"""
Prints rendered trees, diffs and alerts to stdout in human-readable form.
"""

from typing import Any, Dict, List, Tuple
from colorama import Fore, Style
import logging

from leakscope.collector.models import Frame
from leakscope.utils.helpers import format_value


class StdoutExporter:
    """
    Prints query results to stdout with optional colored output.

    Works on the rendered dictionaries produced by exporters.render, so it
    can print anything the query API returns.
    """

    def __init__(self, use_colors: bool = True, unit: str = 'count', max_depth: int = 12,
                 min_percent: float = 0.5):
        """
        Initialize the stdout exporter.

        Args:
            use_colors: Whether to use colored output
            unit: Value unit ('bytes', 'nanoseconds' or 'count')
            max_depth: Deepest tree level printed
            min_percent: Hide nodes below this share of the root value
        """
        self.use_colors = use_colors
        self.unit = unit
        self.max_depth = max_depth
        self.min_percent = min_percent
        self.logger = logging.getLogger(__name__)

    def _c(self, color: str) -> str:
        return color if self.use_colors else ""

    def _reset(self) -> str:
        return Style.RESET_ALL if self.use_colors else ""

    def _header(self, title: str):
        print(f"\n{self._c(Fore.CYAN)}{'='*80}{self._reset()}")
        print(f"{self._c(Fore.CYAN)}{title}{self._reset()}")
        print(f"{self._c(Fore.CYAN)}{'='*80}{self._reset()}\n")

    def print_tree(self, tree: Dict, title: str = "Call Tree"):
        """
        Print a rendered call tree as an indented outline.

        Args:
            tree: render_tree() output
            title: Section title
        """
        self._header(title)
        total = tree['cumulativeValue']
        if not tree['children']:
            print("  (no samples)")
            return

        print(f"Total: {format_value(total, self.unit)}\n")
        pending = [(child, 0) for child in reversed(tree['children'])]
        while pending:
            node, depth = pending.pop()
            percent = (node['cumulativeValue'] / total * 100) if total else 0.0
            if percent < self.min_percent:
                continue

            color = self._get_color_for_share(percent)
            self_part = ""
            if node['selfValue']:
                self_part = f" self={format_value(node['selfValue'], self.unit)}"
            print(f"{'  ' * depth}{color}{percent:5.1f}%{self._reset()} "
                  f"{node['frame']} [{format_value(node['cumulativeValue'], self.unit)}{self_part}]")

            if depth + 1 < self.max_depth:
                pending.extend((child, depth + 1) for child in reversed(node['children']))

    def print_diff(self, diff: Dict, title: str = "Profile Diff"):
        """
        Print a rendered diff; growth in red, shrinkage in green.

        Args:
            diff: render_diff() output
            title: Section title
        """
        self._header(title)
        print(f"Baseline: {format_value(diff['baselineValue'], self.unit)}  "
              f"Current: {format_value(diff['currentValue'], self.unit)}  "
              f"Delta: {self._format_delta(diff)}\n")

        pending = [(child, 0) for child in reversed(diff['children'])]
        while pending:
            node, depth = pending.pop()
            if node['delta'] == 0:
                continue
            print(f"{'  ' * depth}{node['frame']}: {self._format_delta(node)}")
            if depth + 1 < self.max_depth:
                pending.extend((child, depth + 1) for child in reversed(node['children']))

    def _format_delta(self, node: Dict) -> str:
        delta = node['delta']
        color = Fore.RED if delta > 0 else Fore.GREEN if delta < 0 else ""
        sign = '+' if delta > 0 else ''
        pct = node['deltaPct']
        if isinstance(pct, str):
            pct_text = pct
        else:
            pct_text = f"{pct:+.1f}%"
        return f"{self._c(color)}{sign}{format_value(delta, self.unit)} ({pct_text}){self._reset()}"

    def print_top_frames(self, frames: List[Tuple[Frame, Any]], total, title: str = "Top Frames"):
        """
        Print frames ranked by self value.

        Args:
            frames: top_frames() output
            total: Root value the shares are taken of
            title: Section title
        """
        self._header(title)
        if not frames:
            print("  (no samples)")
            return

        for frame, value in frames:
            percent = (value / total * 100) if total else 0.0
            color = self._get_color_for_share(percent)
            print(f"{color}{percent:5.1f}%{self._reset()} {frame.label()} "
                  f"[{format_value(value, self.unit)}]")

    def print_alerts(self, alerts: List[Dict]):
        """
        Print alerts as a table.

        Args:
            alerts: Alert dictionaries from the query API
        """
        self._header("Leak Candidates")
        if not alerts:
            print("  (none)")
            return

        print(f"{'Target':<20} {'Profile':<24} {'Slope/bucket':<14} {'R^2':<6} {'Range':<24}")
        print(f"{'-'*80}")
        for alert in alerts:
            rng = alert['timeRange']
            print(f"{alert['targetId']:<20} "
                  f"{alert['profileType']:<24} "
                  f"{self._c(Fore.RED)}{alert['slope']:<14.4g}{self._reset()} "
                  f"{alert['confidence']:<6.3f} "
                  f"{rng['start']:.0f}-{rng['end']:.0f}")

    def print_stats(self, stats: Dict):
        """
        Print engine statistics.

        Args:
            stats: Nested statistics dictionary
        """
        self._header("Statistics")
        for section, values in stats.items():
            if isinstance(values, dict):
                print(f"{self._c(Fore.YELLOW)}{section}:{self._reset()}")
                for name, value in values.items():
                    print(f"  {name}: {value}")
            else:
                print(f"{self._c(Fore.YELLOW)}{section}:{self._reset()} {values}")
        print()

    def _get_color_for_share(self, percent: float) -> str:
        """
        Get color based on share of the root value.

        Args:
            percent: Percentage of the root value

        Returns:
            Color code
        """
        if not self.use_colors:
            return ""

        if percent >= 50:
            return Fore.RED
        elif percent >= 10:
            return Fore.YELLOW
        else:
            return Fore.GREEN
