# leakscope/exporters/json_exporter.py - JSON format exporter
"""
Writes query results to JSON or folded-stack files.
"""

import json
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from leakscope.collector.call_tree import CallTree
from leakscope.exporters.query_api import QueryResult
from leakscope.exporters.render import to_collapsed


class JSONExporter:
    """
    Exports query results to files.

    Every JSON document carries an export timestamp next to its payload.
    """

    def __init__(self, output_dir: Optional[str] = None):
        """
        Initialize the JSON exporter.

        Args:
            output_dir: Directory to save files (default: current directory)
        """
        self.output_dir = Path(output_dir) if output_dir else Path('.')
        self.logger = logging.getLogger(__name__)

        self.output_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, filename: Optional[str], prefix: str, suffix: str = 'json') -> Path:
        if not filename:
            timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
            filename = f'{prefix}_{timestamp}.{suffix}'
        return self.output_dir / filename

    def _write(self, output_path: Path, key: str, payload: Any, extra: Optional[Dict] = None) -> str:
        document = {'timestamp': datetime.now().isoformat()}
        document.update(extra or {})
        document[key] = payload

        with open(output_path, 'w') as f:
            json.dump(document, f, indent=2)
        return str(output_path)

    def export_result(self, result: QueryResult, kind: str = 'tree',
                      filename: Optional[str] = None) -> str:
        """
        Export a query result envelope.

        Args:
            result: Result of get_tree or get_diff
            kind: Payload name ('tree' or 'diff')
            filename: Output filename (auto-generated if not provided)

        Returns:
            Path to output file
        """
        output_path = self._path(filename, kind)
        path = self._write(output_path, kind, result.data, extra={
            'ok': result.ok,
            'error': result.error,
            'partial': result.partial,
            'coverageGaps': [list(gap) for gap in result.coverage_gaps],
        })
        self.logger.info(f"Exported {kind} to {output_path}")
        return path

    def export_alerts(self, alerts: List[Dict], filename: Optional[str] = None) -> str:
        """
        Export alert dictionaries.

        Args:
            alerts: Alerts as returned by list_alerts
            filename: Output filename (auto-generated if not provided)

        Returns:
            Path to output file
        """
        output_path = self._path(filename, 'alerts')
        path = self._write(output_path, 'alerts', alerts, extra={'alert_count': len(alerts)})
        self.logger.info(f"Exported {len(alerts)} alerts to {output_path}")
        return path

    def export_collapsed(self, tree: CallTree, filename: Optional[str] = None) -> str:
        """
        Export a tree as folded stacks for flame-graph tools.

        Args:
            tree: Call tree
            filename: Output filename (auto-generated if not provided)

        Returns:
            Path to output file
        """
        output_path = self._path(filename, 'stacks', suffix='folded')
        with open(output_path, 'w') as f:
            text = to_collapsed(tree)
            f.write(text + ("\n" if text else ""))

        self.logger.info(f"Exported folded stacks to {output_path}")
        return str(output_path)
