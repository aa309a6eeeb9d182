# leakscope/exporters/__init__.py - Exporters module
"""
Exporters for serving and outputting query results.

This module provides:
- query_api.py: Read-only query surface
- render.py: Tree and diff rendering
- prometheus.py: Prometheus metrics exporter
- json_exporter.py: JSON format exporter
- stdout.py: Console output exporter
"""
