# leakscope/__init__.py - Continuous profiling leak detector
"""
Continuous-profiling ingestion, aggregation and leak-detection engine.

This package provides:
- engine.py: Engine wiring built from a Config
- errors.py: Exception hierarchy
- cli.py: Command-line interface
"""

__version__ = "0.1.0"
