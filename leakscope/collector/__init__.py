# leakscope/collector/__init__.py - Sample collection module
"""
Collector module for turning raw profile batches into call trees.

This module provides:
- models.py: Profile types, frames, series keys and batches
- normalizer.py: Frame normalization and per-target interning
- call_tree.py: Mergeable call tree
- ingest.py: Batch ingestion pipeline
"""
