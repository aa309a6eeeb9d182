# leakscope/storage/__init__.py - Storage module
"""
Time-bucketed storage of call trees.

This module provides:
- store.py: Time-indexed bucket store with downsampling and retention
- compaction.py: Background compaction worker
- persistence.py: JSON state file
"""
