# leakscope/analyzer/__init__.py - Analysis module
"""
Analyzer module for comparing and scoring stored profiles.

This module provides:
- diff_engine.py: Structural diff of two time ranges
- trend_scorer.py: Leak trend scoring and the alert log
"""
