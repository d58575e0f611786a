"""
File Ingestion Domain

Watches an inbox directory and tracks every dropped file through
Pending -> Processing -> Success/Failed:
- collectors/ - Directory watcher with per-path debounce
- processors/ - Job executor, processing units and status aggregation
- store.py - Durable status store with optimistic updates
"""

__all__ = ["collectors", "processors"]
