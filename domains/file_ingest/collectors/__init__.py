"""
File Ingestion Collectors

Long-running services that monitor the inbox directory:
- watcher.py - Debounced directory watcher feeding the job executor
"""
